"""Asynchronous infant cry analysis pipeline."""
