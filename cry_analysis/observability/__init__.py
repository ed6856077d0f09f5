"""Structured logging and metric emission."""
