"""Entity store and object storage collaborators."""
