"""Sales trend service."""
