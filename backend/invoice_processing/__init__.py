"""Invoice processing service."""
