"""Chat channel implementations."""
