"""Core utilities: error types and structured logging."""
