"""Flow engine, node executor and AI completion service."""
