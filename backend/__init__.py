"""Outbound HTTP client used by api-call nodes."""
