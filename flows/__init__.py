"""Flow graph queries and trigger matching."""
