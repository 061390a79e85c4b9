"""Bridge administration CLI."""
