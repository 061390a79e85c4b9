"""Shared infrastructure: settings, logging, database and Redis access."""
