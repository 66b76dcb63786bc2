"""Shared infrastructure: configuration, logging and the database layer."""
