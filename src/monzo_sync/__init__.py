"""Monzo account synchronisation into a local SQLite store."""
