"""Synchronisation tools."""
