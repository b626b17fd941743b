"""Adapters for the remote Monzo API and the local database."""
