"""HTTP clients for the Monzo API and its OAuth endpoints."""
