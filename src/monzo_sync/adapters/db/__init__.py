"""SQLite persistence: ORM models, migrations and the DB facade."""
