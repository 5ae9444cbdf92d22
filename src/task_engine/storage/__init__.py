"""Persistence plumbing: SQLite engine, ORM tables and migrations."""
