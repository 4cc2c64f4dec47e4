"""SQLite Gateway CLI."""
