"""Database access (Postgres token store backend)."""
