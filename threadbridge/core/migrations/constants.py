"""Constants for migration routines."""

INIT_FILE_NAME = "__init__.py"
MIGRATIONS_TABLE = "schema_migrations"
