"""Database exception types."""


class DatabaseError(Exception):
    """Base exception for database errors."""
    pass


class DatabaseSchemaError(DatabaseError):
    """Raised when schema initialization or migration fails."""
    pass
