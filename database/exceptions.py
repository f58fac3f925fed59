"""Database exceptions."""


class DatabaseError(Exception):
    """Raised when a database operation fails for reasons other than a lost race."""
    pass


class DatabaseSchemaError(DatabaseError):
    """Raised when schema loading or migration fails."""
    pass


__all__ = ['DatabaseError', 'DatabaseSchemaError']
