"""
Exception classes for convergedb.
"""

from typing import Any, Dict, Optional


class ConvergeError(Exception):
    """Base exception for all convergedb errors."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.cause = cause

    def __str__(self) -> str:
        result = self.message
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            result += f" [{details_str}]"
        if self.cause:
            result += f" (caused by: {self.cause})"
        return result


class ConfigurationError(ConvergeError):
    """Raised when there's an error in configuration."""

    pass


class ValidationError(ConvergeError):
    """Raised when there's a validation error."""

    pass


class DatabaseError(ConvergeError):
    """Raised when there's an error with database operations."""

    pass


class DatabaseConnectionError(DatabaseError):
    """Raised when a driver cannot be constructed or cannot connect."""

    pass


class NotFoundError(DatabaseError):
    """Raised when introspecting a table that does not exist."""

    def __init__(self, table: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"Table '{table}' does not exist")
        self.table = table


class DriverExecutionError(DatabaseError):
    """Raised when a query or DDL statement fails at fatal severity."""

    def __init__(
        self,
        message: str,
        sql: Optional[str] = None,
        severity: Optional[str] = None,
        cause: Optional[Exception] = None,
    ) -> None:
        details = {}
        if severity:
            details["severity"] = severity
        if sql:
            details["sql"] = sql

        super().__init__(message, details, cause)
        self.sql = sql
        self.severity = severity


class SchemaError(DatabaseError):
    """Raised when there's an error with schema operations."""

    pass


class SchemaDefinitionError(SchemaError):
    """Raised when a declared table schema is internally inconsistent."""

    pass
