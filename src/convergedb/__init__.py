"""
convergedb: declarative schema convergence for relational databases.

convergedb keeps one active database connection per registry, forwards SQL and
insert/update batches to it, and converges live tables onto schemas declared
in application code without ever dropping data.
"""

__version__ = "0.1.0"

from .config import ConvergeSettings
from .database import Database
from .drivers import Severity
from .exceptions import (
    ConfigurationError,
    ConvergeError,
    DatabaseConnectionError,
    DatabaseError,
    DriverExecutionError,
    NotFoundError,
    SchemaDefinitionError,
)
from .registry import ConnectionRegistry
from .schema import SchemaReconciler, TableSchema

__all__ = [
    "__version__",
    "ConfigurationError",
    "ConnectionRegistry",
    "ConvergeError",
    "ConvergeSettings",
    "Database",
    "DatabaseConnectionError",
    "DatabaseError",
    "DriverExecutionError",
    "NotFoundError",
    "SchemaDefinitionError",
    "SchemaReconciler",
    "Severity",
    "TableSchema",
]
