"""
Database drivers for convergedb.

Drivers are looked up by name through a registration-time mapping; names are
matched case-insensitively.
"""

from typing import Dict, List, Type

from .base import Driver, QueryResult, Severity, expand_manipulation
from .postgres import PostgreSQLDriver
from ..exceptions import ConfigurationError


_DRIVERS: Dict[str, Type[Driver]] = {}


def register_driver(name: str, driver_class: Type[Driver]) -> None:
    """Make ``driver_class`` selectable under ``name``."""
    if not (isinstance(driver_class, type) and issubclass(driver_class, Driver)):
        raise ConfigurationError(f"Driver '{name}' must subclass Driver")
    _DRIVERS[name.lower()] = driver_class


def get_driver_class(name: str) -> Type[Driver]:
    """Driver class registered under ``name``."""
    try:
        return _DRIVERS[name.lower()]
    except (KeyError, AttributeError):
        raise ConfigurationError(
            f"Unknown database driver '{name}'",
            details={"available": ", ".join(available_drivers())},
        )


def available_drivers() -> List[str]:
    return sorted(_DRIVERS)


register_driver("postgres", PostgreSQLDriver)
register_driver("postgresql", PostgreSQLDriver)
register_driver("PostgreSQLDatabase", PostgreSQLDriver)


__all__ = [
    "Driver",
    "PostgreSQLDriver",
    "QueryResult",
    "Severity",
    "available_drivers",
    "expand_manipulation",
    "get_driver_class",
    "register_driver",
]
