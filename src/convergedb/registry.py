"""
Connection registry for convergedb.

A ``ConnectionRegistry`` owns exactly one active driver. Create one per
process or per worker and pass it to the components that need it.
"""

import asyncio
import logging
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator, Mapping, Optional, Union

from pydantic import BaseModel

from .drivers import Driver, get_driver_class
from .exceptions import ConfigurationError, DatabaseConnectionError


logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """Holds the active database driver and the session database override."""

    def __init__(self):
        self._connection: Optional[Driver] = None
        self._lock = asyncio.Lock()
        self._session_override: ContextVar[Optional[str]] = ContextVar(
            f"convergedb_session_override_{id(self)}", default=None
        )

    # -- active connection ---------------------------------------------------

    def set_connection(self, driver: Optional[Driver]) -> None:
        """Install ``driver`` as the active connection; the previous one is not closed."""
        self._connection = driver

    def get_connection(self) -> Optional[Driver]:
        """Active driver, or None when nothing is connected."""
        return self._connection

    # -- session override ----------------------------------------------------

    def set_session_override(self, database: Optional[str]) -> None:
        self._session_override.set(database or None)

    def get_session_override(self) -> Optional[str]:
        return self._session_override.get()

    @contextmanager
    def session_override(self, database: Optional[str]) -> Iterator[None]:
        """Use ``database`` for connections made inside the block."""
        token = self._session_override.set(database or None)
        try:
            yield
        finally:
            self._session_override.reset(token)

    # -- connecting ----------------------------------------------------------

    def resolve_config(self, config: Union[Mapping[str, Any], BaseModel]) -> Dict[str, Any]:
        """Connection settings with the session override applied."""
        if isinstance(config, BaseModel):
            data = config.model_dump(exclude_none=True)
        else:
            data = dict(config or {})

        if not data.get("type"):
            raise ConfigurationError("Database configuration has no driver 'type'")

        override = self.get_session_override()
        if override:
            logger.debug(f"Session override: using database '{override}' instead of '{data.get('database')}'")
            data["database"] = override

        return data

    async def connect(self, config: Union[Mapping[str, Any], BaseModel]) -> Driver:
        """Build a driver from ``config``, connect it and make it active."""
        data = self.resolve_config(config)
        driver_class = get_driver_class(str(data["type"]))

        async with self._lock:
            driver = driver_class(data)
            try:
                await driver.connect_with(data)
            except (ConfigurationError, DatabaseConnectionError):
                raise
            except Exception as e:
                logger.error(f"Failed to connect using driver '{data['type']}': {e}")
                raise DatabaseConnectionError(
                    f"Failed to connect: {e}",
                    details={"driver": data["type"], "database": data.get("database")},
                ) from e

            self.set_connection(driver)

        logger.info(f"Connected to database '{data.get('database')}' using driver '{driver.name}'")
        return driver

    async def is_active(self) -> bool:
        """Whether a connection exists and reports itself alive."""
        driver = self._connection
        if driver is None:
            return False
        try:
            return bool(await driver.is_active())
        except Exception as e:
            logger.debug(f"Liveness check failed: {e}")
            return False

    async def close(self) -> None:
        """Close and forget the active connection."""
        async with self._lock:
            driver, self._connection = self._connection, None
        if driver is not None:
            await driver.close()
