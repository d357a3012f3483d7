"""
Application Wiring for My Pocket

This module ties together all the components of one user session:
configuration → logging → local cache → remote backend → event bus →
audit logger → sync coordinator.

DESIGN DECISION: Nothing here is a module-level singleton. Each session
builds its own bus and coordinator, and ``app_session`` tears them down
again, so tests and multiple sessions never share subscribers.

If the remote backend is not configured the session runs offline. A
configured but unreachable remote is still wired in: every write is kept
in the local cache and the push queue until the remote answers again.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import structlog
from pydantic import ValidationError as PydanticValidationError

from my_pocket.audit import AuditLogger, configure_logging
from my_pocket.config import Settings, get_settings
from my_pocket.events import ChangeEventBus, Topic
from my_pocket.events.bus import Handler
from my_pocket.services.remote import (
    GoogleSheetsClient,
    GoogleSheetsRemoteBackend,
    InMemoryRemoteBackend,
    RemoteBackend,
)
from my_pocket.services.storage import LocalCacheStore, SQLiteCacheStore
from my_pocket.sync import SyncCoordinator


logger = structlog.get_logger(__name__)


def subscriber_error_reporter(audit_logger: AuditLogger):
    """Bus error handler that turns a failing subscriber into a diagnostic."""
    def report(topic: Topic, handler: Handler, error: Exception) -> None:
        name = getattr(handler, "__qualname__", repr(handler))
        audit_logger.log_subscriber_failed(topic.value, name, str(error))
    return report


def create_remote(settings: Settings) -> Optional[RemoteBackend]:
    """
    Build the configured remote backend.

    Returns None for ``remote_backend = "none"``. Nothing here touches the
    network: the Sheets backend opens its spreadsheet on the first push or
    poll, so a session launched offline still reconnects later.

    Raises:
        pydantic.ValidationError: If the Google Sheets settings are missing
    """
    backend = settings.app.remote_backend
    if backend == "none":
        return None
    if backend == "memory":
        return InMemoryRemoteBackend()
    return GoogleSheetsRemoteBackend(GoogleSheetsClient(settings.google_sheets))


def create_app_components(
    use_remote: bool = True,
    cache: Optional[LocalCacheStore] = None,
    remote: Optional[RemoteBackend] = None,
    online: Optional[bool] = None,
) -> tuple[SyncCoordinator, ChangeEventBus, AuditLogger]:
    """
    Factory function to create all application components.

    Args:
        use_remote: Whether to initialize the configured remote backend.
                    Set to False to run fully offline.
        cache: Local cache to use instead of the configured SQLite file
        remote: Remote backend to use instead of the configured one
        online: Initial connectivity (defaults to online whenever a remote
                exists). Report later changes with ``set_online``.

    Returns:
        (coordinator, bus, audit_logger)
    """
    settings = get_settings()
    configure_logging(settings.app.log_level)

    audit_logger = AuditLogger(buffer_size=settings.app.diagnostics_buffer_size)
    bus = ChangeEventBus(error_handler=subscriber_error_reporter(audit_logger))

    if cache is None:
        cache = SQLiteCacheStore(settings.cache.database_path)

    if remote is None and use_remote:
        try:
            remote = create_remote(settings)
        except PydanticValidationError as e:
            # Remote not configured - continue offline
            logger.warning("remote_backend_unavailable", backend=settings.app.remote_backend, error=str(e))
            audit_logger.log_external_service_error(
                service=settings.app.remote_backend,
                error_message=str(e),
            )
            remote = None

    coordinator = SyncCoordinator(
        cache=cache,
        remote=remote,
        bus=bus,
        audit_logger=audit_logger,
        settings=settings.sync,
        online=online,
    )
    logger.info(
        "app_components_created",
        environment=settings.app.app_environment,
        online=coordinator.online,
        database_path=settings.cache.database_path if isinstance(cache, SQLiteCacheStore) else None,
    )
    return coordinator, bus, audit_logger


@asynccontextmanager
async def app_session(
    use_remote: bool = True,
    cache: Optional[LocalCacheStore] = None,
    remote: Optional[RemoteBackend] = None,
    online: Optional[bool] = None,
) -> AsyncIterator[SyncCoordinator]:
    """
    Build, start and finally close one session.

    Usage:
        async with app_session() as coordinator:
            await coordinator.open_month(user_id, workspace_id, "2025-10")
    """
    coordinator, bus, _ = create_app_components(
        use_remote=use_remote, cache=cache, remote=remote, online=online,
    )
    await coordinator.start()
    try:
        yield coordinator
    finally:
        await coordinator.close()
        bus.close()
