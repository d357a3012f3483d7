"""
Shared fixtures.

Async scenarios are written as plain test functions that drive an inner
coroutine with ``asyncio.run``; every coordinator is built inside that
coroutine so its locks and tasks belong to the running loop.
"""

import asyncio

import pytest

from my_pocket.audit import AuditLogger
from my_pocket.config import SyncSettings
from my_pocket.events import ChangeEventBus, Topic
from my_pocket.services.storage import InMemoryCacheStore
from my_pocket.sync import SyncCoordinator


OWNER = "user-owner"
EDITOR = "user-editor"
VIEWER = "user-viewer"
OUTSIDER = "user-outsider"


class TopicRecorder:
    """Subscribes to every topic and remembers deliveries in order."""

    def __init__(self, bus: ChangeEventBus):
        self.topics: list[Topic] = []
        self.subscriptions = [bus.subscribe(topic, self) for topic in Topic]

    def __call__(self, topic: Topic) -> None:
        self.topics.append(topic)

    def count(self, topic: Topic) -> int:
        return self.topics.count(topic)

    def clear(self) -> None:
        self.topics.clear()


@pytest.fixture
def sync_settings() -> SyncSettings:
    """No waiting between push attempts and no background loop."""
    return SyncSettings(
        push_max_attempts=2,
        backoff_multiplier=0.0,
        backoff_min_seconds=0.0,
        backoff_max_seconds=0.0,
        auto_sync_interval_seconds=0.0,
    )


@pytest.fixture
def make_coordinator(sync_settings):
    """Factory: ``make_coordinator(remote=None, cache=None, online=None)``."""
    def build(remote=None, cache=None, audit_logger=None, online=None) -> SyncCoordinator:
        return SyncCoordinator(
            cache=cache if cache is not None else InMemoryCacheStore(),
            remote=remote,
            bus=ChangeEventBus(),
            audit_logger=audit_logger or AuditLogger(),
            settings=sync_settings,
            online=online,
        )
    return build


async def settle(coordinator: SyncCoordinator, rounds: int = 3) -> None:
    """Let background passes and listeners run until nothing is left to do."""
    for _ in range(rounds):
        await coordinator.flush()
        await asyncio.sleep(0.01)
    await coordinator.flush()


async def shared_workspace(coordinator: SyncCoordinator, name: str = "Casa da Ana"):
    """A workspace owned by OWNER with one editor and one viewer."""
    workspace = await coordinator.create_workspace(OWNER, name)
    await coordinator.add_member(OWNER, workspace.id, EDITOR, "editor")
    return await coordinator.add_member(OWNER, workspace.id, VIEWER, "viewer")
