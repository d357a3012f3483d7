"""
Sync Engine

Keeps the local replica (EntityStore + local cache) and the remote source
of truth converging, one workspace at a time.

DESIGN DECISION: Writes are a two-phase protocol.
1. Local apply: the entity store and the local cache change immediately,
   totals are recomputed and subscribers are notified. The write is then
   appended to the workspace's durable push queue.
2. Remote confirm: a background pass pushes the queue head by head and
   settles each outcome:
   - accepted: the local version is updated silently
   - conflict: the local copy is overwritten with the remote value
   - rejected: the authoritative value is fetched and written locally
   - network failure: retried with backoff, then left queued

Compensation (conflict / rejected) never replays the local write. It ends
in an explicit overwrite, a republish and a diagnostic.

PASSES: A reconciliation pass drains the queue and then makes sure the
realtime listener is running. Each pass carries a generation number.
Requests while the current pass is running join it. Going offline bumps
the generation, which abandons the running pass after its in-flight push;
a result that arrives after a newer pass completed is discarded.

CRITICAL: Remote deltas never overwrite an entity that has a queued local
mutation, and never replace a local copy with an older version.
"""

import asyncio
from datetime import datetime
from typing import Any, Coroutine, Iterable, Optional
from uuid import UUID

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from my_pocket.audit.logger import AuditLogger, create_correlation_id
from my_pocket.config.settings import SyncSettings, get_settings
from my_pocket.events.bus import ChangeEventBus, Topic
from my_pocket.ledger.aggregator import LedgerAggregator
from my_pocket.models.ledger import (
    Cartao,
    Compra,
    Despesa,
    EntityRef,
    EntityType,
    LedgerEntity,
    Month,
    entity_from_dict,
    utc_now,
)
from my_pocket.models.sync import (
    ALLOWED_TRANSITIONS,
    Accepted,
    Conflict,
    EntityDelta,
    MutationOp,
    MutationOrigin,
    NetworkError,
    PendingMutation,
    SyncOutcome,
    SyncState,
    SyncStatus,
)
from my_pocket.services.remote.interface import (
    NetworkUnavailable,
    NotFoundError,
    RemoteBackend,
    RemoteError,
    outcome_from_error,
)
from my_pocket.services.storage.interface import META_NAMESPACE, LocalCacheStore
from my_pocket.store import EntityStore
from my_pocket.sync.outbox import PushQueue


logger = structlog.get_logger(__name__)

CURSOR_KEY = "stream_cursor"

ENTITY_TOPICS: dict[EntityType, Topic] = {
    EntityType.WORKSPACE: Topic.WORKSPACES,
    EntityType.MONTH: Topic.MONTHS,
    EntityType.DESPESA: Topic.EXPENSES,
    EntityType.CARTAO: Topic.CARDS,
    EntityType.COMPRA: Topic.PURCHASES,
    EntityType.TEMPLATE: Topic.TEMPLATES,
}


class InvalidStateTransition(RuntimeError):
    """A sync state change outside the allowed transitions."""

    def __init__(self, workspace_id: str, current: SyncState, requested: SyncState):
        self.workspace_id = workspace_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Workspace {workspace_id}: cannot go from {current.value} to {requested.value}"
        )


class WorkspaceSession:
    """Sync bookkeeping for one workspace."""

    def __init__(self, workspace_id: str, queue: PushQueue, cursor: int = 0):
        self.workspace_id = workspace_id
        self.queue = queue
        self.cursor = cursor
        # Serializes local applies; never held across network I/O
        self.lock = asyncio.Lock()
        self.state = SyncState.IDLE
        self.generation = 0
        self.completed_generation = 0
        self.pass_task: Optional[asyncio.Task] = None
        self.pass_generation = 0
        self.listener_task: Optional[asyncio.Task] = None
        self.tasks: set[asyncio.Task] = set()
        self.last_error: Optional[str] = None
        self.last_synced_at: Optional[datetime] = None

    def pass_running(self) -> bool:
        return self.pass_task is not None and not self.pass_task.done()

    def listening(self) -> bool:
        return self.listener_task is not None and not self.listener_task.done()


class SyncEngine:
    """
    Local replica management and the push / listen machinery.

    The ledger operations live in ``SyncCoordinator``, which builds on the
    primitives here (``_write``, ``_erase``, ``_stage``, ``_recompute``).
    """

    def __init__(
        self,
        cache: LocalCacheStore,
        remote: Optional[RemoteBackend],
        bus: ChangeEventBus,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[SyncSettings] = None,
        store: Optional[EntityStore] = None,
        online: Optional[bool] = None,
    ):
        self._cache = cache
        self._remote = remote
        self._bus = bus
        self._audit = audit_logger or AuditLogger()
        self._settings = settings or get_settings().sync
        self._store = store or EntityStore()
        self._aggregator = LedgerAggregator(self._store)
        self._sessions: dict[str, WorkspaceSession] = {}
        # Connectivity as last reported; a remote can exist while unreachable
        self._online = remote is not None and online is not False
        self._started = False
        self._closed = False
        self._auto_sync_task: Optional[asyncio.Task] = None

    @property
    def store(self) -> EntityStore:
        return self._store

    @property
    def aggregator(self) -> LedgerAggregator:
        return self._aggregator

    @property
    def bus(self) -> ChangeEventBus:
        return self._bus

    @property
    def audit_logger(self) -> AuditLogger:
        return self._audit

    @property
    def online(self) -> bool:
        return self._online

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self) -> None:
        """
        Load the local cache into the entity store, reload push queues and
        start one reconciliation pass per workspace when online.
        """
        if self._started:
            return
        self._started = True

        for workspace_id in self._cache.workspace_ids():
            self._load_workspace(workspace_id)
            self._session(workspace_id)

        logger.info(
            "sync_engine_started",
            workspaces=len(self._sessions),
            pending=sum(len(session.queue) for session in self._sessions.values()),
            online=self._online,
        )

        for workspace_id in list(self._sessions):
            self.request_reconcile(workspace_id)

        interval = self._settings.auto_sync_interval_seconds
        if self._remote is not None and interval > 0:
            self._auto_sync_task = asyncio.create_task(self._auto_sync(interval))

    async def close(self) -> None:
        """Stop every background task and release the cache and the remote."""
        if self._closed:
            return
        self._closed = True

        tasks: list[asyncio.Task] = []
        if self._auto_sync_task is not None:
            tasks.append(self._auto_sync_task)
        for session in self._sessions.values():
            tasks.extend(session.tasks)
            if session.listener_task is not None:
                tasks.append(session.listener_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        if self._remote is not None:
            await self._remote.close()
        self._cache.close()
        logger.info("sync_engine_closed")

    def _load_workspace(self, workspace_id: str) -> None:
        for entity_type in EntityType:
            for _, value in self._cache.scan(workspace_id, entity_type.value):
                self._store.put(entity_from_dict(entity_type, value))

    def _session(self, workspace_id: str) -> WorkspaceSession:
        session = self._sessions.get(workspace_id)
        if session is None:
            stored = self._cache.get(workspace_id, META_NAMESPACE, CURSOR_KEY) or {}
            session = WorkspaceSession(
                workspace_id,
                PushQueue(self._cache, workspace_id),
                cursor=int(stored.get("sequence", 0)),
            )
            self._sessions[workspace_id] = session
        return session

    # =========================================================================
    # STATUS
    # =========================================================================

    def status(self, workspace_id: str) -> SyncStatus:
        session = self._session(workspace_id)
        return SyncStatus(
            workspace_id=workspace_id,
            state=session.state,
            online=self._online,
            pending=len(session.queue),
            last_error=session.last_error,
            last_synced_at=session.last_synced_at,
        )

    def is_pending(self, ref: EntityRef) -> bool:
        """True while a local write to ``ref`` awaits remote confirmation."""
        session = self._sessions.get(ref.workspace_id)
        return session is not None and session.queue.has_pending(ref)

    def _transition(self, session: WorkspaceSession, state: SyncState) -> None:
        if session.state == state:
            return
        if state not in ALLOWED_TRANSITIONS[session.state]:
            raise InvalidStateTransition(session.workspace_id, session.state, state)
        previous = session.state
        session.state = state
        self._audit.log_sync_state_changed(session.workspace_id, previous.value, state.value)

    def _begin_sync(self, session: WorkspaceSession) -> None:
        if session.state == SyncState.ERROR:
            self._transition(session, SyncState.IDLE)
        self._transition(session, SyncState.SYNCING)

    def _mark_degraded(self, session: WorkspaceSession, reason: str, correlation_id: UUID) -> None:
        session.last_error = reason
        self._transition(session, SyncState.ERROR)
        self._audit.log_degraded_sync(
            session.workspace_id, len(session.queue), reason, correlation_id,
        )

    # =========================================================================
    # CONNECTIVITY AND PASSES
    # =========================================================================

    def set_online(self, online: bool) -> None:
        """
        Report a connectivity change.

        Going offline abandons running passes and stops the listeners.
        Coming back online starts one reconciliation pass per workspace.
        """
        online = online and self._remote is not None
        if online == self._online:
            return
        self._online = online
        logger.info("connectivity_changed", online=online)

        if not online:
            for session in self._sessions.values():
                session.generation += 1
                self._stop_listener(session)
                if session.state == SyncState.SYNCING:
                    session.last_error = "offline"
                    self._transition(session, SyncState.ERROR)
            return

        for workspace_id in list(self._sessions):
            self.request_reconcile(workspace_id)

    def request_reconcile(self, workspace_id: str) -> Optional[asyncio.Task]:
        """
        Start a reconciliation pass, or join the one in flight.

        Returns None when offline or closed.
        """
        if not self._online or self._closed:
            return None
        session = self._session(workspace_id)
        if session.pass_running() and session.pass_generation == session.generation:
            return session.pass_task

        session.generation += 1
        session.pass_generation = session.generation
        session.pass_task = self._spawn(session, self._reconcile(session, session.generation))
        return session.pass_task

    async def sync_now(self, workspace_id: str) -> SyncStatus:
        """Run (or join) a reconciliation pass and wait for it."""
        task = self.request_reconcile(workspace_id)
        if task is not None:
            await task
        return self.status(workspace_id)

    async def flush(self) -> None:
        """Wait until no pass is running in any workspace."""
        while True:
            running = [
                task
                for session in list(self._sessions.values())
                for task in session.tasks
                if not task.done()
            ]
            if not running:
                return
            await asyncio.gather(*running, return_exceptions=True)

    def _spawn(self, session: WorkspaceSession, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        session.tasks.add(task)
        task.add_done_callback(session.tasks.discard)
        task.add_done_callback(self._report_task_failure)
        return task

    def _report_task_failure(self, task: asyncio.Task) -> None:
        if task.cancelled() or task.exception() is None:
            return
        error = task.exception()
        logger.error("sync_task_failed", error=str(error), error_type=type(error).__name__)
        self._audit.log_error(type(error).__name__, str(error))

    async def _reconcile(self, session: WorkspaceSession, generation: int) -> int:
        correlation_id = create_correlation_id()
        replayed = await self._drain(session, generation, correlation_id)
        if generation != session.generation or not self._online:
            return replayed
        if session.state == SyncState.ERROR:
            return replayed

        self._ensure_listener(session)
        session.completed_generation = max(session.completed_generation, generation)
        self._audit.log_reconcile_completed(
            session.workspace_id, generation, replayed, correlation_id,
        )
        return replayed

    async def _auto_sync(self, interval: float) -> None:
        while not self._closed:
            await asyncio.sleep(interval)
            if not self._online:
                continue
            for workspace_id, session in list(self._sessions.items()):
                if session.pass_running():
                    continue
                if len(session.queue) or not session.listening():
                    self.request_reconcile(workspace_id)

    # =========================================================================
    # PUSHING
    # =========================================================================

    async def _drain(self, session: WorkspaceSession, generation: int, correlation_id: UUID) -> int:
        """Push the queue head by head. Returns how many mutations were settled."""
        settled = 0
        while self._online and generation == session.generation:
            mutation = session.queue.peek()
            if mutation is None:
                break
            self._begin_sync(session)
            try:
                outcome = await self._push(mutation)
                if isinstance(outcome, NetworkError):
                    raise NetworkUnavailable(outcome.reason)
                if await self._settle(session, mutation, outcome, generation, correlation_id):
                    settled += 1
            except NetworkUnavailable as e:
                if generation == session.generation:
                    self._mark_degraded(session, str(e) or "network unavailable", correlation_id)
                return settled

        if generation == session.generation and not len(session.queue):
            if session.state != SyncState.IDLE:
                self._transition(session, SyncState.IDLE)
            session.last_error = None
            session.last_synced_at = utc_now()
        return settled

    async def _push_once(self, mutation: PendingMutation) -> SyncOutcome:
        if not self._online:
            raise NetworkUnavailable("offline")
        try:
            outcome = await self._remote.push(mutation)
        except NetworkUnavailable:
            raise
        except RemoteError as e:
            outcome = outcome_from_error(e)
        if isinstance(outcome, NetworkError):
            raise NetworkUnavailable(outcome.reason)
        return outcome

    async def _push(self, mutation: PendingMutation) -> SyncOutcome:
        """Push one mutation, retrying network failures with exponential backoff."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._settings.push_max_attempts),
            wait=wait_exponential(
                multiplier=self._settings.backoff_multiplier,
                min=self._settings.backoff_min_seconds,
                max=self._settings.backoff_max_seconds,
            ),
            retry=retry_if_exception_type(NetworkUnavailable),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    outcome = await self._push_once(mutation)
        except NetworkUnavailable as e:
            logger.warning(
                "push_failed",
                ref=str(mutation.ref),
                mutation_id=mutation.mutation_id,
                attempts=self._settings.push_max_attempts,
                error=str(e),
            )
            return NetworkError(reason=str(e) or "network unavailable")
        return outcome

    async def _fetch(self, ref: EntityRef) -> Optional[dict[str, Any]]:
        """Authoritative value of ``ref`` (None if it does not exist remotely)."""
        try:
            return await self._remote.fetch(ref)
        except NotFoundError:
            return None
        except NetworkUnavailable:
            raise
        except RemoteError as e:
            raise NetworkUnavailable(str(e)) from e

    def _is_stale(
        self,
        session: WorkspaceSession,
        mutation: PendingMutation,
        generation: int,
        correlation_id: UUID,
    ) -> bool:
        if generation < session.completed_generation:
            self._audit.log_reconcile_superseded(
                session.workspace_id, generation, session.completed_generation, correlation_id,
            )
            return True
        # Already settled by a newer pass
        return session.queue.get(mutation.mutation_id) is None

    async def _settle(
        self,
        session: WorkspaceSession,
        mutation: PendingMutation,
        outcome: SyncOutcome,
        generation: int,
        correlation_id: UUID,
    ) -> bool:
        """
        Apply a push outcome locally.

        Returns False when the result was discarded as stale.

        Raises:
            NetworkUnavailable: If a rejected write's authoritative value
                could not be fetched (the mutation stays queued)
        """
        if self._is_stale(session, mutation, generation, correlation_id):
            return False

        async with session.lock:
            if isinstance(outcome, Accepted):
                self._accept(session, mutation, outcome.version)
                return True
            if isinstance(outcome, Conflict):
                self._compensate(session, mutation, outcome.remote_value)
                if mutation.origin == MutationOrigin.USER:
                    self._audit.log_synced_with_conflict(
                        mutation.ref, outcome.remote_version, mutation.mutation_id, correlation_id,
                    )
                return True

        remote_value = await self._fetch(mutation.ref)
        if self._is_stale(session, mutation, generation, correlation_id):
            return False
        async with session.lock:
            self._compensate(session, mutation, remote_value)
        self._audit.log_remote_rejected(
            mutation.ref, outcome.reason, mutation.mutation_id, correlation_id,
        )
        return True

    def _accept(self, session: WorkspaceSession, mutation: PendingMutation, version: int) -> None:
        ref = mutation.ref
        session.queue.remove(mutation.mutation_id)
        session.queue.rebase(ref, mutation.base_version, version)

        if mutation.op == MutationOp.UPSERT:
            local = self._store.get_ref(ref)
            if local is not None and local.version != version:
                self._write(local.model_copy(update={"version": version}))
        elif ref.entity_type == EntityType.WORKSPACE and self._store.workspace(ref.workspace_id) is None:
            self._forget_workspace(session)

        self._audit.log_push_accepted(ref, version, mutation.mutation_id)

    def _compensate(
        self,
        session: WorkspaceSession,
        mutation: PendingMutation,
        remote_value: Optional[dict[str, Any]],
    ) -> None:
        session.queue.remove(mutation.mutation_id)
        dropped = session.queue.drop_for_ref(mutation.ref)
        logger.warning(
            "local_write_compensated",
            ref=str(mutation.ref),
            mutation_id=mutation.mutation_id,
            dropped=len(dropped),
            removed=remote_value is None,
        )
        self._overwrite(session, mutation.ref, remote_value)
        if mutation.ref.entity_type == EntityType.WORKSPACE and remote_value is None:
            self._forget_workspace(session)

    # =========================================================================
    # LISTENING
    # =========================================================================

    def _ensure_listener(self, session: WorkspaceSession) -> None:
        if session.listening() or not self._online or self._closed or self._remote is None:
            return
        if self._sessions.get(session.workspace_id) is not session:
            return
        # A workspace deleted locally stays silent until its delete settles
        if self._store.workspace(session.workspace_id) is None:
            return
        session.listener_task = asyncio.create_task(self._listen(session))
        session.listener_task.add_done_callback(self._report_task_failure)

    def _stop_listener(self, session: WorkspaceSession) -> None:
        task = session.listener_task
        session.listener_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _listen(self, session: WorkspaceSession) -> None:
        workspace_id = session.workspace_id
        try:
            async for delta in self._remote.subscribe_changes(workspace_id, since=session.cursor):
                if not self._online:
                    return
                async with session.lock:
                    keep_listening = self._apply_delta(session, delta)
                if not keep_listening:
                    return
        except NetworkUnavailable as e:
            logger.warning("change_stream_disconnected", workspace_id=workspace_id, error=str(e))

    def _apply_delta(self, session: WorkspaceSession, delta: EntityDelta) -> bool:
        """
        Apply one remote delta. Returns False once the workspace is gone.
        """
        ref = delta.ref
        if session.queue.has_pending(ref):
            logger.debug("remote_delta_deferred", ref=str(ref), version=delta.version)
        else:
            local = self._store.get_ref(ref)
            if local is None or delta.version > local.version:
                if delta.op == MutationOp.UPSERT:
                    self._overwrite(session, ref, dict(delta.payload or {}, version=delta.version))
                elif local is not None:
                    self._overwrite(session, ref, None)
                    if ref.entity_type == EntityType.WORKSPACE:
                        self._forget_workspace(session)
                        return False
        self._save_cursor(session, delta.sequence)
        return True

    def _save_cursor(self, session: WorkspaceSession, sequence: int) -> None:
        session.cursor = sequence
        self._cache.put(session.workspace_id, META_NAMESPACE, CURSOR_KEY, {"sequence": sequence})

    # =========================================================================
    # LOCAL REPLICA PRIMITIVES
    # =========================================================================

    def _write(self, entity: LedgerEntity) -> LedgerEntity:
        """Put an entity in the store and write it through to the cache."""
        self._store.put(entity)
        self._cache.put(
            entity.workspace_id,
            entity.entity_type.value,
            entity.id,
            entity.model_dump(mode="json"),
        )
        return entity

    def _erase(self, ref: EntityRef) -> Optional[LedgerEntity]:
        removed = self._store.remove(ref)
        self._cache.delete(ref.workspace_id, ref.entity_type.value, ref.entity_id)
        return removed

    def _stage(
        self,
        session: WorkspaceSession,
        op: MutationOp,
        entity: LedgerEntity,
        actor_id: Optional[str],
        origin: MutationOrigin = MutationOrigin.USER,
    ) -> PendingMutation:
        """Queue the remote half of a local write."""
        return session.queue.enqueue(PendingMutation(
            op=op,
            ref=entity.ref,
            payload=entity.model_dump(mode="json") if op == MutationOp.UPSERT else None,
            base_version=entity.version,
            actor_id=actor_id,
            origin=origin,
        ))

    def _recompute(self, workspace_id: str, month_ids: Iterable[str]) -> list[Month]:
        """Recompute months (with forward rollover), persist them, publish."""
        refreshed = self._aggregator.recompute_forward(workspace_id, month_ids)
        for month in refreshed:
            self._cache.put(workspace_id, EntityType.MONTH.value, month.id, month.model_dump(mode="json"))
        if refreshed:
            self._bus.publish(Topic.MONTHS)
        return refreshed

    def _months_touched(self, entity: Optional[LedgerEntity]) -> set[str]:
        """Existing months whose totals depend on ``entity``."""
        if entity is None:
            return set()
        if isinstance(entity, Month):
            return {entity.id}
        if isinstance(entity, Despesa):
            return {entity.month_id}
        if isinstance(entity, Compra):
            return set(self._aggregator.months_affected_by(entity))
        if isinstance(entity, Cartao):
            touched: set[str] = set()
            for compra in self._store.compras(entity.workspace_id, entity.id):
                touched.update(self._aggregator.months_affected_by(compra))
            return touched
        return set()

    def _overwrite(
        self,
        session: WorkspaceSession,
        ref: EntityRef,
        value: Optional[dict[str, Any]],
    ) -> None:
        """
        Replace the local copy of ``ref`` with an authoritative value
        (None removes it), then recompute and republish.
        """
        previous = self._store.get_ref(ref)
        current = entity_from_dict(ref.entity_type, value) if value is not None else None

        with self._bus.batch():
            if ref.entity_type == EntityType.WORKSPACE:
                if current is None:
                    self._purge_local(session)
                    for topic in Topic:
                        self._bus.publish(topic)
                    return
                self._write(current)
                self._bus.publish(Topic.WORKSPACES)
                if previous is None:
                    # Restored after a local delete: replay the whole stream
                    self._save_cursor(session, 0)
                    self._stop_listener(session)
                    self._ensure_listener(session)
                return

            touched = self._months_touched(previous)
            if current is None:
                if previous is not None:
                    self._erase(ref)
            else:
                self._write(current)
            touched |= self._months_touched(current)

            self._recompute(ref.workspace_id, touched)
            self._bus.publish(ENTITY_TOPICS[ref.entity_type])

    def _purge_local(self, session: WorkspaceSession) -> None:
        """Drop every local trace of a workspace, queue and cursor included."""
        self._stop_listener(session)
        self._store.purge_workspace(session.workspace_id)
        self._cache.purge_workspace(session.workspace_id)
        session.queue.reload()
        session.cursor = 0

    def _forget_workspace(self, session: WorkspaceSession) -> None:
        """Release a deleted workspace once nothing is left to push."""
        if len(session.queue):
            return
        self._stop_listener(session)
        self._cache.purge_workspace(session.workspace_id)
        if self._sessions.get(session.workspace_id) is session:
            del self._sessions[session.workspace_id]
        logger.info("workspace_released", workspace_id=session.workspace_id)
