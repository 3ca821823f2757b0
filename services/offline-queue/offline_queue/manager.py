"""
Offline Queue Manager: owns the queue, persists it, and replays it against
the remote authority.

State machine per mutation::

    pending -> inFlight -> success | conflicted | failed
                   |
                   +-> pending (transient error, retried after backoff)
    failed -> pending        (explicit retry_failed)
    conflicted -> resolved   (discarded; the resolution is enqueued as a new update)

Every state change happens under one ``asyncio.Lock`` and is persisted
before the lock is released, so the store always reflects the last
committed transition. Remote calls run outside the lock: at most one per
target entity, at most ``parallelism`` overall.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable, Mapping
from datetime import datetime, timedelta
from typing import Any

from offline_queue.clock import Clock, SystemClock
from offline_queue.config import Settings, get_settings
from offline_queue.conflict_log import ConflictLog, ConflictLogEntry, ConflictLogFilter
from offline_queue.detector import detect_conflict, values_differ
from offline_queue.errors import (
    InvalidMutation,
    MutationNotCancellable,
    MutationNotFound,
    PreconditionFailed,
    TransientRemoteError,
)
from offline_queue.logging_config import trace_context
from offline_queue.models import (
    MUTABLE_FIELDS,
    MUTATION_PRIORITY,
    UPDATABLE_FIELDS,
    ConflictDescriptor,
    Entity,
    FieldConflict,
    ManualResolutionRequest,
    MutationStatus,
    MutationType,
    ProcessingResult,
    QueuedMutation,
    QueueStatus,
    ResolutionStrategy,
    SyncStatistics,
    apply_to_entity,
    intended_fields,
    new_id,
    validate_mutation,
)
from offline_queue.notifier import QueueNotifier
from offline_queue.remote import ApplyConflict, ApplyError, ApplySuccess, RemoteAuthority
from offline_queue.resolver import candidate_strategies, choose_strategy, resolve_conflict
from offline_queue.store import QueueDocument, QueueStore

logger = logging.getLogger(__name__)

_COALESCE_INTO = frozenset({MutationType.ADD, MutationType.UPDATE, MutationType.MARK_GOTTEN})
_COALESCE_FROM = frozenset({MutationType.UPDATE, MutationType.MARK_GOTTEN})


def compute_backoff(retry_count: int, base: float = 1.0, maximum: float = 60.0) -> float:
    """Exponential backoff in seconds: base, 2*base, 4*base ... capped at ``maximum``."""
    if retry_count <= 0:
        return 0.0
    return min(base * (2 ** (retry_count - 1)), maximum)


class OfflineQueueManager:
    """Durable offline mutation queue with conflict-aware replay."""

    def __init__(
        self,
        store: QueueStore,
        remote: RemoteAuthority,
        *,
        settings: Settings | None = None,
        clock: Clock | None = None,
        notifier: QueueNotifier | None = None,
    ) -> None:
        settings = settings or get_settings()
        self.store = store
        self.remote = remote
        self.clock = clock or SystemClock()
        self.notifier = notifier or QueueNotifier(settings.status_debounce_seconds)
        self.conflict_log = ConflictLog(settings.conflict_log_capacity)
        self.statistics = SyncStatistics()

        self.max_retries = settings.max_retries
        self.backoff_base = settings.backoff_base_seconds
        self.backoff_max = settings.backoff_max_seconds
        self.parallelism = settings.parallelism
        self.remote_timeout = settings.remote_timeout
        self.max_conflict_resubmits = settings.max_conflict_resubmits
        self.success_retention = timedelta(seconds=settings.success_retention_seconds)

        self._mutations: dict[str, QueuedMutation] = {}
        self._known_ids: set[str] = set()
        self._sequence = 0
        self._lock = asyncio.Lock()
        self._process_lock = asyncio.Lock()
        self._wakeup = asyncio.Event()
        self._scheduler_task: asyncio.Task | None = None
        self._online = False
        self._started = False
        self._last_sync_time: datetime | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def online(self) -> bool:
        return self._online

    @property
    def is_processing(self) -> bool:
        return self._process_lock.locked()

    async def start(self, *, run_scheduler: bool = True) -> None:
        """Load persisted state and, optionally, start the scheduler loop."""
        if self._started:
            logger.warning("Queue manager already started")
            return

        document = await self.store.load()
        recovered = 0
        async with self._lock:
            self._mutations = {}
            for mutation in document.mutations:
                if mutation.status is MutationStatus.IN_FLIGHT:
                    # Remote effect unknown: resend with the same id, the remote dedups.
                    mutation.status = MutationStatus.PENDING
                    mutation.next_attempt_at = None
                    recovered += 1
                self._mutations[mutation.id] = mutation
                self._known_ids.add(mutation.id)
            self._sequence = max((m.sequence for m in document.mutations), default=-1) + 1
            self.conflict_log.replace(document.conflict_log)
            if recovered:
                logger.warning(f"Recovered {recovered} in-flight mutation(s) from an interrupted run")
                await self._persist()

        self._started = True
        logger.info(f"Offline queue loaded: {len(self._mutations)} mutation(s)")
        if run_scheduler:
            self._scheduler_task = asyncio.create_task(self._scheduler_loop())
        self._notify_status()

    async def stop(self) -> None:
        """Stop scheduling, let in-flight applies finish, then flush to the store."""
        if not self._started:
            return
        # In-flight mutations always run to completion.
        async with self._process_lock:
            if self._scheduler_task:
                self._scheduler_task.cancel()
                try:
                    await self._scheduler_task
                except asyncio.CancelledError:
                    pass
                self._scheduler_task = None
            async with self._lock:
                await self._persist()

        await self.notifier.aclose()
        self._started = False
        logger.info("Offline queue stopped")

    async def __aenter__(self) -> "OfflineQueueManager":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    def set_online(self, online: bool) -> None:
        """Connectivity signal. Going online triggers processing."""
        if online == self._online:
            return
        self._online = online
        logger.info(f"Connectivity changed: {'online' if online else 'offline'}")
        if online:
            self._wakeup.set()
        self._notify_status()

    async def _scheduler_loop(self) -> None:
        while True:
            self._wakeup.clear()
            failed = False
            if self._online:
                try:
                    await self.process_queue()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error(f"Queue processing pass failed: {e}", exc_info=True)
                    failed = True

            delay = self._seconds_until_next_attempt() if self._online else None
            if failed:
                # Released mutations carry no due time; come back after one backoff step.
                delay = self.backoff_base if delay is None else min(delay, self.backoff_base)
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

    def _seconds_until_next_attempt(self) -> float | None:
        waits = [
            m.next_attempt_at
            for m in self._mutations.values()
            if m.status is MutationStatus.PENDING and m.next_attempt_at is not None
        ]
        if not waits:
            return None
        return max(0.0, (min(waits) - self.clock.now()).total_seconds())

    # ------------------------------------------------------------------
    # Enqueue / cancel
    # ------------------------------------------------------------------

    async def enqueue(self, mutation: QueuedMutation | Mapping[str, Any]) -> str:
        """Validate, persist and (when online) schedule a mutation. Returns its id."""
        mutation = validate_mutation(mutation)
        async with self._lock:
            before = dict(self._mutations)
            sequence = self._sequence
            queued = self._enqueue_locked(mutation)
            try:
                await self._persist()
            except Exception:
                # Not durable, so not queued: restore any coalesced predecessor.
                self._mutations = before
                self._sequence = sequence
                self._known_ids.discard(queued.id)
                logger.error(f"Could not persist mutation {queued.id}; enqueue rolled back")
                raise
        self._notify_status()
        if self._online:
            self._wakeup.set()
        return mutation.id

    def _enqueue_locked(self, mutation: QueuedMutation) -> QueuedMutation:
        if mutation.id in self._known_ids:
            raise InvalidMutation(f"Mutation id already used: {mutation.id}", field="id")

        mutation = mutation.model_copy(
            update={
                "status": MutationStatus.PENDING,
                "priority": MUTATION_PRIORITY[mutation.type],
                "retry_count": 0,
                "attempts": 0,
                "revision": 0,
                "next_attempt_at": None,
                "completed_at": None,
                "error": None,
                "conflict": None,
            }
        )
        previous = self._coalesce_target(mutation)
        if previous is not None:
            mutation = self._coalesce(previous, mutation)
        else:
            mutation.sequence = self._next_sequence()

        self._mutations[mutation.id] = mutation
        self._known_ids.add(mutation.id)
        logger.info(f"Queued {mutation.type.value} mutation {mutation.id} for {mutation.target_entity_id}")
        return mutation

    def _next_sequence(self) -> int:
        sequence = self._sequence
        self._sequence += 1
        return sequence

    def _coalesce_target(self, mutation: QueuedMutation) -> QueuedMutation | None:
        """Latest outstanding mutation for the same entity, if it was never dispatched."""
        if mutation.type not in _COALESCE_FROM:
            return None
        outstanding = [
            m
            for m in self._mutations.values()
            if m.target_entity_id == mutation.target_entity_id and m.is_outstanding
        ]
        if not outstanding:
            return None
        latest = max(outstanding, key=lambda m: m.sequence)
        if latest.status is not MutationStatus.PENDING or latest.attempts or latest.type not in _COALESCE_INTO:
            return None
        return latest

    def _coalesce(self, previous: QueuedMutation, mutation: QueuedMutation) -> QueuedMutation:
        """Fold ``previous`` into ``mutation``; the later write wins field by field."""
        if previous.type is MutationType.ADD:
            merged_type = MutationType.ADD
            payload = {**previous.payload, **intended_fields(mutation)}
        else:
            payload = {**intended_fields(previous), **intended_fields(mutation)}
            both_gotten = previous.type is mutation.type is MutationType.MARK_GOTTEN
            merged_type = MutationType.MARK_GOTTEN if both_gotten else MutationType.UPDATE

        del self._mutations[previous.id]
        logger.info(f"Mutation {mutation.id} supersedes pending {previous.type.value} {previous.id}")
        return mutation.model_copy(
            update={
                "type": merged_type,
                "payload": payload,
                "priority": MUTATION_PRIORITY[merged_type],
                "sequence": previous.sequence,
                "supersedes": [*previous.supersedes, previous.id],
            }
        )

    async def cancel(self, mutation_id: str) -> QueuedMutation:
        """Remove a mutation that has not been dispatched yet."""
        async with self._lock:
            mutation = self._get_locked(mutation_id)
            if mutation.status is not MutationStatus.PENDING:
                raise MutationNotCancellable(mutation_id, mutation.status.value)
            del self._mutations[mutation_id]
            await self._persist()
        logger.info(f"Cancelled mutation {mutation_id}")
        self._notify_status()
        return mutation

    async def remove(self, mutation_id: str) -> QueuedMutation:
        """Explicitly clear a terminal (success, failed or conflicted) mutation."""
        async with self._lock:
            mutation = self._get_locked(mutation_id)
            if mutation.is_outstanding:
                raise MutationNotCancellable(mutation_id, mutation.status.value)
            del self._mutations[mutation_id]
            await self._persist()
        logger.info(f"Removed {mutation.status.value} mutation {mutation_id}")
        self._notify_status()
        return mutation

    async def clear_failed(self) -> int:
        async with self._lock:
            failed = [m.id for m in self._mutations.values() if m.status is MutationStatus.FAILED]
            for mutation_id in failed:
                del self._mutations[mutation_id]
            if failed:
                await self._persist()
        self._notify_status()
        return len(failed)

    async def clear_queue(self) -> int:
        """Drop everything except mutations currently in flight."""
        async with self._lock:
            removable = [m.id for m in self._mutations.values() if m.status is not MutationStatus.IN_FLIGHT]
            for mutation_id in removable:
                del self._mutations[mutation_id]
            await self._persist()
        logger.info(f"Queue cleared ({len(removable)} mutation(s))")
        self._notify_status()
        return len(removable)

    async def retry_failed(self) -> ProcessingResult:
        """Put permanently failed mutations back into rotation and process."""
        async with self._lock:
            failed = [m for m in self._mutations.values() if m.status is MutationStatus.FAILED]
            for mutation in failed:
                mutation.transition(MutationStatus.PENDING)
                mutation.retry_count = 0
                mutation.error = None
                mutation.completed_at = None
                mutation.next_attempt_at = None
            if failed:
                await self._persist()
        logger.info(f"Retrying {len(failed)} failed mutation(s)")
        self._notify_status()
        return await self.process_queue()

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def _select_ready(self, limit: int) -> list[QueuedMutation]:
        """Head-of-line pending mutation per idle entity, by priority then FIFO."""
        if limit <= 0:
            return []
        now = self.clock.now()
        heads: dict[str | None, QueuedMutation] = {}
        for mutation in sorted(
            (m for m in self._mutations.values() if m.is_outstanding),
            key=lambda m: m.sequence,
        ):
            heads.setdefault(mutation.target_entity_id, mutation)

        ready = [
            m
            for m in heads.values()
            if m.status is MutationStatus.PENDING
            and (m.next_attempt_at is None or m.next_attempt_at <= now)
        ]
        ready.sort(key=lambda m: (-(m.priority or 0), m.sequence))
        return ready[:limit]

    async def process_queue(self) -> ProcessingResult:
        """Drain every pending mutation that is due, then return a summary."""
        result = ProcessingResult()
        if self._process_lock.locked():
            logger.warning("Queue is already being processed")
            result.pending_count = self._count(MutationStatus.PENDING)
            return result
        if not self._online:
            logger.info("Offline; queue processing deferred")
            result.pending_count = self._count(MutationStatus.PENDING)
            return result

        async with self._process_lock:
            started = time.perf_counter()
            running: dict[asyncio.Task, QueuedMutation] = {}
            error: BaseException | None = None
            self._notify_status()
            try:
                while True:
                    if self._online and error is None:
                        async with self._lock:
                            batch = self._select_ready(self.parallelism - len(running))
                            for mutation in batch:
                                mutation.transition(MutationStatus.IN_FLIGHT)
                                mutation.attempts += 1
                                mutation.next_attempt_at = None
                            if batch:
                                try:
                                    await self._persist()
                                except Exception as e:
                                    self._release(batch, dispatched=False)
                                    error, batch = e, []
                        if batch:
                            self._notify_status()
                        for mutation in batch:
                            running[asyncio.create_task(self._dispatch(mutation))] = mutation

                    if not running:
                        break

                    done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                    for task in done:
                        mutation = running.pop(task)
                        if task.exception() is not None:
                            # Let the siblings finish, then surface the first failure.
                            self._release([mutation])
                            error = error or task.exception()
                            continue
                        outcome = task.result()
                        if outcome is MutationStatus.SUCCESS:
                            result.success_count += 1
                        elif outcome is MutationStatus.FAILED:
                            result.failed_count += 1
                            result.failed_mutation_ids.append(mutation.id)
                        elif outcome is MutationStatus.CONFLICTED:
                            result.conflicted_count += 1
            except BaseException:
                for task in running:
                    task.cancel()
                if running:
                    await asyncio.gather(*running, return_exceptions=True)
                self._release(running.values())
                raise

            if error is not None:
                self._notify_status()
                raise error

            result.pending_count = self._count(MutationStatus.PENDING)
            result.processing_time = time.perf_counter() - started

        logger.info(
            f"Queue processing complete: {result.success_count} succeeded, {result.failed_count} failed, "
            f"{result.conflicted_count} conflicted, {result.pending_count} pending"
        )
        self._notify_status()
        return result

    def _release(self, mutations: Iterable[QueuedMutation], *, dispatched: bool = True) -> None:
        """Return mutations stuck in flight to pending so a later pass retries them.

        The store may still say in flight; recovery on load does the same.
        """
        for mutation in mutations:
            if mutation.status is not MutationStatus.IN_FLIGHT:
                continue
            mutation.transition(MutationStatus.PENDING)
            mutation.next_attempt_at = None
            if not dispatched:
                mutation.attempts -= 1
            logger.warning(f"Mutation {mutation.id} released back to pending")

    async def _dispatch(self, mutation: QueuedMutation) -> MutationStatus:
        with trace_context(mutation.id, mutation.target_entity_id):
            try:
                outcome = await asyncio.wait_for(self.remote.apply_mutation(mutation), timeout=self.remote_timeout)
            except asyncio.TimeoutError:
                outcome = ApplyError(f"Remote apply timed out after {self.remote_timeout}s", transient=True)
            except TransientRemoteError as e:
                outcome = ApplyError(e.message, transient=True)
            except PreconditionFailed:
                raise
            except Exception as e:
                logger.exception(f"Unexpected error applying mutation {mutation.id}")
                outcome = ApplyError(str(e) or type(e).__name__, transient=True)

            if isinstance(outcome, ApplySuccess):
                return await self._on_success(mutation, outcome.entity)
            if isinstance(outcome, ApplyConflict):
                return await self._on_conflict(mutation, outcome.remote)
            return await self._on_error(mutation, outcome)

    async def _on_success(self, mutation: QueuedMutation, entity: Entity | None) -> MutationStatus:
        async with self._lock:
            self._mark_success_locked(mutation)
            await self._persist()
        self.notifier.mutation_settled(mutation, entity)
        self._notify_status()
        return MutationStatus.SUCCESS

    def _mark_success_locked(self, mutation: QueuedMutation) -> None:
        now = self.clock.now()
        mutation.transition(MutationStatus.SUCCESS)
        mutation.completed_at = now
        mutation.error = None
        mutation.conflict = None
        self._last_sync_time = now
        self.statistics.mutations_synced += 1
        logger.info(f"Mutation {mutation.id} applied ({mutation.type.value} {mutation.target_entity_id})")
        self._prune_successes_locked(now)

    def _prune_successes_locked(self, now: datetime) -> None:
        cutoff = now - self.success_retention
        for m in list(self._mutations.values()):
            if m.status is MutationStatus.SUCCESS and m.completed_at is not None and m.completed_at <= cutoff:
                del self._mutations[m.id]

    async def _on_error(self, mutation: QueuedMutation, error: ApplyError) -> MutationStatus:
        async with self._lock:
            now = self.clock.now()
            self.statistics.failed_attempts += 1
            mutation.error = error.message
            if not error.transient:
                mutation.transition(MutationStatus.FAILED)
                mutation.completed_at = now
                logger.warning(f"Mutation {mutation.id} rejected by remote: {error.message}")
            else:
                mutation.retry_count += 1
                if mutation.retry_count > self.max_retries:
                    mutation.transition(MutationStatus.FAILED)
                    mutation.completed_at = now
                    mutation.error = f"Max retries exceeded: {error.message}"
                    logger.warning(f"Mutation {mutation.id} failed permanently after {self.max_retries} retries")
                else:
                    delay = compute_backoff(mutation.retry_count, self.backoff_base, self.backoff_max)
                    mutation.transition(MutationStatus.PENDING)
                    mutation.next_attempt_at = now + timedelta(seconds=delay)
                    logger.info(
                        f"Mutation {mutation.id} failed ({error.message}); "
                        f"retry #{mutation.retry_count} in {delay:.1f}s"
                    )
            status = mutation.status
            await self._persist()

        if status is MutationStatus.FAILED:
            self.notifier.mutation_settled(mutation, None)
        self._notify_status()
        return status

    def _write_time(self, remote: Entity) -> datetime:
        """A write timestamp strictly newer than the remote version."""
        return max(self.clock.now(), remote.updated_at + timedelta(milliseconds=1))

    async def _on_conflict(self, mutation: QueuedMutation, remote: Entity | None) -> MutationStatus:
        if remote is None:
            try:
                remote = await asyncio.wait_for(
                    self.remote.fetch_entity(mutation.target_entity_id),
                    timeout=self.remote_timeout,
                )
            except (TransientRemoteError, asyncio.TimeoutError) as e:
                return await self._on_error(mutation, ApplyError(f"Conflict fetch failed: {e}", transient=True))
            except PreconditionFailed:
                raise
            except Exception as e:
                logger.exception(f"Unexpected error fetching {mutation.target_entity_id} for mutation {mutation.id}")
                return await self._on_error(
                    mutation, ApplyError(f"Conflict fetch failed: {str(e) or type(e).__name__}", transient=True)
                )
            if remote is None:
                if mutation.type is MutationType.DELETE:
                    return await self._on_success(mutation, None)
                return await self._on_error(mutation, ApplyError("Entity was deleted remotely", transient=False))

        request: ManualResolutionRequest | None = None
        settled_entity: Entity | None = None
        async with self._lock:
            now = self.clock.now()
            self.statistics.conflicts_detected += 1

            if mutation.type is MutationType.DELETE:
                if mutation.timestamp >= remote.updated_at:
                    # The delete is the newer intent; send it again over the stale version.
                    self._resubmit_locked(mutation, mutation.payload, remote)
                else:
                    conflict = ConflictDescriptor(
                        local=remote.model_copy(update={"updated_at": mutation.timestamp}),
                        remote=remote,
                        field_conflicts=[FieldConflict(field="deleted", local_value=True, remote_value=False)],
                        detected_at=now,
                    )
                    request = self._mark_conflicted_locked(
                        mutation,
                        conflict,
                        [ResolutionStrategy.PREFER_LOCAL, ResolutionStrategy.PREFER_REMOTE],
                    )
            else:
                local = apply_to_entity(remote, mutation, mutation.resubmitted_at or mutation.timestamp)
                conflict = self._intent_conflict(mutation, local, remote, now) if local is not None else None
                if conflict is None:
                    # Remote already holds what the mutation intended.
                    self._mark_success_locked(mutation)
                    settled_entity = remote
                else:
                    strategy = choose_strategy(conflict)
                    if strategy is ResolutionStrategy.MANUAL or mutation.revision >= self.max_conflict_resubmits:
                        request = self._mark_conflicted_locked(mutation, conflict, candidate_strategies(conflict))
                    else:
                        resolved = resolve_conflict(conflict, strategy)
                        self.conflict_log.record(
                            mutation.id, conflict, strategy, resolved, automatic=True, resolved_at=now
                        )
                        self.statistics.conflicts_auto_resolved += 1
                        if not any(values_differ(getattr(resolved, f), getattr(remote, f)) for f in UPDATABLE_FIELDS):
                            self._mark_success_locked(mutation)
                            settled_entity = resolved
                        else:
                            payload = resolved.model_dump(include=set(UPDATABLE_FIELDS))
                            mutation.type = MutationType.UPDATE
                            self._resubmit_locked(mutation, payload, remote)

            status = mutation.status
            await self._persist()

        if request is not None:
            self.notifier.manual_resolution_needed(request)
        if status is MutationStatus.SUCCESS:
            self.notifier.mutation_settled(mutation, settled_entity)
        self._notify_status()
        return status

    @staticmethod
    def _intent_conflict(
        mutation: QueuedMutation, local: Entity, remote: Entity, now: datetime
    ) -> ConflictDescriptor | None:
        """Detector result plus intended fields the detector does not compare.

        Moving an item to another list must not read as "already applied"
        just because every comparable field matches.
        """
        conflict = detect_conflict(local, remote, detected_at=now)
        unmatched = [
            FieldConflict(field=field, local_value=value, remote_value=getattr(remote, field))
            for field, value in intended_fields(mutation).items()
            if field in UPDATABLE_FIELDS
            and field not in MUTABLE_FIELDS
            and values_differ(value, getattr(remote, field))
        ]
        if not unmatched:
            return conflict
        compared = conflict.field_conflicts if conflict is not None else []
        return ConflictDescriptor(local=local, remote=remote, field_conflicts=[*compared, *unmatched], detected_at=now)

    def _resubmit_locked(self, mutation: QueuedMutation, payload: dict[str, Any], remote: Entity) -> None:
        mutation.payload = dict(payload)
        mutation.revision += 1
        mutation.resubmitted_at = self._write_time(remote)
        mutation.conflict = None
        mutation.transition(MutationStatus.PENDING)
        mutation.next_attempt_at = None
        logger.info(f"Resubmitting mutation {mutation.id} (revision {mutation.revision}) over remote version")

    def _mark_conflicted_locked(
        self,
        mutation: QueuedMutation,
        conflict: ConflictDescriptor,
        candidates: list[ResolutionStrategy],
    ) -> ManualResolutionRequest:
        mutation.transition(MutationStatus.CONFLICTED)
        mutation.conflict = conflict
        mutation.error = f"Conflict on {', '.join(conflict.fields)} requires manual resolution"
        self.statistics.conflicts_manual_resolution += 1
        logger.warning(f"Mutation {mutation.id} conflicted on {', '.join(conflict.fields)}")
        return ManualResolutionRequest(
            conflict_id=mutation.id,
            mutation_id=mutation.id,
            entity_id=conflict.entity_id,
            conflict=conflict,
            candidate_strategies=candidates,
            requested_at=self.clock.now(),
        )

    # ------------------------------------------------------------------
    # Manual resolution
    # ------------------------------------------------------------------

    async def resolve_manually(
        self,
        conflict_id: str,
        chosen: Entity | None = None,
        strategy: ResolutionStrategy | str = ResolutionStrategy.MANUAL,
    ) -> str | None:
        """Settle a conflicted mutation with a user decision.

        The decision is enqueued as a fresh mutation and flows through the
        normal pipeline. Returns its id, or ``None`` when the remote version
        already matches the decision and nothing needs to be written.
        """
        strategy = ResolutionStrategy(strategy)
        if chosen is not None:
            strategy = ResolutionStrategy.MANUAL

        async with self._lock:
            mutation = self._get_locked(conflict_id)
            if mutation.status is not MutationStatus.CONFLICTED or mutation.conflict is None:
                raise PreconditionFailed(
                    f"Mutation {conflict_id} is {mutation.status.value}, not awaiting manual resolution",
                    details={"mutation_id": conflict_id, "status": mutation.status.value},
                )
            conflict = mutation.conflict
            remote = conflict.remote
            now = self.clock.now()
            timestamp = self._write_time(remote)
            follow_up: QueuedMutation | None = None
            resolved: Entity | None

            if mutation.type is MutationType.DELETE and chosen is None:
                if strategy is ResolutionStrategy.PREFER_LOCAL:
                    resolved = None
                    follow_up = QueuedMutation(
                        id=new_id(),
                        type=MutationType.DELETE,
                        target_entity_id=mutation.target_entity_id,
                        timestamp=timestamp,
                    )
                elif strategy is ResolutionStrategy.PREFER_REMOTE:
                    resolved = remote.model_copy()
                else:
                    raise PreconditionFailed(
                        "A conflicted delete resolves with prefer-local, prefer-remote or a chosen entity"
                    )
            else:
                resolved = resolve_conflict(conflict, strategy, chosen)
                if any(values_differ(getattr(resolved, f), getattr(remote, f)) for f in UPDATABLE_FIELDS):
                    follow_up = QueuedMutation(
                        id=new_id(),
                        type=MutationType.UPDATE,
                        target_entity_id=resolved.id,
                        payload=resolved.model_dump(include=set(UPDATABLE_FIELDS)),
                        timestamp=timestamp,
                    )

            before = dict(self._mutations)
            sequence = self._sequence
            log_entries = list(self.conflict_log.entries)
            self.conflict_log.record(conflict_id, conflict, strategy, resolved, automatic=False, resolved_at=now)
            # The conflicted intent is settled by the follow-up write; drop it.
            del self._mutations[conflict_id]
            if follow_up is not None:
                follow_up = self._enqueue_locked(validate_mutation(follow_up))
            try:
                await self._persist()
            except Exception:
                # The conflict stays open for another attempt.
                self._mutations = before
                self._sequence = sequence
                self.conflict_log.replace(log_entries)
                if follow_up is not None:
                    self._known_ids.discard(follow_up.id)
                raise

        logger.info(
            f"Conflict {conflict_id} resolved manually via {strategy.value}"
            + (f"; queued {follow_up.id}" if follow_up else "; remote kept")
        )
        self._notify_status()
        if follow_up is not None and self._online:
            self._wakeup.set()
        return follow_up.id if follow_up else None

    def get_conflicts(self) -> list[ManualResolutionRequest]:
        """Outstanding manual-resolution requests, oldest first."""
        requests = []
        for m in sorted(self._mutations.values(), key=lambda m: m.sequence):
            if m.status is MutationStatus.CONFLICTED and m.conflict is not None:
                candidates = (
                    [ResolutionStrategy.PREFER_LOCAL, ResolutionStrategy.PREFER_REMOTE]
                    if m.type is MutationType.DELETE
                    else candidate_strategies(m.conflict)
                )
                requests.append(
                    ManualResolutionRequest(
                        conflict_id=m.id,
                        mutation_id=m.id,
                        entity_id=m.conflict.entity_id,
                        conflict=m.conflict,
                        candidate_strategies=candidates,
                        requested_at=m.conflict.detected_at or m.timestamp,
                    )
                )
        return requests

    def query_conflict_log(self, flt: ConflictLogFilter | None = None) -> list[ConflictLogEntry]:
        return self.conflict_log.query(flt)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def _count(self, status: MutationStatus) -> int:
        return sum(1 for m in self._mutations.values() if m.status is status)

    def get_status(self) -> QueueStatus:
        return QueueStatus(
            pending=self._count(MutationStatus.PENDING),
            in_flight=self._count(MutationStatus.IN_FLIGHT),
            failed=self._count(MutationStatus.FAILED),
            conflicted=self._count(MutationStatus.CONFLICTED),
            success=self._count(MutationStatus.SUCCESS),
            total=len(self._mutations),
            is_processing=self.is_processing,
            online=self._online,
            last_sync_time=self._last_sync_time,
        )

    def get_queued_mutations(self, status: MutationStatus | None = None) -> list[QueuedMutation]:
        """Read-only copies in dispatch order."""
        mutations = sorted(self._mutations.values(), key=lambda m: (-(m.priority or 0), m.sequence))
        return [m.model_copy(deep=True) for m in mutations if status is None or m.status is status]

    def get_mutation(self, mutation_id: str) -> QueuedMutation:
        return self._get_locked(mutation_id).model_copy(deep=True)

    def _get_locked(self, mutation_id: str) -> QueuedMutation:
        try:
            return self._mutations[mutation_id]
        except KeyError:
            raise MutationNotFound(mutation_id) from None

    # ------------------------------------------------------------------
    # Persistence / notification
    # ------------------------------------------------------------------

    async def _persist(self) -> None:
        document = QueueDocument(
            mutations=sorted(self._mutations.values(), key=lambda m: m.sequence),
            conflict_log=self.conflict_log.entries,
        )
        report = await self.store.save(document)
        if not report.changed:
            return
        for mutation_id in report.dropped_mutation_ids:
            self._mutations.pop(mutation_id, None)
        self.conflict_log.replace(document.conflict_log)
        if report.overflow is not None:
            self.notifier.overflow(report.overflow)

    def _notify_status(self) -> None:
        self.notifier.status_changed(self.get_status)
