"""
Sync orchestrator.

Owns the worker pool that executes sync runs and enforces, per entity type,
that at most one run touches that entity's pending records at a time.
Requests arriving while a run is in flight are coalesced into a single
follow-up run; requests whose preconditions are unmet are deferred until
the host reports a change in device conditions.
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional, Union

from ..core.config import settings
from ..core.errors import StorageError
from ..models.registry import SYNC_ORDER, EntityType
from .device_conditions import (
    ONE_SHOT_CONSTRAINTS,
    PERIODIC_CONSTRAINTS,
    DeviceConditions,
    SyncConstraints,
)
from .sync_engine import SyncEngine, SyncOutcome, SyncRunResult

logger = logging.getLogger(__name__)


class TriggerState(str, Enum):
    STARTED = "started"
    COALESCED = "coalesced"   # folded into the run already in flight
    DEFERRED = "deferred"     # preconditions unmet, will start when they are
    REJECTED = "rejected"     # orchestrator is shutting down


class BackoffPolicy:
    """Delay before an early retry, derived from the run outcome."""

    def __init__(self, base_delay: Optional[float] = None, max_delay: Optional[float] = None):
        self.base_delay = settings.RETRY_BASE_DELAY_SECONDS if base_delay is None else base_delay
        self.max_delay = settings.RETRY_MAX_DELAY_SECONDS if max_delay is None else max_delay

    def next_delay(self, outcome: SyncOutcome, consecutive_failures: int = 1) -> Optional[float]:
        if outcome is SyncOutcome.SUCCESS:
            return None
        if outcome is SyncOutcome.PARTIAL:
            return self.base_delay
        exponent = max(consecutive_failures - 1, 0)
        return min(self.base_delay * (2 ** exponent), self.max_delay)


@dataclass
class EntitySyncStatus:
    entity_type: EntityType
    is_syncing: bool = False
    pending_count: int = 0
    parked_count: int = 0           # pending but held back for an operator
    deferred: bool = False
    last_result: Optional[SyncRunResult] = None
    last_error: Optional[str] = None

    @property
    def is_out_of_sync(self) -> bool:
        """What the UI shows as "offline / pending sync"."""
        if self.pending_count > 0 or self.last_error:
            return True
        return self.last_result is not None and self.last_result.fail_count > 0

    def to_dict(self) -> dict:
        result = self.last_result
        return {
            "entity_type": self.entity_type.value,
            "is_syncing": self.is_syncing,
            "pending_count": self.pending_count,
            "parked_count": self.parked_count,
            "deferred": self.deferred,
            "is_out_of_sync": self.is_out_of_sync,
            "last_outcome": result.outcome.value if result else None,
            "last_success_count": result.success_count if result else None,
            "last_fail_count": result.fail_count if result else None,
            "last_run_at": result.finished_at if result else None,
            "last_error": self.last_error,
        }


@dataclass
class _EntitySlot:
    engine: SyncEngine
    run_lock: threading.Lock = field(default_factory=threading.Lock)
    scheduled: bool = False          # a background run is queued or executing
    active: bool = False             # engine.run() is executing right now
    rerun_requested: bool = False
    deferred: Optional[SyncConstraints] = None
    cancel_event: threading.Event = field(default_factory=threading.Event)
    periodic_stop: Optional[threading.Event] = None
    periodic_thread: Optional[threading.Thread] = None
    retry_timer: Optional[threading.Timer] = None
    consecutive_failures: int = 0
    last_result: Optional[SyncRunResult] = None
    last_error: Optional[str] = None


class SyncOrchestrator:
    """
    Entry point for "sync now" and "sync periodically".

    Usage:
        orchestrator = SyncOrchestrator(engines, conditions)
        orchestrator.schedule_periodic(EntityType.VISIT, timedelta(minutes=15))
        orchestrator.trigger_now(EntityType.VISIT)
        ...
        orchestrator.shutdown()
    """

    def __init__(
        self,
        engines: Dict[EntityType, SyncEngine],
        conditions: Optional[DeviceConditions] = None,
        max_workers: Optional[int] = None,
        backoff: Optional[BackoffPolicy] = None,
        retry_failed_runs: bool = True,
    ):
        self.conditions = conditions or DeviceConditions()
        self.backoff = backoff or BackoffPolicy()
        self.retry_failed_runs = retry_failed_runs
        self._slots = {EntityType(et): _EntitySlot(engine=engine) for et, engine in engines.items()}
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or settings.SYNC_WORKERS,
            thread_name_prefix="sync",
        )
        self._lock = threading.RLock()
        self._idle = threading.Condition(self._lock)
        self._status_listeners: List[Callable[[EntitySyncStatus], None]] = []
        self._closed = False

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def trigger_now(
        self,
        entity_type: Union[EntityType, str],
        constraints: SyncConstraints = ONE_SHOT_CONSTRAINTS,
    ) -> TriggerState:
        entity_type = EntityType(entity_type)
        slot = self._slot(entity_type)
        state = self._rejected_or_coalesced(entity_type, slot)
        if state is not None:
            return state
        # Outside the lock: a connectivity check may block on the network
        reasons = constraints.unmet(self.conditions)
        with self._lock:
            state = self._rejected_or_coalesced(entity_type, slot)
            if state is not None:
                return state
            if reasons:
                slot.deferred = constraints
                logger.info("Deferring %s sync: %s", entity_type.value, ", ".join(reasons))
                state = TriggerState.DEFERRED
            else:
                slot.deferred = None
                slot.scheduled = True
                self._executor.submit(self._run_in_background, entity_type, constraints)
                logger.info("Starting immediate %s sync", entity_type.value)
                state = TriggerState.STARTED
        self._publish(entity_type)
        return state

    def _rejected_or_coalesced(self, entity_type: EntityType, slot: _EntitySlot) -> Optional[TriggerState]:
        with self._lock:
            if self._closed:
                return TriggerState.REJECTED
            if slot.scheduled:
                slot.rerun_requested = True
                logger.debug("%s sync already in flight; coalescing request", entity_type.value)
                return TriggerState.COALESCED
        return None

    def trigger_all(self) -> Dict[EntityType, TriggerState]:
        """Trigger every entity type, parents before the entities referencing them."""
        return {et: self.trigger_now(et) for et in SYNC_ORDER if et in self._slots}

    def on_conditions_changed(self) -> Dict[EntityType, TriggerState]:
        """Host callback for connectivity/power changes: start deferred runs."""
        with self._lock:
            deferred = [(et, slot.deferred) for et, slot in self._slots.items() if slot.deferred]
        return {et: self.trigger_now(et, constraints) for et, constraints in deferred}

    def on_run_requested(self, entity_type: Union[EntityType, str]) -> SyncRunResult:
        """Blocking run for a host-provided scheduler.

        Waits for any in-flight run of the same entity type to finish first.
        Storage failures propagate to the host.
        """
        entity_type = EntityType(entity_type)
        return self._execute(entity_type, self._slot(entity_type), propagate=True)

    # ------------------------------------------------------------------
    # Periodic scheduling
    # ------------------------------------------------------------------

    def schedule_periodic(
        self,
        entity_type: Union[EntityType, str],
        interval: Union[timedelta, float],
        constraints: SyncConstraints = PERIODIC_CONSTRAINTS,
    ) -> bool:
        """Start a periodic trigger. An existing schedule is kept (returns False)."""
        entity_type = EntityType(entity_type)
        seconds = interval.total_seconds() if isinstance(interval, timedelta) else float(interval)
        if seconds <= 0:
            raise ValueError("Sync interval must be positive")
        slot = self._slot(entity_type)
        with self._lock:
            if self._closed or slot.periodic_thread is not None:
                return False
            stop = threading.Event()
            thread = threading.Thread(
                target=self._periodic_loop,
                args=(entity_type, seconds, constraints, stop),
                daemon=True,
                name=f"sync-periodic-{entity_type.value}",
            )
            slot.periodic_stop = stop
            slot.periodic_thread = thread
        thread.start()
        logger.info("Periodic %s sync every %.0fs", entity_type.value, seconds)
        return True

    def schedule_default_periodic(self) -> None:
        intervals = {
            EntityType.PATIENT: settings.PATIENT_SYNC_INTERVAL_MINUTES,
            EntityType.VISIT: settings.VISIT_SYNC_INTERVAL_MINUTES,
            EntityType.PROTOCOL: settings.PROTOCOL_SYNC_INTERVAL_MINUTES,
        }
        for entity_type in SYNC_ORDER:
            if entity_type in self._slots:
                self.schedule_periodic(entity_type, timedelta(minutes=intervals[entity_type]))

    def _periodic_loop(self, entity_type, seconds, constraints, stop: threading.Event) -> None:
        while not stop.wait(timeout=seconds):
            self.trigger_now(entity_type, constraints)

    # ------------------------------------------------------------------
    # Cancellation and shutdown
    # ------------------------------------------------------------------

    def cancel(self, entity_type: Union[EntityType, str]) -> None:
        """Stop periodic and retry triggers and cancel the in-flight run."""
        entity_type = EntityType(entity_type)
        slot = self._slot(entity_type)
        with self._lock:
            thread = self._stop_triggers(slot)
            slot.rerun_requested = False
            slot.deferred = None
            slot.cancel_event.set()
        if thread is not None:
            thread.join(timeout=5)
        logger.info("Cancelled %s sync work", entity_type.value)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            threads = [self._stop_triggers(slot) for slot in self._slots.values()]
            for slot in self._slots.values():
                slot.rerun_requested = False
                slot.cancel_event.set()
        for thread in threads:
            if thread is not None:
                thread.join(timeout=5)
        # Each engine finishes the record it is on before honouring the cancel
        self._executor.shutdown(wait=wait)
        logger.info("Sync orchestrator stopped")

    def wait_idle(self, entity_type: Optional[Union[EntityType, str]] = None, timeout: Optional[float] = None) -> bool:
        """Block until no background run is queued or executing."""
        targets = [self._slot(entity_type)] if entity_type is not None else list(self._slots.values())
        with self._idle:
            return self._idle.wait_for(lambda: not any(s.scheduled for s in targets), timeout=timeout)

    # ------------------------------------------------------------------
    # Status (presentation-layer boundary)
    # ------------------------------------------------------------------

    def status(self, entity_type: Union[EntityType, str]) -> EntitySyncStatus:
        entity_type = EntityType(entity_type)
        slot = self._slot(entity_type)
        engine = slot.engine
        pending = engine.store.pending_count(engine.model)
        parked = engine.store.parked_count(engine.model)
        with self._lock:
            return EntitySyncStatus(
                entity_type=entity_type,
                is_syncing=slot.active or slot.scheduled,
                pending_count=pending,
                parked_count=parked,
                deferred=slot.deferred is not None,
                last_result=slot.last_result,
                last_error=slot.last_error,
            )

    def parked(self, entity_type: Union[EntityType, str]) -> List[object]:
        """Records automatic sync gave up on, for operator inspection."""
        engine = self._slot(entity_type).engine
        return engine.store.parked(engine.model)

    def release(self, entity_type: Union[EntityType, str], record_id: str) -> Optional[TriggerState]:
        """Hand a parked record back to sync and trigger a run. None if it was not parked."""
        entity_type = EntityType(entity_type)
        engine = self._slot(entity_type).engine
        if not engine.store.release(engine.model, record_id):
            return None
        return self.trigger_now(entity_type)

    def statuses(self) -> List[EntitySyncStatus]:
        return [self.status(et) for et in SYNC_ORDER if et in self._slots]

    def is_syncing(self) -> bool:
        with self._lock:
            return any(slot.active or slot.scheduled for slot in self._slots.values())

    def subscribe_status(self, callback: Callable[[EntitySyncStatus], None]) -> Callable[[], None]:
        with self._lock:
            self._status_listeners.append(callback)
        for status in self.statuses():
            callback(status)

        def unsubscribe():
            with self._lock:
                if callback in self._status_listeners:
                    self._status_listeners.remove(callback)

        return unsubscribe

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _slot(self, entity_type) -> _EntitySlot:
        try:
            return self._slots[EntityType(entity_type)]
        except KeyError:
            raise KeyError(f"No sync engine registered for {entity_type}") from None

    def _run_in_background(self, entity_type: EntityType, constraints: SyncConstraints) -> None:
        slot = self._slots[entity_type]
        result = None
        finished = False
        try:
            while not finished:
                result = self._execute(entity_type, slot, propagate=False)
                finished = self._finish_or_rerun(entity_type, slot, constraints)
        except Exception as exc:
            # Nobody waits on the worker's future, so this is the only report
            logger.exception("Background %s sync crashed", entity_type.value)
            with self._lock:
                slot.last_error = str(exc) or type(exc).__name__
                slot.consecutive_failures += 1
            result = None
        finally:
            if not finished:
                with self._idle:
                    slot.scheduled = False
                    self._idle.notify_all()
        self._schedule_retry(entity_type, slot, result)
        self._publish(entity_type)

    def _finish_or_rerun(self, entity_type: EntityType, slot: _EntitySlot, constraints: SyncConstraints) -> bool:
        """Claim a coalesced follow-up run (False) or mark the slot idle (True).

        The slot stays scheduled while the follow-up's preconditions are
        checked, so a request arriving meanwhile is coalesced again; one
        arriving after the slot goes idle starts a fresh run. None is lost.
        """
        while True:
            with self._idle:
                if not slot.rerun_requested or self._closed:
                    slot.scheduled = False
                    self._idle.notify_all()
                    return True
                slot.rerun_requested = False
            reasons = constraints.unmet(self.conditions)
            if not reasons:
                logger.debug("Running coalesced follow-up %s sync", entity_type.value)
                return False
            with self._lock:
                slot.deferred = constraints
            logger.info("Deferring follow-up %s sync: %s", entity_type.value, ", ".join(reasons))

    def _execute(self, entity_type: EntityType, slot: _EntitySlot, propagate: bool) -> Optional[SyncRunResult]:
        with slot.run_lock:
            with self._lock:
                if slot.cancel_event.is_set() and not self._closed:
                    slot.cancel_event = threading.Event()
                cancel_event = slot.cancel_event
                slot.active = True
            self._publish(entity_type)
            result = None
            try:
                result = slot.engine.run(cancel_event=cancel_event)
            except StorageError as exc:
                with self._lock:
                    slot.last_error = str(exc)
                    slot.consecutive_failures += 1
                if propagate:
                    raise
                logger.error("%s sync aborted: %s", entity_type.value, exc)
            else:
                with self._lock:
                    slot.last_result = result
                    slot.last_error = None
                    if result.outcome is SyncOutcome.FAILURE:
                        slot.consecutive_failures += 1
                    else:
                        slot.consecutive_failures = 0
            finally:
                with self._lock:
                    slot.active = False
                self._publish(entity_type)
            return result

    def _schedule_retry(self, entity_type: EntityType, slot: _EntitySlot, result: Optional[SyncRunResult]) -> None:
        if not self.retry_failed_runs:
            return
        if result is None:
            outcome = SyncOutcome.FAILURE
        elif result.cancelled:
            return
        else:
            outcome = result.outcome
        delay = self.backoff.next_delay(outcome, max(slot.consecutive_failures, 1))
        if delay is None:
            return
        with self._lock:
            if self._closed:
                return
            if slot.retry_timer is not None:
                slot.retry_timer.cancel()
            timer = threading.Timer(delay, self.trigger_now, args=(entity_type,))
            timer.daemon = True
            slot.retry_timer = timer
            timer.start()
        logger.info("%s sync %s; retrying in %.0fs", entity_type.value, outcome.value, delay)

    def _stop_triggers(self, slot: _EntitySlot) -> Optional[threading.Thread]:
        if slot.retry_timer is not None:
            slot.retry_timer.cancel()
            slot.retry_timer = None
        thread = slot.periodic_thread
        if slot.periodic_stop is not None:
            slot.periodic_stop.set()
        slot.periodic_stop = None
        slot.periodic_thread = None
        return thread

    def _publish(self, entity_type: EntityType) -> None:
        with self._lock:
            listeners = list(self._status_listeners)
        if not listeners:
            return
        status = self.status(entity_type)
        for callback in listeners:
            try:
                callback(status)
            except Exception:
                logger.exception("Sync status listener failed")
