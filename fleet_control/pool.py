# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the SAGE project

"""Worker pool: owns instance lifecycles and publishes routing snapshots.

The pool is the single owner of the instance collection. Readers never see
it directly; they get a ``PoolSnapshot`` that is swapped atomically under a
lock every time routable membership or reported load changes. Scaling
decisions are applied one at a time.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .config import PoolConfig
from .exceptions import ProvisioningTimeout, UnknownInstanceError
from .persistence import StateStore
from .protocols import Provisioner
from .types import (
    HealthStatus,
    PoolSnapshot,
    ScalingDecision,
    WorkerInstance,
    WorkerState,
)

logger = logging.getLogger(__name__)

# Snapshot versions are reserved in blocks so the state file is written
# once per block instead of once per publication.
VERSION_RESERVATION_BLOCK = 1000

MAX_EVENTS = 200


@dataclass(frozen=True)
class PoolEvent:
    """Operator-visible lifecycle event."""

    timestamp: float
    kind: str
    instance_id: str | None
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "kind": self.kind,
            "instance_id": self.instance_id,
            "message": self.message,
        }


@dataclass
class ApplyResult:
    """Outcome of ``WorkerPool.apply_scaling_decision``."""

    accepted: bool
    reason: str = ""
    provisioned: list[str] = field(default_factory=list)
    draining: list[str] = field(default_factory=list)


class WorkerPool:
    """
    Owns the set of worker instances.

    Lifecycle: PROVISIONING -> READY -> DRAINING -> TERMINATED. An instance
    is routable (and part of the snapshot) while READY and not UNHEALTHY.
    """

    def __init__(
        self,
        provisioner: Provisioner,
        config: PoolConfig | None = None,
        *,
        min_instances: int = 0,
        max_instances: int = 10,
        state_store: StateStore | None = None,
        initial_version: int = 0,
        last_decision: ScalingDecision | None = None,
        clock: Callable[[], float] = time.time,
        maintenance_interval: float = 5.0,
    ):
        """
        Initialize the pool.

        Args:
            provisioner: Backend that launches and stops worker instances.
            config: Lifecycle timeouts and history bounds.
            min_instances: Lower bound for accepted scaling targets.
            max_instances: Upper bound for accepted scaling targets.
            state_store: Optional durable store for version and last decision.
            initial_version: Highest snapshot version a previous run may have
                published (restored from state); numbering continues above it.
            last_decision: Last applied decision (restored from state).
            clock: Time source for lifecycle timestamps.
            maintenance_interval: Period of the unhealthy reaping loop.
        """
        self.provisioner = provisioner
        self.config = config or PoolConfig()
        self.min_instances = min_instances
        self.max_instances = max_instances
        self.state_store = state_store
        self._clock = clock
        self.maintenance_interval = maintenance_interval

        self._instances: dict[str, WorkerInstance] = {}
        self._terminated: deque[WorkerInstance] = deque(
            maxlen=self.config.max_terminated_history
        )
        self._events: deque[PoolEvent] = deque(maxlen=MAX_EVENTS)

        self._publish_lock = threading.Lock()
        self._snapshot = PoolSnapshot(version=initial_version + 1, published_at=clock())
        self._reserved_version = initial_version

        self._apply_lock = asyncio.Lock()
        self._last_decision = last_decision
        self._reserve_versions()

        self._ready_events: dict[str, asyncio.Event] = {}
        self._drained_events: dict[str, asyncio.Event] = {}
        self._drain_tasks: dict[str, asyncio.Task] = {}
        self._watchdogs: dict[str, asyncio.Task] = {}
        self._change_event = asyncio.Event()

        self.running = False
        self._closing = False
        self._maintenance_task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Snapshot publication
    # ------------------------------------------------------------------
    def current_snapshot(self) -> PoolSnapshot:
        """Return the latest published snapshot. Never blocks on pool work."""
        with self._publish_lock:
            return self._snapshot

    def _publish(self) -> PoolSnapshot:
        views = tuple(
            instance.to_view()
            for instance in sorted(self._instances.values(), key=lambda i: i.instance_id)
            if instance.is_routable
        )
        with self._publish_lock:
            snapshot = PoolSnapshot(
                version=self._snapshot.version + 1,
                instances=views,
                published_at=self._clock(),
            )
            self._snapshot = snapshot

        self._reserve_versions()
        self._notify_change()
        return snapshot

    def _reserve_versions(self) -> None:
        version = self._snapshot.version
        if version > self._reserved_version:
            self._reserved_version = version + VERSION_RESERVATION_BLOCK
            self._persist()

    def _notify_change(self) -> None:
        event, self._change_event = self._change_event, asyncio.Event()
        event.set()

    async def wait_for_change(self, timeout: float) -> bool:
        """Wait until a snapshot is published or a slot is released.

        Returns:
            True if something changed before the timeout.
        """
        event = self._change_event
        try:
            await asyncio.wait_for(event.wait(), timeout=timeout)
        except TimeoutError:
            return False
        return True

    def _persist(self) -> None:
        if self.state_store is not None:
            self.state_store.save(self._reserved_version, self._last_decision)

    # ------------------------------------------------------------------
    # Scaling
    # ------------------------------------------------------------------
    @property
    def last_decision(self) -> ScalingDecision | None:
        return self._last_decision

    async def apply_scaling_decision(self, decision: ScalingDecision) -> ApplyResult:
        """
        Resize the pool towards ``decision.target_instances``.

        Decisions are applied one at a time. Scale-up launches the missing
        instances; scale-down moves the surplus to DRAINING and returns
        without waiting for the drains to finish.

        Returns:
            ApplyResult; ``accepted`` is False for stale or out-of-bounds
            decisions, which leave the pool untouched.
        """
        async with self._apply_lock:
            last = self._last_decision
            if last is not None and decision.decision_time < last.decision_time:
                reason = (
                    f"stale decision ({decision.decision_time:.3f} < "
                    f"{last.decision_time:.3f})"
                )
                logger.warning("Rejected scaling decision: %s", reason)
                return ApplyResult(accepted=False, reason=reason)

            target = decision.target_instances
            if not self.min_instances <= target <= self.max_instances:
                reason = (
                    f"target {target} outside [{self.min_instances}, {self.max_instances}]"
                )
                logger.warning("Rejected scaling decision: %s", reason)
                return ApplyResult(accepted=False, reason=reason)

            if self._closing:
                return ApplyResult(accepted=False, reason="pool is stopping")

            routable = [i for i in self._instances.values() if i.is_routable]
            provisioning = self._in_state(WorkerState.PROVISIONING)
            result = ApplyResult(accepted=True, reason=decision.reason.value)

            missing = target - (len(routable) + len(provisioning))
            surplus = len(routable) - target
            if missing > 0:
                logger.info(
                    "Scaling up by %d (routable=%d, provisioning=%d, target=%d)",
                    missing,
                    len(routable),
                    len(provisioning),
                    target,
                )
                launched = await asyncio.gather(
                    *(self._provision_one() for _ in range(missing))
                )
                result.provisioned = [i.instance_id for i in launched if i is not None]
            elif surplus > 0:
                victims = self.select_for_removal(routable, surplus)
                logger.info(
                    "Scaling down by %d (routable=%d, target=%d): %s",
                    surplus,
                    len(routable),
                    target,
                    [v.instance_id for v in victims],
                )
                for instance in victims:
                    self._start_drain(instance, reason="scale_down")
                result.draining = [v.instance_id for v in victims]

            self._last_decision = decision
            self._persist()
            self._record_event(
                decision.reason.value,
                None,
                f"target={target} provisioned={len(result.provisioned)} "
                f"draining={len(result.draining)}",
            )
            return result

    @staticmethod
    def select_for_removal(
        candidates: list[WorkerInstance], count: int
    ) -> list[WorkerInstance]:
        """Pick ``count`` instances to retire: lowest load first, then oldest."""
        ordered = sorted(
            candidates,
            key=lambda i: (i.load_metric, i.created_at, i.instance_id),
        )
        return ordered[:count]

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------
    def _generate_instance_id(self) -> str:
        return f"worker-{uuid.uuid4().hex[:8]}"

    async def _provision_one(self, attempt: int = 1) -> WorkerInstance | None:
        """Launch one instance, retrying launch failures up to the attempt bound."""
        max_attempts = self.config.max_provisioning_attempts
        while attempt <= max_attempts and not self._closing:
            instance_id = self._generate_instance_id()
            try:
                host, port, metadata = await asyncio.wait_for(
                    self.provisioner.provision(instance_id),
                    timeout=self.config.provisioning_timeout_sec,
                )
            except Exception as e:
                logger.error(
                    "Failed to provision %s (attempt %d/%d): %s",
                    instance_id,
                    attempt,
                    max_attempts,
                    e,
                )
                self._record_event("provision_failed", instance_id, str(e))
                attempt += 1
                continue

            instance = WorkerInstance(
                instance_id=instance_id,
                host=host,
                port=port,
                created_at=self._clock(),
                provisioning_attempt=attempt,
                metadata=dict(metadata or {}),
            )
            self._instances[instance_id] = instance
            self._ready_events[instance_id] = asyncio.Event()
            self._watchdogs[instance_id] = asyncio.create_task(
                self._watch_provisioning(instance)
            )
            self._record_event("provisioning", instance_id, f"{host}:{port} attempt {attempt}")
            logger.info(
                "Provisioning %s at %s:%d (attempt %d/%d)",
                instance_id,
                host,
                port,
                attempt,
                max_attempts,
            )
            return instance

        if attempt > max_attempts:
            logger.error("Giving up provisioning after %d attempts", max_attempts)
            self._record_event(
                "provision_exhausted", None, f"gave up after {max_attempts} attempts"
            )
        return None

    async def _watch_provisioning(self, instance: WorkerInstance) -> None:
        """Terminate and replace an instance that does not become Ready in time."""
        event = self._ready_events.get(instance.instance_id)
        if event is None:
            return
        timeout = self.config.provisioning_timeout_sec
        try:
            await asyncio.wait_for(event.wait(), timeout=timeout)
            return
        except TimeoutError:
            pass
        finally:
            self._watchdogs.pop(instance.instance_id, None)

        if instance.state != WorkerState.PROVISIONING:
            return

        error = ProvisioningTimeout(instance.instance_id, timeout, instance.provisioning_attempt)
        logger.warning("%s", error)
        self._record_event("provisioning_timeout", instance.instance_id, str(error))
        await self._terminate(instance)

        if self._closing:
            return
        if instance.provisioning_attempt < self.config.max_provisioning_attempts:
            await self._provision_one(attempt=instance.provisioning_attempt + 1)
        else:
            logger.error(
                "No replacement for %s: %d provisioning attempts exhausted",
                instance.instance_id,
                instance.provisioning_attempt,
            )
            self._record_event(
                "provision_exhausted",
                instance.instance_id,
                f"gave up after {instance.provisioning_attempt} attempts",
            )

    # ------------------------------------------------------------------
    # Health notifications (called by HealthProbe)
    # ------------------------------------------------------------------
    def mark_healthy(self, instance_id: str) -> bool:
        """
        Record a passing instance.

        A PROVISIONING instance becomes READY; a READY instance that was
        unhealthy returns to the snapshot.

        Returns:
            True if the pool changed.
        """
        instance = self._instances.get(instance_id)
        if instance is None:
            logger.debug("mark_healthy for unknown instance %s", instance_id)
            return False

        if instance.state == WorkerState.PROVISIONING:
            instance.state = WorkerState.READY
            instance.ready_at = self._clock()
            event = self._ready_events.pop(instance_id, None)
            if event is not None:
                event.set()
            logger.info(
                "Instance %s is READY (%.1fs after launch)",
                instance_id,
                instance.ready_at - instance.created_at,
            )
            self._record_event("ready", instance_id, instance.endpoint)
        elif instance.state == WorkerState.READY:
            if instance.unhealthy_since is not None:
                logger.info("Instance %s restored to routing", instance_id)
                self._record_event("recovered", instance_id, "restored to routing")
            instance.unhealthy_since = None
        else:
            return False

        self._publish()
        return True

    def mark_unhealthy(self, instance_id: str) -> bool:
        """Remove a Ready instance from routing. Returns True if the pool changed."""
        instance = self._instances.get(instance_id)
        if instance is None or instance.state != WorkerState.READY:
            return False

        if instance.unhealthy_since is None:
            instance.unhealthy_since = self._clock()
        logger.warning("Instance %s removed from routing (unhealthy)", instance_id)
        self._record_event("unhealthy", instance_id, "removed from routing")
        self._publish()
        return True

    def metrics_updated(self, instance_id: str) -> bool:
        """Republish so routing sees the instance's fresh load value."""
        instance = self._instances.get(instance_id)
        if instance is None or not instance.is_routable:
            return False
        self._publish()
        return True

    # ------------------------------------------------------------------
    # In-flight accounting (called by the router)
    # ------------------------------------------------------------------
    def acquire(self, instance_id: str) -> bool:
        """Count one more request on a routable instance.

        Returns:
            False if the instance is no longer routable.
        """
        instance = self._instances.get(instance_id)
        if instance is None or not instance.is_routable:
            return False
        instance.in_flight += 1
        return True

    def release(self, instance_id: str) -> None:
        instance = self._instances.get(instance_id)
        if instance is None:
            return
        instance.in_flight = max(0, instance.in_flight - 1)
        if instance.state == WorkerState.DRAINING and instance.in_flight == 0:
            event = self._drained_events.get(instance_id)
            if event is not None:
                event.set()
        self._notify_change()

    def in_flight(self, instance_id: str) -> int:
        instance = self._instances.get(instance_id)
        return instance.in_flight if instance else 0

    # ------------------------------------------------------------------
    # Draining and termination
    # ------------------------------------------------------------------
    def _start_drain(self, instance: WorkerInstance, reason: str) -> None:
        instance.state = WorkerState.DRAINING
        instance.drain_started_at = self._clock()
        drained = asyncio.Event()
        if instance.in_flight == 0:
            drained.set()
        self._drained_events[instance.instance_id] = drained

        logger.info(
            "Draining %s (%s, in_flight=%d, deadline=%.1fs)",
            instance.instance_id,
            reason,
            instance.in_flight,
            self.config.drain_deadline_sec,
        )
        self._record_event("draining", instance.instance_id, reason)
        self._publish()
        self._drain_tasks[instance.instance_id] = asyncio.create_task(
            self._drain(instance, drained)
        )

    async def _drain(self, instance: WorkerInstance, drained: asyncio.Event) -> None:
        try:
            await asyncio.wait_for(drained.wait(), timeout=self.config.drain_deadline_sec)
            logger.info("Instance %s drained", instance.instance_id)
        except TimeoutError:
            logger.warning(
                "Drain deadline reached for %s with %d requests in flight, terminating",
                instance.instance_id,
                instance.in_flight,
            )
            self._record_event(
                "drain_deadline", instance.instance_id, f"{instance.in_flight} in flight"
            )
        await self._terminate(instance)
        self._drain_tasks.pop(instance.instance_id, None)

    async def _terminate(self, instance: WorkerInstance) -> None:
        try:
            stopped = await asyncio.wait_for(
                self.provisioner.terminate(instance),
                timeout=self.config.terminate_timeout_sec,
            )
            if not stopped:
                logger.warning("Provisioner could not confirm %s stopped", instance.instance_id)
        except Exception as e:
            logger.error("Error terminating %s: %s", instance.instance_id, e)

        was_routable = instance.is_routable
        instance.state = WorkerState.TERMINATED
        instance.terminated_at = self._clock()
        self._instances.pop(instance.instance_id, None)
        self._ready_events.pop(instance.instance_id, None)
        self._drained_events.pop(instance.instance_id, None)
        self._terminated.append(instance)
        self._record_event("terminated", instance.instance_id, "")
        logger.info("Instance %s terminated", instance.instance_id)
        if was_routable:
            self._publish()

    def reap_unhealthy(self, now: float | None = None) -> list[str]:
        """Drain Ready instances that stayed unhealthy past the configured limit."""
        now = self._clock() if now is None else now
        reaped = []
        for instance in list(self._instances.values()):
            if (
                instance.state == WorkerState.READY
                and instance.health == HealthStatus.UNHEALTHY
                and instance.unhealthy_since is not None
                and now - instance.unhealthy_since >= self.config.unhealthy_termination_sec
            ):
                self._start_drain(instance, reason="unhealthy")
                reaped.append(instance.instance_id)
        return reaped

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def _in_state(self, state: WorkerState) -> list[WorkerInstance]:
        return [i for i in self._instances.values() if i.state == state]

    def probe_targets(self) -> list[WorkerInstance]:
        """Instances the health probe should check: Provisioning and Ready."""
        return [
            i
            for i in self._instances.values()
            if i.state in (WorkerState.PROVISIONING, WorkerState.READY)
        ]

    def find_instance(self, instance_id: str) -> WorkerInstance | None:
        return self._instances.get(instance_id)

    def get_instance(self, instance_id: str) -> WorkerInstance:
        instance = self._instances.get(instance_id)
        if instance is None:
            raise UnknownInstanceError(instance_id)
        return instance

    def list_instances(self, include_terminated: bool = False) -> list[WorkerInstance]:
        instances = list(self._instances.values())
        if include_terminated:
            instances.extend(self._terminated)
        return instances

    def counts(self) -> dict[str, int]:
        counts = {state.value: 0 for state in WorkerState}
        for instance in self._instances.values():
            counts[instance.state.value] += 1
        counts[WorkerState.TERMINATED.value] = len(self._terminated)
        counts["routable"] = sum(1 for i in self._instances.values() if i.is_routable)
        return counts

    def events(self, limit: int | None = None) -> list[PoolEvent]:
        events = list(self._events)
        return events[-limit:] if limit else events

    def _record_event(self, kind: str, instance_id: str | None, message: str) -> None:
        self._events.append(PoolEvent(self._clock(), kind, instance_id, message))

    def get_status(self) -> dict[str, Any]:
        snapshot = self.current_snapshot()
        return {
            "snapshot_version": snapshot.version,
            "counts": self.counts(),
            "instances": [i.to_dict() for i in self._instances.values()],
            "recently_terminated": [i.to_dict() for i in self._terminated],
            "last_decision": self._last_decision.to_dict() if self._last_decision else None,
        }

    # ------------------------------------------------------------------
    # Background maintenance
    # ------------------------------------------------------------------
    async def start(self) -> None:
        if self.running:
            return
        self.running = True
        self._closing = False
        self._maintenance_task = asyncio.create_task(self._maintenance_loop())
        logger.info(
            "Worker pool started (min=%d, max=%d, snapshot_version=%d)",
            self.min_instances,
            self.max_instances,
            self.current_snapshot().version,
        )

    async def stop(self) -> None:
        """Stop maintenance, force outstanding drains to terminate and persist state."""
        self._closing = True
        self.running = False

        if self._maintenance_task:
            self._maintenance_task.cancel()
            try:
                await self._maintenance_task
            except asyncio.CancelledError:
                pass
            self._maintenance_task = None

        watchdogs = list(self._watchdogs.values())
        for task in watchdogs:
            task.cancel()
        await asyncio.gather(*watchdogs, return_exceptions=True)

        for event in self._drained_events.values():
            event.set()
        drains = list(self._drain_tasks.values())
        if drains:
            logger.info("Forcing %d outstanding drains to terminate", len(drains))
            await asyncio.gather(*drains, return_exceptions=True)

        self._persist()
        logger.info("Worker pool stopped")

    async def _maintenance_loop(self) -> None:
        while self.running:
            try:
                reaped = self.reap_unhealthy()
                if reaped:
                    logger.warning("Reaping unhealthy instances: %s", reaped)
            except Exception as e:
                logger.error("Error in pool maintenance: %s", e, exc_info=True)
            await asyncio.sleep(self.maintenance_interval)
