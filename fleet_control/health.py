# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the SAGE project

"""Readiness probing of worker instances.

Each probe target gets its own asyncio task so that a slow or hanging
instance never delays the checks of the others. The probe is the only
writer of an instance's health fields; it reports transitions to the pool
through ``mark_healthy``/``mark_unhealthy`` and never changes pool
membership itself.

Health policy:

    UNKNOWN   --first success-------------------------> HEALTHY
    HEALTHY   --failure (< K in a row)----------------> DEGRADED
    DEGRADED  --success-------------------------------> HEALTHY
    HEALTHY/DEGRADED --K consecutive failures---------> UNHEALTHY
    UNHEALTHY --M consecutive successes---------------> HEALTHY

Failures of an UNKNOWN (still provisioning) instance do not escalate; the
pool's provisioning timeout decides its fate.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .config import HealthConfig
from .exceptions import TransientProbeFailure
from .protocols import HealthCheckable
from .types import HealthStatus, ReadinessReport, WorkerInstance, WorkerState

if TYPE_CHECKING:
    from .pool import WorkerPool

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of one probe after the health policy was applied."""

    instance_id: str
    status: HealthStatus
    load_metric: float | None = None
    error: str | None = None
    transitioned: bool = False


class HealthProbe:
    """Periodically probes every Provisioning and Ready instance of a pool."""

    def __init__(
        self,
        config: HealthConfig,
        pool: WorkerPool,
        checker: HealthCheckable,
        *,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the health probe.

        Args:
            config: Probe interval, timeout and K/M thresholds.
            pool: Pool whose members are probed and which receives transitions.
            checker: Performs the actual readiness call.
            clock: Time source for ``last_health_check`` stamps.
        """
        self.config = config
        self.pool = pool
        self.checker = checker
        self._clock = clock

        self.running = False
        self._supervisor: asyncio.Task | None = None
        self._probe_tasks: dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Single probe
    # ------------------------------------------------------------------
    async def probe(self, instance: WorkerInstance) -> ProbeResult:
        """Probe one instance and apply the health policy to the outcome."""
        timeout = self.config.timeout_sec
        try:
            report = await asyncio.wait_for(
                self.checker.check_readiness(instance, timeout), timeout=timeout
            )
        except TransientProbeFailure as failure:
            return self.record_failure(instance, failure)
        except TimeoutError:
            return self.record_failure(
                instance,
                TransientProbeFailure(
                    instance.instance_id, f"timeout after {timeout}s", timed_out=True
                ),
            )
        except Exception as e:
            return self.record_failure(
                instance, TransientProbeFailure(instance.instance_id, f"{type(e).__name__}: {e}")
            )

        if not report.ready:
            return self.record_failure(
                instance,
                TransientProbeFailure(
                    instance.instance_id, f"not ready {report.detail}".strip()
                ),
            )
        return self.record_success(instance, report)

    def record_success(self, instance: WorkerInstance, report: ReadinessReport) -> ProbeResult:
        instance.last_health_check = self._clock()
        previous_load = instance.load_metric
        instance.load_metric = report.load
        instance.consecutive_failures = 0
        instance.consecutive_successes += 1

        if not self._still_probed(instance):
            return ProbeResult(instance.instance_id, instance.health, report.load)

        previous = instance.health
        if previous == HealthStatus.UNHEALTHY:
            if instance.consecutive_successes < self.config.success_threshold:
                logger.debug(
                    "Instance %s recovering (%d/%d successes)",
                    instance.instance_id,
                    instance.consecutive_successes,
                    self.config.success_threshold,
                )
                return ProbeResult(instance.instance_id, previous, report.load)
            instance.health = HealthStatus.HEALTHY
            logger.info(
                "Instance %s recovered after %d consecutive successes",
                instance.instance_id,
                instance.consecutive_successes,
            )
            self.pool.mark_healthy(instance.instance_id)
        elif previous == HealthStatus.UNKNOWN:
            instance.health = HealthStatus.HEALTHY
            self.pool.mark_healthy(instance.instance_id)
        else:
            instance.health = HealthStatus.HEALTHY
            if report.load != previous_load:
                self.pool.metrics_updated(instance.instance_id)

        return ProbeResult(
            instance.instance_id,
            instance.health,
            report.load,
            transitioned=previous != instance.health,
        )

    def record_failure(
        self,
        instance: WorkerInstance,
        failure: TransientProbeFailure,
    ) -> ProbeResult:
        instance.last_health_check = self._clock()
        instance.consecutive_successes = 0
        instance.consecutive_failures += 1

        previous = instance.health
        if not self._still_probed(instance) or previous == HealthStatus.UNKNOWN:
            logger.debug("Probe of %s failed before first success: %s", instance.instance_id, failure)
            return ProbeResult(instance.instance_id, previous, error=failure.reason)

        if previous == HealthStatus.UNHEALTHY:
            return ProbeResult(instance.instance_id, previous, error=failure.reason)

        if instance.consecutive_failures >= self.config.failure_threshold:
            instance.health = HealthStatus.UNHEALTHY
            logger.warning(
                "Instance %s marked UNHEALTHY after %d consecutive failures (last: %s)",
                instance.instance_id,
                instance.consecutive_failures,
                failure.reason,
            )
            self.pool.mark_unhealthy(instance.instance_id)
        else:
            instance.health = HealthStatus.DEGRADED
            logger.warning(
                "Probe of %s failed (%d/%d): %s",
                instance.instance_id,
                instance.consecutive_failures,
                self.config.failure_threshold,
                failure.reason,
            )

        return ProbeResult(
            instance.instance_id,
            instance.health,
            error=failure.reason,
            transitioned=previous != instance.health,
        )

    def _still_probed(self, instance: WorkerInstance) -> bool:
        # The instance may have started draining while the probe was in flight
        return instance.state in (WorkerState.PROVISIONING, WorkerState.READY)

    async def probe_all(self) -> dict[str, ProbeResult]:
        """Probe every current target concurrently, once."""
        targets = self.pool.probe_targets()
        if not targets:
            return {}

        results = await asyncio.gather(
            *(self.probe(instance) for instance in targets), return_exceptions=True
        )

        outcome: dict[str, ProbeResult] = {}
        for instance, result in zip(targets, results, strict=False):
            if isinstance(result, BaseException):
                logger.error("Probe of %s raised: %s", instance.instance_id, result)
                continue
            outcome[instance.instance_id] = result
        return outcome

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------
    async def start(self) -> None:
        """Start probing pool members in the background."""
        if self.running:
            logger.warning("Health probe already running")
            return

        self.running = True
        self._supervisor = asyncio.create_task(self._supervise_loop())
        logger.info(
            "Health probe started (interval=%.1fs, timeout=%.1fs, K=%d, M=%d)",
            self.config.interval_sec,
            self.config.timeout_sec,
            self.config.failure_threshold,
            self.config.success_threshold,
        )

    async def stop(self) -> None:
        """Stop the supervisor and every per-instance probe task."""
        if not self.running:
            return

        self.running = False
        tasks = list(self._probe_tasks.values())
        if self._supervisor:
            tasks.append(self._supervisor)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._probe_tasks.clear()
        self._supervisor = None
        logger.info("Health probe stopped")

    def reconcile(self) -> None:
        """Start probe tasks for new targets and cancel those of departed ones."""
        targets = {instance.instance_id: instance for instance in self.pool.probe_targets()}

        for instance_id in list(self._probe_tasks):
            task = self._probe_tasks[instance_id]
            if instance_id not in targets or task.done():
                task.cancel()
                del self._probe_tasks[instance_id]

        for instance_id, instance in targets.items():
            if instance_id not in self._probe_tasks:
                self._probe_tasks[instance_id] = asyncio.create_task(self._probe_loop(instance))
                logger.debug("Started probing %s", instance_id)

    @property
    def probed_instance_ids(self) -> set[str]:
        return set(self._probe_tasks)

    async def _supervise_loop(self) -> None:
        period = min(self.config.interval_sec, 1.0)
        while self.running:
            try:
                self.reconcile()
            except Exception as e:
                logger.error("Error reconciling probe targets: %s", e, exc_info=True)
            await asyncio.sleep(period)

    async def _probe_loop(self, instance: WorkerInstance) -> None:
        while self.running and instance.state in (WorkerState.PROVISIONING, WorkerState.READY):
            try:
                await self.probe(instance)
            except Exception as e:
                logger.error("Unexpected error probing %s: %s", instance.instance_id, e, exc_info=True)
            await asyncio.sleep(self.config.interval_sec)
