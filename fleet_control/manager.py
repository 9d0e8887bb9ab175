# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the SAGE project

"""Control Plane Manager - wires the fleet components together."""

from __future__ import annotations

import logging
from typing import Any

from .autoscaler import Autoscaler
from .cache import CacheRouter
from .config import FleetConfig
from .data_router import DataRouter
from .health import HealthProbe
from .metrics import FleetMetricsCollector
from .persistence import PersistedState, StateStore
from .pool import WorkerPool
from .protocols import Provisioner
from .router import AdmissionRouter
from .types import InboundRequest, WorkerResponse
from .worker_client import HttpWorkerClient

logger = logging.getLogger(__name__)


class ControlPlane:
    """
    Fleet control plane.

    Data flow:
        HealthProbe -> WorkerPool (health transitions, load values)
        WorkerPool -> AdmissionRouter (snapshots, in-flight slots)
        WorkerPool + FleetMetricsCollector -> Autoscaler -> WorkerPool (resize)

    The CacheRouter and DataRouter are independent of the pool; workers and
    the router consult them directly.
    """

    def __init__(
        self,
        config: FleetConfig,
        provisioner: Provisioner,
        *,
        worker_client: HttpWorkerClient | None = None,
        cache_router: CacheRouter | None = None,
        data_router: DataRouter | None = None,
    ):
        """
        Initialize the control plane.

        Args:
            config: Validated fleet configuration.
            provisioner: Backend that launches and stops workers.
            worker_client: Client used for probes and request forwarding.
            cache_router: Cache cluster client (session affinity and callers).
            data_router: Read/write splitter for the data tier.
        """
        config.validate()
        self.config = config

        self.state_store = StateStore(config.state_file) if config.state_file else None
        restored = self.state_store.load() if self.state_store else PersistedState()

        self.pool = WorkerPool(
            provisioner,
            config.pool,
            min_instances=config.autoscaler.min_instances,
            max_instances=config.autoscaler.max_instances,
            state_store=self.state_store,
            initial_version=restored.snapshot_version,
            last_decision=restored.last_decision,
        )
        self.worker_client = worker_client or HttpWorkerClient(
            readiness_path=config.health.readiness_path,
            forward_timeout=config.admission.forward_timeout_sec,
        )
        self.health_probe = HealthProbe(config.health, self.pool, self.worker_client)
        self.metrics_collector = FleetMetricsCollector(
            self.pool,
            max_age_sec=config.autoscaler.metrics_max_age_sec,
            smoothing=config.autoscaler.load_smoothing,
            window_size=config.autoscaler.load_window,
        )
        self.autoscaler = Autoscaler(config.autoscaler, self.pool, self.metrics_collector)
        self.cache_router = cache_router
        self.data_router = data_router
        self.router = AdmissionRouter(
            self.pool,
            config.admission,
            cache=cache_router,
            client=self.worker_client,
        )

        self._running = False

    async def start(self) -> None:
        """Start the control plane."""
        if self._running:
            logger.warning("Control Plane already running")
            return

        logger.info("Starting Control Plane...")
        self._running = True

        await self.worker_client.initialize()
        await self.pool.start()
        await self.health_probe.start()
        if self.data_router:
            await self.data_router.start()
        await self.autoscaler.start()

        logger.info("Control Plane started")

    async def stop(self) -> None:
        """Stop the control plane."""
        if not self._running:
            return

        logger.info("Stopping Control Plane...")
        self._running = False

        await self.autoscaler.stop()
        await self.health_probe.stop()
        await self.pool.stop()
        if self.data_router:
            await self.data_router.stop()
        if self.cache_router:
            await self.cache_router.close()
        await self.worker_client.cleanup()

        logger.info("Control Plane stopped")

    @property
    def running(self) -> bool:
        return self._running

    async def dispatch(self, request: InboundRequest) -> WorkerResponse:
        """Admit and forward one inbound request."""
        return await self.router.dispatch(request)

    def get_status(self) -> dict[str, Any]:
        """Get Control Plane status."""
        snapshot = self.pool.current_snapshot()
        last_decision = self.autoscaler.last_decision
        status: dict[str, Any] = {
            "running": self._running,
            "snapshot_version": snapshot.version,
            "pool_size": len(self.pool.list_instances()),
            "ready_instances": snapshot.ready_count,
            "counts": self.pool.counts(),
            "instances": [
                {
                    "instance_id": instance.instance_id,
                    "endpoint": instance.endpoint,
                    "state": instance.state.value,
                    "health": instance.health.value,
                    "load_metric": instance.load_metric,
                    "in_flight": instance.in_flight,
                }
                for instance in sorted(self.pool.list_instances(), key=lambda i: i.instance_id)
            ],
            "last_decision": last_decision.to_dict() if last_decision else None,
            "last_applied_decision": (
                self.pool.last_decision.to_dict() if self.pool.last_decision else None
            ),
            "autoscaler": self.autoscaler.get_status(),
            "router": self.router.get_stats(),
            "events": [event.to_dict() for event in self.pool.events(limit=20)],
        }
        if self.cache_router:
            status["cache"] = self.cache_router.get_status()
        if self.data_router:
            status["data_router"] = self.data_router.get_status()
        return status
