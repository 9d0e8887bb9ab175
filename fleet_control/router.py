# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the SAGE project

"""Front-door admission and routing of inbound requests to workers."""

import asyncio
import logging
from typing import Optional

from .cache import CacheRouter
from .config import AdmissionConfig
from .exceptions import CapacityExhausted
from .pool import WorkerPool
from .protocols import Routable
from .types import InboundRequest, PoolSnapshot, RouteDecision, WorkerResponse, WorkerView

logger = logging.getLogger(__name__)


class AdmissionRouter:
    """
    Admits requests against per-instance in-flight ceilings and picks a worker.

    Selection is weighted least-connections over the latest snapshot: an
    instance's weight is ``1 / (load + epsilon)`` and the instance with the
    lowest ``(in_flight + 1) / weight`` wins, ties broken by instance id.

    An admitted RouteDecision holds one in-flight slot on its instance; the
    caller must hand it back through ``release``. ``dispatch`` does both.
    """

    # Keeps idle instances with zero reported load comparable
    LOAD_EPSILON = 0.05

    def __init__(
        self,
        pool: WorkerPool,
        config: Optional[AdmissionConfig] = None,
        cache: Optional[CacheRouter] = None,
        client: Optional[Routable] = None,
    ):
        """
        Initialize the router.

        Args:
            pool: Source of snapshots and owner of in-flight counters
            config: Ceiling, queueing and affinity settings
            cache: Cache cluster holding session affinity entries
            client: Forwards admitted requests to workers (used by dispatch)
        """
        self.pool = pool
        self.config = config or AdmissionConfig()
        self.cache = cache
        self.client = client

        self._waiting = 0
        self.stats = {
            "admitted": 0,
            "rejected": 0,
            "affinity_hits": 0,
            "queued": 0,
            "queue_timeouts": 0,
            "forward_errors": 0,
        }

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------
    def has_room(self, view: WorkerView) -> bool:
        return self.pool.in_flight(view.instance_id) < self.config.per_instance_inflight_ceiling

    def score(self, view: WorkerView) -> float:
        weight = 1.0 / (view.load_metric + self.LOAD_EPSILON)
        return (self.pool.in_flight(view.instance_id) + 1) / weight

    def select(
        self, snapshot: PoolSnapshot, exclude: frozenset[str] = frozenset()
    ) -> Optional[WorkerView]:
        """Pick the best instance under its ceiling, or None."""
        candidates = [
            view
            for view in snapshot.instances
            if view.instance_id not in exclude and self.has_room(view)
        ]
        if not candidates:
            return None
        return min(candidates, key=lambda v: (self.score(v), v.instance_id))

    def _try_admit(
        self,
        request: InboundRequest,
        pinned: Optional[str],
        queued: bool = False,
    ) -> Optional[RouteDecision]:
        # No awaits between selection and acquire: a slot is either taken or not
        snapshot = self.pool.current_snapshot()

        if pinned:
            view = snapshot.get(pinned)
            if view is not None and self.has_room(view) and self.pool.acquire(pinned):
                self.stats["affinity_hits"] += 1
                return RouteDecision(
                    request_id=request.request_id,
                    admitted=True,
                    instance=view,
                    reason="affinity",
                    snapshot_version=snapshot.version,
                    affinity_hit=True,
                    queued=queued,
                )

        excluded: set[str] = set()
        while True:
            view = self.select(snapshot, frozenset(excluded))
            if view is None:
                return None
            if self.pool.acquire(view.instance_id):
                return RouteDecision(
                    request_id=request.request_id,
                    admitted=True,
                    instance=view,
                    reason="least_connections",
                    snapshot_version=snapshot.version,
                    queued=queued,
                )
            # Left routing after the snapshot was published
            excluded.add(view.instance_id)

    def _reject(self, request: InboundRequest, queued: bool = False) -> RouteDecision:
        snapshot = self.pool.current_snapshot()
        if not snapshot.instances:
            reason = "no ready instances"
        else:
            reason = (
                f"all {snapshot.ready_count} instances at in-flight ceiling "
                f"{self.config.per_instance_inflight_ceiling}"
            )
        self.stats["rejected"] += 1
        logger.warning("Rejected request %s: %s", request.request_id, reason)
        return RouteDecision(
            request_id=request.request_id,
            admitted=False,
            reason=reason,
            snapshot_version=snapshot.version,
            queued=queued,
        )

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------
    async def route(self, request: InboundRequest) -> RouteDecision:
        """
        Admit ``request`` onto an instance or reject it.

        Returns:
            RouteDecision. When ``admitted`` is True one in-flight slot on
            ``decision.instance`` is held until ``release(decision)``.
        """
        pinned = await self._lookup_affinity(request.session_token)

        decision = self._try_admit(request, pinned)
        if decision is None:
            decision = await self._wait_for_capacity(request, pinned)
        if not decision.admitted:
            return decision

        self.stats["admitted"] += 1
        # A pinned instance that is Ready but full keeps the session
        if (
            request.session_token
            and not decision.affinity_hit
            and (pinned is None or self.pool.current_snapshot().get(pinned) is None)
        ):
            await self._record_affinity(request.session_token, decision.instance.instance_id)
        logger.debug(
            "Request %s -> %s (%s, snapshot v%d)",
            request.request_id,
            decision.instance.instance_id,
            decision.reason,
            decision.snapshot_version,
        )
        return decision

    async def _wait_for_capacity(
        self, request: InboundRequest, pinned: Optional[str]
    ) -> RouteDecision:
        if self._waiting >= self.config.max_queue_depth:
            return self._reject(request)

        self._waiting += 1
        self.stats["queued"] += 1
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.queue_timeout_sec
        try:
            while (remaining := deadline - loop.time()) > 0:
                await self.pool.wait_for_change(remaining)
                decision = self._try_admit(request, pinned, queued=True)
                if decision is not None:
                    return decision
        finally:
            self._waiting -= 1

        self.stats["queue_timeouts"] += 1
        return self._reject(request, queued=True)

    def release(self, decision: RouteDecision) -> None:
        """Return the in-flight slot held by an admitted decision."""
        if decision.admitted and decision.instance is not None:
            self.pool.release(decision.instance.instance_id)

    async def dispatch(self, request: InboundRequest) -> WorkerResponse:
        """
        Route ``request``, forward it to the chosen worker and return the response.

        Raises:
            CapacityExhausted: If the request was not admitted.
            RuntimeError: If no client is configured or the worker call failed.
        """
        if self.client is None:
            raise RuntimeError("AdmissionRouter has no worker client for dispatch")

        decision = await self.route(request)
        if not decision.admitted:
            raise CapacityExhausted(request.request_id, decision.reason, decision.snapshot_version)

        try:
            return await self.client.forward(decision.instance, request)
        except Exception:
            self.stats["forward_errors"] += 1
            raise
        finally:
            self.release(decision)

    # ------------------------------------------------------------------
    # Session affinity
    # ------------------------------------------------------------------
    @staticmethod
    def affinity_key(session_token: str) -> str:
        return f"affinity:{session_token}"

    async def _lookup_affinity(self, session_token: Optional[str]) -> Optional[str]:
        if not session_token or self.cache is None:
            return None
        try:
            pinned = await self.cache.get(self.affinity_key(session_token))
        except Exception as e:
            logger.warning("Affinity lookup for session failed: %s", e)
            return None
        return pinned if isinstance(pinned, str) else None

    async def _record_affinity(self, session_token: str, instance_id: str) -> None:
        if self.cache is None:
            return
        try:
            await self.cache.set(
                self.affinity_key(session_token),
                instance_id,
                ttl=self.config.affinity_ttl_sec,
            )
        except Exception as e:
            logger.warning("Failed to record session affinity: %s", e)

    def get_stats(self) -> dict:
        return {**self.stats, "waiting": self._waiting}
