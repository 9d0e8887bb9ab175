# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the SAGE project

"""
Read/write splitting across one primary and a set of read replicas.

Writes and reads that need to see the latest data go to the primary.
Everything else goes to the least-lagged replica whose lag estimate is
fresh and below the allowed maximum, falling back to the primary when no
replica qualifies. A replica without a lag estimate is never used.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any

import aiohttp

from .config import DataRouterConfig
from .exceptions import PrimaryUnreachable, ReplicaUnreachable
from .protocols import LagProbe
from .types import Consistency, Endpoint, EndpointRole, Query, ReplicaLagEstimate

logger = logging.getLogger(__name__)

# A lag estimate older than this many refresh intervals is not trusted
STALE_ESTIMATE_INTERVALS = 3

# Session write records are pruned once the table grows past this size
_SESSION_PRUNE_THRESHOLD = 10_000


class HttpLagProbe:
    """
    Lag introspection over HTTP.

    Each data store endpoint exposes an introspection address
    (``Endpoint.probe_url``) answering:

    - GET /lag    -> {"lag_seconds": float}
    - GET /health -> 200 while the store accepts connections
    """

    def __init__(self):
        self.http_session: aiohttp.ClientSession | None = None

    async def initialize(self) -> None:
        if not self.http_session:
            self.http_session = aiohttp.ClientSession()

    async def cleanup(self) -> None:
        if self.http_session:
            await self.http_session.close()
            self.http_session = None

    async def replica_lag(self, replica: Endpoint, timeout: float) -> float:
        if not replica.probe_url:
            raise ReplicaUnreachable(replica.endpoint_id, "no probe_url configured")
        if not self.http_session:
            await self.initialize()
        assert self.http_session is not None

        url = f"{replica.probe_url}/lag"
        try:
            async with self.http_session.get(
                url, timeout=aiohttp.ClientTimeout(total=timeout)
            ) as response:
                if response.status != 200:
                    raise ReplicaUnreachable(replica.endpoint_id, f"status {response.status}")
                payload = await response.json(content_type=None)
            return max(0.0, float(payload["lag_seconds"]))
        except TimeoutError as e:
            raise ReplicaUnreachable(replica.endpoint_id, f"timeout after {timeout}s") from e
        except aiohttp.ClientError as e:
            raise ReplicaUnreachable(replica.endpoint_id, str(e)) from e
        except (KeyError, TypeError, ValueError) as e:
            raise ReplicaUnreachable(replica.endpoint_id, f"malformed lag report: {e}") from e

    async def primary_alive(self, primary: Endpoint, timeout: float) -> bool:
        if not primary.probe_url:
            return True
        if not self.http_session:
            await self.initialize()
        assert self.http_session is not None

        try:
            async with self.http_session.get(
                f"{primary.probe_url}/health", timeout=aiohttp.ClientTimeout(total=timeout)
            ) as response:
                return response.status == 200
        except (TimeoutError, aiohttp.ClientError) as e:
            logger.warning("Primary %s health check failed: %s", primary.endpoint_id, e)
            return False


class DataRouter:
    """Chooses the data store endpoint for each query."""

    def __init__(
        self,
        primary: Endpoint,
        replicas: list[Endpoint] | None = None,
        config: DataRouterConfig | None = None,
        lag_probe: LagProbe | None = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the data router.

        Args:
            primary: The writable endpoint.
            replicas: Read replicas.
            config: Lag limits and refresh cadence.
            lag_probe: Measures replica lag; defaults to HttpLagProbe.
            clock: Time source for estimates and session windows.
        """
        if primary.role != EndpointRole.PRIMARY:
            primary = Endpoint(primary.endpoint_id, primary.dsn, EndpointRole.PRIMARY, primary.probe_url)
        self.primary = primary
        self.config = config or DataRouterConfig()
        self.lag_probe = lag_probe or HttpLagProbe()
        self._clock = clock

        self.replicas: dict[str, Endpoint] = {}
        self.estimates: dict[str, ReplicaLagEstimate] = {}
        for replica in replicas or []:
            self.add_replica(replica)

        self.primary_reachable = True
        self._session_writes: dict[str, float] = {}

        self.stats = {"primary": 0, "replica": 0, "fallback_to_primary": 0}
        self.running = False
        self._task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Topology
    # ------------------------------------------------------------------
    def add_replica(self, replica: Endpoint) -> None:
        self.replicas[replica.endpoint_id] = replica
        self.estimates[replica.endpoint_id] = ReplicaLagEstimate(replica.endpoint_id)

    def remove_replica(self, replica_id: str) -> Endpoint | None:
        self.estimates.pop(replica_id, None)
        return self.replicas.pop(replica_id, None)

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------
    def route(self, query: Query, now: float | None = None) -> Endpoint:
        """
        Pick the endpoint for ``query``.

        Raises:
            PrimaryUnreachable: If the query must run on the primary, or no
                replica qualifies, while the primary is marked unreachable.
        """
        now = self._clock() if now is None else now

        if query.is_write:
            self._require_primary()
            if query.session_id:
                self.record_write(query.session_id, now)
            self.stats["primary"] += 1
            return self.primary

        if self.requires_primary(query, now):
            self._require_primary()
            self.stats["primary"] += 1
            return self.primary

        replica = self.best_replica(now)
        if replica is not None:
            self.stats["replica"] += 1
            return replica

        self._require_primary()
        self.stats["fallback_to_primary"] += 1
        logger.debug("No eligible replica, routing read to primary")
        return self.primary

    def requires_primary(self, query: Query, now: float | None = None) -> bool:
        """A read must see the latest data: strong, or in a session that just wrote."""
        if query.consistency == Consistency.STRONG:
            return True
        if query.session_id is None:
            return False
        now = self._clock() if now is None else now
        written_at = self._session_writes.get(query.session_id)
        return written_at is not None and now - written_at < self.config.read_your_writes_window_sec

    def _require_primary(self) -> None:
        if not self.primary_reachable:
            raise PrimaryUnreachable(self.primary.endpoint_id)

    def record_write(self, session_id: str, at: float | None = None) -> None:
        at = self._clock() if at is None else at
        self._session_writes[session_id] = at
        if len(self._session_writes) > _SESSION_PRUNE_THRESHOLD:
            horizon = at - self.config.read_your_writes_window_sec
            self._session_writes = {
                sid: ts for sid, ts in self._session_writes.items() if ts >= horizon
            }

    def is_eligible(self, estimate: ReplicaLagEstimate, now: float) -> bool:
        if not estimate.reachable or estimate.lag_seconds is None or estimate.measured_at is None:
            return False
        max_age = STALE_ESTIMATE_INTERVALS * self.config.lag_refresh_interval_sec
        if now - estimate.measured_at > max_age:
            return False
        return estimate.lag_seconds < self.config.max_allowed_replica_lag_sec

    def eligible_replicas(self, now: float | None = None) -> list[Endpoint]:
        """Eligible replicas ordered by increasing lag."""
        now = self._clock() if now is None else now
        eligible = [
            estimate
            for estimate in self.estimates.values()
            if estimate.replica_id in self.replicas and self.is_eligible(estimate, now)
        ]
        eligible.sort(key=lambda e: (e.lag_seconds, e.replica_id))
        return [self.replicas[e.replica_id] for e in eligible]

    def best_replica(self, now: float | None = None) -> Endpoint | None:
        eligible = self.eligible_replicas(now)
        return eligible[0] if eligible else None

    # ------------------------------------------------------------------
    # Lag tracking
    # ------------------------------------------------------------------
    def update_lag(
        self,
        replica_id: str,
        lag_seconds: float,
        measured_at: float | None = None,
    ) -> None:
        estimate = self.estimates.get(replica_id)
        if estimate is None:
            logger.debug("Lag update for unknown replica %s ignored", replica_id)
            return
        estimate.lag_seconds = lag_seconds
        estimate.measured_at = self._clock() if measured_at is None else measured_at
        estimate.reachable = True
        estimate.last_error = None

    def mark_replica_unreachable(self, replica_id: str, error: str | None = None) -> None:
        estimate = self.estimates.get(replica_id)
        if estimate is None:
            return
        if estimate.reachable:
            logger.warning("Replica %s unreachable: %s", replica_id, error)
        estimate.reachable = False
        estimate.last_error = error

    def set_primary_reachable(self, reachable: bool) -> None:
        if reachable != self.primary_reachable:
            log = logger.info if reachable else logger.error
            log("Primary %s is %s", self.primary.endpoint_id, "reachable" if reachable else "UNREACHABLE")
        self.primary_reachable = reachable

    async def _probe_replica(self, replica: Endpoint) -> None:
        timeout = self.config.lag_probe_timeout_sec
        try:
            lag = await asyncio.wait_for(
                self.lag_probe.replica_lag(replica, timeout), timeout=timeout
            )
        except TimeoutError:
            self.mark_replica_unreachable(replica.endpoint_id, f"timeout after {timeout}s")
        except ReplicaUnreachable as e:
            self.mark_replica_unreachable(replica.endpoint_id, e.message)
        else:
            self.update_lag(replica.endpoint_id, lag)

    async def refresh_lag(self) -> dict[str, ReplicaLagEstimate]:
        """Probe every replica and the primary once, concurrently."""
        timeout = self.config.lag_probe_timeout_sec
        replicas = list(self.replicas.values())
        results = await asyncio.gather(
            *(self._probe_replica(replica) for replica in replicas),
            self.lag_probe.primary_alive(self.primary, timeout),
            return_exceptions=True,
        )

        primary_result = results[-1]
        if isinstance(primary_result, BaseException):
            logger.error("Primary liveness probe raised: %s", primary_result)
            self.set_primary_reachable(False)
        else:
            self.set_primary_reachable(bool(primary_result))

        for replica, result in zip(replicas, results[:-1], strict=True):
            if isinstance(result, BaseException):
                logger.error("Lag probe of %s raised: %s", replica.endpoint_id, result)
                self.mark_replica_unreachable(replica.endpoint_id, str(result))
        return dict(self.estimates)

    async def start(self) -> None:
        if self.running:
            return
        self.running = True
        self._task = asyncio.create_task(self._refresh_loop())
        logger.info(
            "Data router started (primary=%s, replicas=%d, max_lag=%.1fs)",
            self.primary.endpoint_id,
            len(self.replicas),
            self.config.max_allowed_replica_lag_sec,
        )

    async def stop(self) -> None:
        if not self.running:
            return
        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        cleanup = getattr(self.lag_probe, "cleanup", None)
        if cleanup is not None:
            await cleanup()
        logger.info("Data router stopped")

    async def _refresh_loop(self) -> None:
        while self.running:
            try:
                await self.refresh_lag()
            except Exception as e:
                logger.error("Error refreshing replica lag: %s", e, exc_info=True)
            await asyncio.sleep(self.config.lag_refresh_interval_sec)

    def get_status(self) -> dict[str, Any]:
        now = self._clock()
        return {
            "primary": self.primary.endpoint_id,
            "primary_reachable": self.primary_reachable,
            "replicas": {
                replica_id: {
                    "lag_seconds": estimate.lag_seconds,
                    "measured_at": estimate.measured_at,
                    "reachable": estimate.reachable,
                    "eligible": self.is_eligible(estimate, now),
                    "last_error": estimate.last_error,
                }
                for replica_id, estimate in self.estimates.items()
            },
            "stats": dict(self.stats),
        }
