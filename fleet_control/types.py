# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the SAGE project

"""Common types and data structures for the fleet control plane."""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class WorkerState(str, Enum):
    """Lifecycle states of a worker instance owned by the pool."""

    PROVISIONING = "provisioning"
    READY = "ready"
    DRAINING = "draining"
    TERMINATED = "terminated"


class HealthStatus(str, Enum):
    """Health as judged by consecutive readiness probe outcomes.

    Attributes:
        UNKNOWN: No successful probe yet (instance still provisioning).
        HEALTHY: Passing probes.
        DEGRADED: Previously healthy, failing fewer than K consecutive probes.
            Still routable.
        UNHEALTHY: Failed K consecutive probes and has not yet passed M
            consecutive probes since. Excluded from routing.
    """

    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class ScalingReason(str, Enum):
    """Reason codes attached to every scaling decision."""

    SCALE_UP = "scale_up"
    SCALE_DOWN = "scale_down"
    EMERGENCY_SCALE_UP = "emergency_scale_up"
    HOLD_STEADY = "hold_steady"
    HOLD_COOLDOWN = "hold_cooldown"
    HOLD_NO_METRICS = "hold_no_metrics"


class QueryKind(str, Enum):
    READ = "read"
    WRITE = "write"


class Consistency(str, Enum):
    EVENTUAL = "eventual"
    STRONG = "strong"


class EndpointRole(str, Enum):
    PRIMARY = "primary"
    REPLICA = "replica"


@dataclass
class WorkerInstance:
    """A worker process in the pool.

    Lifecycle fields (state, *_at timestamps) are written only by the
    WorkerPool. Health fields (health, load_metric, last_health_check and the
    consecutive counters) are written only by the HealthProbe. ``in_flight``
    changes only through ``WorkerPool.acquire``/``release``.

    Attributes:
        instance_id: Unique identifier for this instance.
        host: Hostname or IP address of the worker.
        port: Port the worker listens on.
        state: Lifecycle state.
        health: Probe-derived health status.
        load_metric: Last reported load as a utilization fraction (1.0 = fully busy).
        in_flight: Requests admitted to this instance and not yet finished.
        last_health_check: Timestamp of the last completed probe.
        consecutive_failures: Failed probes in a row.
        consecutive_successes: Passed probes in a row.
        created_at: When provisioning started.
        ready_at: When the instance first became Ready.
        unhealthy_since: When the instance was last marked unhealthy.
        drain_started_at: When draining started.
        terminated_at: When the instance was terminated.
        provisioning_attempt: 1 for a fresh instance, incremented for replacements.
        metadata: Provisioner-specific bookkeeping (pid, command, ...).
    """

    instance_id: str
    host: str
    port: int
    state: WorkerState = WorkerState.PROVISIONING
    health: HealthStatus = HealthStatus.UNKNOWN
    load_metric: float = 0.0
    in_flight: int = 0
    last_health_check: float | None = None
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    created_at: float = field(default_factory=time.time)
    ready_at: float | None = None
    unhealthy_since: float | None = None
    drain_started_at: float | None = None
    terminated_at: float | None = None
    provisioning_attempt: int = 1
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def endpoint(self) -> str:
        return f"http://{self.host}:{self.port}"

    @property
    def is_routable(self) -> bool:
        """Ready and not judged unhealthy."""
        return self.state == WorkerState.READY and self.health != HealthStatus.UNHEALTHY

    @property
    def is_terminal(self) -> bool:
        return self.state == WorkerState.TERMINATED

    def to_view(self) -> "WorkerView":
        return WorkerView(
            instance_id=self.instance_id,
            host=self.host,
            port=self.port,
            load_metric=self.load_metric,
            created_at=self.created_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "endpoint": self.endpoint,
            "state": self.state.value,
            "health": self.health.value,
            "load_metric": self.load_metric,
            "in_flight": self.in_flight,
            "last_health_check": self.last_health_check,
            "consecutive_failures": self.consecutive_failures,
            "consecutive_successes": self.consecutive_successes,
            "created_at": self.created_at,
            "ready_at": self.ready_at,
            "drain_started_at": self.drain_started_at,
            "terminated_at": self.terminated_at,
            "provisioning_attempt": self.provisioning_attempt,
        }


@dataclass(frozen=True)
class WorkerView:
    """Immutable copy of a Ready instance as published in a snapshot."""

    instance_id: str
    host: str
    port: int
    load_metric: float
    created_at: float

    @property
    def endpoint(self) -> str:
        return f"http://{self.host}:{self.port}"


@dataclass(frozen=True)
class PoolSnapshot:
    """Immutable, versioned view of the routable members of the pool.

    A snapshot is never mutated after publication; a newer version replaces
    it wholesale.
    """

    version: int
    instances: tuple[WorkerView, ...] = ()
    published_at: float = field(default_factory=time.time)

    @property
    def ready_count(self) -> int:
        return len(self.instances)

    @property
    def instance_ids(self) -> frozenset[str]:
        return frozenset(view.instance_id for view in self.instances)

    def get(self, instance_id: str) -> WorkerView | None:
        for view in self.instances:
            if view.instance_id == instance_id:
                return view
        return None

    def __contains__(self, instance_id: object) -> bool:
        return any(view.instance_id == instance_id for view in self.instances)


@dataclass(frozen=True)
class ScalingDecision:
    """Scaling decision produced by the Autoscaler and consumed by the WorkerPool.

    Attributes:
        target_instances: Desired Ready instance count after applying.
        reason: Why the decision was made.
        decision_time: Strictly increasing across decisions from one autoscaler.
        current_instances: Ready count observed when deciding.
        desired_instances: Unsmoothed clamped desired count for this tick.
        aggregate_load: Load signal used, or None when unavailable.
        snapshot_version: Version of the snapshot the decision was computed from.
    """

    target_instances: int
    reason: ScalingReason
    decision_time: float
    current_instances: int = 0
    desired_instances: int = 0
    aggregate_load: float | None = None
    snapshot_version: int = 0

    @property
    def is_hold(self) -> bool:
        return self.reason in (
            ScalingReason.HOLD_STEADY,
            ScalingReason.HOLD_COOLDOWN,
            ScalingReason.HOLD_NO_METRICS,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "target_instances": self.target_instances,
            "reason": self.reason.value,
            "decision_time": self.decision_time,
            "current_instances": self.current_instances,
            "desired_instances": self.desired_instances,
            "aggregate_load": self.aggregate_load,
            "snapshot_version": self.snapshot_version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ScalingDecision":
        data = data.copy()
        data["reason"] = ScalingReason(data["reason"])
        return cls(**data)


@dataclass
class CacheEntry:
    """A value stored on a cache node.

    ``tombstone`` entries record an invalidation at ``version`` so that a
    late write carrying a lower version cannot resurrect the key.
    """

    key: str
    value: Any
    version: int
    expires_at: float | None = None
    tombstone: bool = False

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


@dataclass
class ReplicaLagEstimate:
    """Estimated replication lag of one replica behind the primary."""

    replica_id: str
    lag_seconds: float | None = None
    measured_at: float | None = None
    reachable: bool = False
    last_error: str | None = None


@dataclass
class InboundRequest:
    """A request arriving at the front door."""

    request_id: str
    method: str = "GET"
    path: str = "/"
    body: bytes | None = None
    headers: dict[str, str] = field(default_factory=dict)
    session_token: str | None = None
    arrival_time: float = field(default_factory=time.time)


@dataclass(frozen=True)
class RouteDecision:
    """Outcome of routing one request: forward to ``instance`` or reject."""

    request_id: str
    admitted: bool
    instance: WorkerView | None = None
    reason: str = ""
    snapshot_version: int = 0
    affinity_hit: bool = False
    queued: bool = False


@dataclass(frozen=True)
class Query:
    """A data store operation to be routed."""

    kind: QueryKind = QueryKind.READ
    consistency: Consistency = Consistency.EVENTUAL
    session_id: str | None = None
    statement: str | None = None

    @property
    def is_write(self) -> bool:
        return self.kind == QueryKind.WRITE


@dataclass(frozen=True)
class Endpoint:
    """A primary or replica data store endpoint.

    ``dsn`` is handed to the caller unchanged; ``probe_url`` is the HTTP
    introspection address used for lag and liveness checks.
    """

    endpoint_id: str
    dsn: str
    role: EndpointRole = EndpointRole.REPLICA
    probe_url: str | None = None

    @property
    def is_primary(self) -> bool:
        return self.role == EndpointRole.PRIMARY


@dataclass(frozen=True)
class ReadinessReport:
    """Answer of a worker's readiness endpoint."""

    ready: bool
    load: float = 0.0
    detail: str = ""


@dataclass
class WorkerResponse:
    """Response relayed back from a worker for a forwarded request."""

    status: int
    body: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)
    instance_id: str | None = None
    elapsed_ms: float = 0.0
