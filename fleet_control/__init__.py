# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the SAGE project

"""
Fleet Control Plane - autoscaling and traffic admission for a worker fleet.

The control plane sits in front of a pool of identical HTTP workers and
provides:
- Readiness probing with hysteresis (HealthProbe)
- Instance lifecycle and versioned routing snapshots (WorkerPool)
- Utilization-based scaling with scale-down cooldown (Autoscaler)
- Admission control and weighted least-connections routing (AdmissionRouter)
- Consistent-hashing cache client with versioned writes (CacheRouter)
- Lag-aware read/write splitting across database replicas (DataRouter)
"""

# Import autoscaling components
from .autoscaler import Autoscaler

# Import cache cluster client
from .cache import (
    CacheRouter,
    ConsistentHashRing,
    InMemoryCacheNode,
    RedisCacheNode,
    VersionClock,
)

# Import configuration
from .config import (
    AdmissionConfig,
    AutoscalerConfig,
    CacheConfig,
    DataRouterConfig,
    FleetConfig,
    HealthConfig,
    PoolConfig,
)
from .data_router import DataRouter, HttpLagProbe

# Import exceptions
from .exceptions import (
    CapacityExhausted,
    ConfigValidationError,
    FleetControlError,
    PrimaryUnreachable,
    ProvisioningTimeout,
    ReplicaUnreachable,
    TransientProbeFailure,
    UnknownInstanceError,
)
from .health import HealthProbe, ProbeResult

# Import manager
from .manager import ControlPlane
from .metrics import FleetMetricsCollector, LoadSample
from .persistence import PersistedState, StateStore
from .pool import ApplyResult, PoolEvent, WorkerPool
from .protocols import CacheNode, HealthCheckable, LagProbe, Provisioner, Routable
from .provisioner import LocalProcessProvisioner, StaticProvisioner

# Import router
from .router import AdmissionRouter
from .server import StatusServer, create_status_app

# Import types
from .types import (
    CacheEntry,
    Consistency,
    Endpoint,
    EndpointRole,
    HealthStatus,
    InboundRequest,
    PoolSnapshot,
    Query,
    QueryKind,
    ReadinessReport,
    ReplicaLagEstimate,
    RouteDecision,
    ScalingDecision,
    ScalingReason,
    WorkerInstance,
    WorkerResponse,
    WorkerState,
    WorkerView,
)
from .worker_client import HttpWorkerClient

__all__ = [
    # Autoscaling
    "Autoscaler",
    "FleetMetricsCollector",
    "LoadSample",
    # Pool and health
    "WorkerPool",
    "ApplyResult",
    "PoolEvent",
    "HealthProbe",
    "ProbeResult",
    # Routing
    "AdmissionRouter",
    "DataRouter",
    "HttpLagProbe",
    # Cache
    "CacheRouter",
    "ConsistentHashRing",
    "InMemoryCacheNode",
    "RedisCacheNode",
    "VersionClock",
    # Configuration
    "FleetConfig",
    "PoolConfig",
    "HealthConfig",
    "AutoscalerConfig",
    "AdmissionConfig",
    "DataRouterConfig",
    "CacheConfig",
    # Exceptions
    "FleetControlError",
    "ConfigValidationError",
    "UnknownInstanceError",
    "TransientProbeFailure",
    "ProvisioningTimeout",
    "CapacityExhausted",
    "ReplicaUnreachable",
    "PrimaryUnreachable",
    # Capabilities and backends
    "HealthCheckable",
    "Routable",
    "Provisioner",
    "CacheNode",
    "LagProbe",
    "HttpWorkerClient",
    "LocalProcessProvisioner",
    "StaticProvisioner",
    # Manager, persistence and status
    "ControlPlane",
    "StateStore",
    "PersistedState",
    "StatusServer",
    "create_status_app",
    # Types
    "WorkerState",
    "HealthStatus",
    "ScalingReason",
    "QueryKind",
    "Consistency",
    "EndpointRole",
    "WorkerInstance",
    "WorkerView",
    "PoolSnapshot",
    "ScalingDecision",
    "CacheEntry",
    "ReplicaLagEstimate",
    "InboundRequest",
    "RouteDecision",
    "Query",
    "Endpoint",
    "ReadinessReport",
    "WorkerResponse",
]
