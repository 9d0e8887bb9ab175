# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the SAGE project

"""Capability interfaces for the services the control plane talks to.

Workers, cache nodes and data stores are heterogeneous external services.
Instead of an inheritance hierarchy each capability is a small protocol:

- HealthCheckable: answers readiness probes with a load value.
- Routable: accepts forwarded requests.
- Provisioner: creates and destroys worker instances.
- CacheNode: one shard of the cache cluster.
- LagProbe: reports replication lag of a replica.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .types import (
        CacheEntry,
        Endpoint,
        InboundRequest,
        ReadinessReport,
        WorkerInstance,
        WorkerResponse,
        WorkerView,
    )


@runtime_checkable
class HealthCheckable(Protocol):
    """Something that can probe a worker's readiness."""

    async def check_readiness(
        self,
        instance: WorkerInstance,
        timeout: float,
    ) -> ReadinessReport:
        """Probe one instance.

        Args:
            instance: Instance to probe.
            timeout: Upper bound for the whole call in seconds.

        Returns:
            ReadinessReport with the ready flag and reported load.

        Raises:
            TransientProbeFailure: If the worker could not be reached.
        """
        ...


@runtime_checkable
class Routable(Protocol):
    """Something that can carry a request to a worker and back."""

    async def forward(self, instance: WorkerView, request: InboundRequest) -> WorkerResponse:
        ...


@runtime_checkable
class Provisioner(Protocol):
    """Creates and destroys worker instances.

    ``provision`` returns as soon as the instance has been launched; the
    pool decides readiness from health probes, not from this call.
    """

    async def provision(self, instance_id: str) -> tuple[str, int, dict[str, Any]]:
        """Launch a worker.

        Returns:
            (host, port, metadata) of the launched worker.
        """
        ...

    async def terminate(self, instance: WorkerInstance) -> bool:
        """Stop a worker. Returns True when it is known to be gone."""
        ...


@runtime_checkable
class CacheNode(Protocol):
    """One physical node of the cache cluster.

    The node enforces TTL and version ordering itself: ``put`` only replaces
    a stored entry whose version is lower than or equal to the new one.
    """

    node_id: str

    async def fetch(self, key: str) -> CacheEntry | None:
        """Return the live entry for key; expired entries are reported as None."""
        ...

    async def put(self, entry: CacheEntry, ttl: float | None) -> bool:
        """Store entry if its version wins. Returns True when applied."""
        ...

    async def close(self) -> None:
        ...


@runtime_checkable
class LagProbe(Protocol):
    """Lag introspection against one replica."""

    async def replica_lag(self, replica: Endpoint, timeout: float) -> float:
        """Return the replica's lag behind the primary in seconds.

        Raises:
            ReplicaUnreachable: If the replica did not answer.
        """
        ...

    async def primary_alive(self, primary: Endpoint, timeout: float) -> bool:
        ...
