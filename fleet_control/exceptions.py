# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the SAGE project

"""Error taxonomy for the fleet control plane.

Transient, component-internal failures (a single failed probe, one lagging
replica) are absorbed by the component that sees them and only show up in
state. Errors that would cause incorrect behavior if hidden (capacity
exhaustion, an unreachable primary) are always raised to the caller.
"""

from __future__ import annotations


class FleetControlError(Exception):
    """Base exception for fleet control plane errors."""

    pass


class ConfigValidationError(FleetControlError):
    """Raised when a FleetConfig fails validation."""

    def __init__(self, problems: list[str]):
        self.problems = list(problems)
        super().__init__("Invalid fleet configuration: " + "; ".join(self.problems))


class UnknownInstanceError(FleetControlError):
    """Raised when an operation names an instance the pool does not own."""

    def __init__(self, instance_id: str):
        self.instance_id = instance_id
        super().__init__(f"Unknown worker instance '{instance_id}'")


class TransientProbeFailure(FleetControlError):
    """A single readiness probe failed (error, timeout or not-ready answer).

    Counted towards the consecutive-failure threshold; never fatal on its own.
    """

    def __init__(self, instance_id: str, reason: str, *, timed_out: bool = False):
        self.instance_id = instance_id
        self.reason = reason
        self.timed_out = timed_out
        super().__init__(f"Probe of {instance_id} failed: {reason}")


class ProvisioningTimeout(FleetControlError):
    """A provisioned instance did not become Ready within the provisioning timeout."""

    def __init__(self, instance_id: str, timeout_seconds: float, attempt: int):
        self.instance_id = instance_id
        self.timeout_seconds = timeout_seconds
        self.attempt = attempt
        super().__init__(
            f"Instance {instance_id} not ready after {timeout_seconds}s "
            f"(provisioning attempt {attempt})"
        )


class CapacityExhausted(FleetControlError):
    """No Ready instance can accept another request."""

    def __init__(self, request_id: str, reason: str, snapshot_version: int | None = None):
        self.request_id = request_id
        self.reason = reason
        self.snapshot_version = snapshot_version
        super().__init__(f"Request {request_id} rejected: {reason}")


class ReplicaUnreachable(FleetControlError):
    """A read replica did not answer its lag probe."""

    def __init__(self, replica_id: str, message: str | None = None):
        self.replica_id = replica_id
        self.message = message or f"Replica {replica_id} is unreachable"
        super().__init__(self.message)


class PrimaryUnreachable(FleetControlError):
    """The primary data store is unreachable; writes cannot be served."""

    def __init__(self, primary_id: str, message: str | None = None):
        self.primary_id = primary_id
        self.message = message or f"Primary {primary_id} is unreachable"
        super().__init__(self.message)


__all__ = [
    "FleetControlError",
    "ConfigValidationError",
    "UnknownInstanceError",
    "TransientProbeFailure",
    "ProvisioningTimeout",
    "CapacityExhausted",
    "ReplicaUnreachable",
    "PrimaryUnreachable",
]
