# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the SAGE project

"""Configuration for the fleet control plane.

Every tunable exposed to operators lives here. Defaults are starting
points, not values derived from measurements; all of them can be overridden
from YAML.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any

from .exceptions import ConfigValidationError


@dataclass
class PoolConfig:
    """Worker pool lifecycle settings.

    Attributes:
        drain_deadline_sec: Maximum time a draining instance waits for
            in-flight requests before it is terminated anyway.
        provisioning_timeout_sec: Time a new instance has to pass its first probe.
        max_provisioning_attempts: Attempts (original + replacements) per slot.
        unhealthy_termination_sec: How long a Ready instance may stay
            unhealthy before the pool drains and terminates it.
        max_terminated_history: Terminated instance records kept for status.
        terminate_timeout_sec: Timeout for one provisioner terminate call.
    """

    drain_deadline_sec: float = 30.0
    provisioning_timeout_sec: float = 120.0
    max_provisioning_attempts: int = 3
    unhealthy_termination_sec: float = 300.0
    max_terminated_history: int = 50
    terminate_timeout_sec: float = 20.0

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PoolConfig:
        return cls(**data)


@dataclass
class HealthConfig:
    """Readiness probing settings.

    Attributes:
        interval_sec: Time between probes of one instance.
        timeout_sec: Probe timeout; must be shorter than the interval.
        failure_threshold: K, consecutive failures before UNHEALTHY.
        success_threshold: M, consecutive successes to leave UNHEALTHY.
        readiness_path: Worker readiness endpoint.
    """

    interval_sec: float = 5.0
    timeout_sec: float = 2.0
    failure_threshold: int = 3
    success_threshold: int = 2
    readiness_path: str = "/ready"

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HealthConfig:
        return cls(**data)


@dataclass
class AutoscalerConfig:
    """Autoscaler sizing and hysteresis settings."""

    min_instances: int = 1
    max_instances: int = 10
    target_utilization: float = 0.7
    scale_down_cooldown_sec: float = 300.0
    tick_interval_sec: float = 30.0

    # A load sample older than this no longer counts as a signal
    metrics_max_age_sec: float = 60.0

    # Smoothing of the aggregate load signal: constant, moving_average,
    # exponential_smoothing
    load_smoothing: str = "constant"
    load_window: int = 5

    # Dry-run mode
    dry_run: bool = False

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AutoscalerConfig:
        return cls(**data)


@dataclass
class AdmissionConfig:
    """Front-door admission settings."""

    per_instance_inflight_ceiling: int = 100
    max_queue_depth: int = 0  # 0 = fail fast
    queue_timeout_sec: float = 1.0
    forward_timeout_sec: float = 30.0
    affinity_ttl_sec: float = 1800.0

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AdmissionConfig:
        return cls(**data)


@dataclass
class DataRouterConfig:
    """Read/write splitting settings."""

    max_allowed_replica_lag_sec: float = 2.0
    lag_refresh_interval_sec: float = 5.0
    lag_probe_timeout_sec: float = 1.0
    read_your_writes_window_sec: float = 5.0

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DataRouterConfig:
        return cls(**data)


@dataclass
class CacheConfig:
    """Cache cluster client settings."""

    virtual_nodes: int = 160
    default_ttl_sec: float = 300.0
    tombstone_ttl_sec: float = 60.0

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CacheConfig:
        return cls(**data)


# Operator-facing option names -> (section, field)
OPERATOR_ALIASES: dict[str, tuple[str, str]] = {
    "minInstances": ("autoscaler", "min_instances"),
    "maxInstances": ("autoscaler", "max_instances"),
    "targetUtilization": ("autoscaler", "target_utilization"),
    "scaleDownCooldown": ("autoscaler", "scale_down_cooldown_sec"),
    "drainDeadline": ("pool", "drain_deadline_sec"),
    "healthCheckInterval": ("health", "interval_sec"),
    "healthCheckK": ("health", "failure_threshold"),
    "healthCheckM": ("health", "success_threshold"),
    "maxAllowedReplicaLag": ("data_router", "max_allowed_replica_lag_sec"),
    "perInstanceInFlightCeiling": ("admission", "per_instance_inflight_ceiling"),
}

_SECTIONS: dict[str, type] = {
    "pool": PoolConfig,
    "health": HealthConfig,
    "autoscaler": AutoscalerConfig,
    "admission": AdmissionConfig,
    "data_router": DataRouterConfig,
    "cache": CacheConfig,
}


@dataclass
class FleetConfig:
    """Top-level fleet control plane configuration.

    Attributes:
        pool: Worker pool lifecycle settings.
        health: Readiness probing settings.
        autoscaler: Sizing and hysteresis settings.
        admission: Front-door admission settings.
        data_router: Read/write splitting settings.
        cache: Cache cluster client settings.
        state_file: JSON file holding durable control-plane state, or None
            to run without persistence.
        status_host: Bind address of the status server.
        status_port: Port of the status server.
        metadata: Additional configuration.
    """

    pool: PoolConfig = field(default_factory=PoolConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    autoscaler: AutoscalerConfig = field(default_factory=AutoscalerConfig)
    admission: AdmissionConfig = field(default_factory=AdmissionConfig)
    data_router: DataRouterConfig = field(default_factory=DataRouterConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    state_file: str | None = None
    status_host: str = "127.0.0.1"
    status_port: int = 8089
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "pool": self.pool.to_dict(),
            "health": self.health.to_dict(),
            "autoscaler": self.autoscaler.to_dict(),
            "admission": self.admission.to_dict(),
            "data_router": self.data_router.to_dict(),
            "cache": self.cache.to_dict(),
            "state_file": self.state_file,
            "status_host": self.status_host,
            "status_port": self.status_port,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FleetConfig:
        """Deserialize from dictionary.

        Accepts nested sections as produced by ``to_dict`` as well as the
        flat operator option names in ``OPERATOR_ALIASES``. An alias wins
        over the same field given inside its section.
        """
        data = data.copy()
        sections: dict[str, dict[str, Any]] = {
            name: dict(data.pop(name, None) or {}) for name in _SECTIONS
        }
        for alias, (section, key) in OPERATOR_ALIASES.items():
            if alias in data:
                sections[section][key] = data.pop(alias)

        kwargs: dict[str, Any] = {}
        problems: list[str] = []
        for name, section_cls in _SECTIONS.items():
            try:
                kwargs[name] = section_cls.from_dict(sections[name])
            except TypeError as exc:
                problems.append(f"{name}: {exc}")
        try:
            config = cls(**kwargs, **data)
        except TypeError as exc:
            problems.append(str(exc))
        if problems:
            raise ConfigValidationError(problems)
        return config

    @classmethod
    def load_yaml(cls, path: str) -> FleetConfig:
        """Load configuration from YAML file.

        Args:
            path: Path to YAML configuration file.

        Returns:
            Loaded and validated FleetConfig.
        """
        import yaml

        with open(path) as f:
            data = yaml.safe_load(f)
        config = cls.from_dict(data or {})
        config.validate()
        return config

    def save_yaml(self, path: str) -> None:
        """Save configuration to YAML file."""
        import yaml

        with open(path, "w") as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False)

    def validate(self) -> None:
        """Check cross-field constraints.

        Raises:
            ConfigValidationError: listing every violated constraint.
        """
        problems: list[str] = []
        scaler = self.autoscaler
        if scaler.min_instances < 0:
            problems.append("autoscaler.min_instances must be >= 0")
        if scaler.max_instances < max(scaler.min_instances, 1):
            problems.append("autoscaler.max_instances must be >= max(min_instances, 1)")
        if not 0.0 < scaler.target_utilization <= 1.0:
            problems.append("autoscaler.target_utilization must be in (0, 1]")
        if scaler.scale_down_cooldown_sec < 0:
            problems.append("autoscaler.scale_down_cooldown_sec must be >= 0")
        if scaler.tick_interval_sec <= 0:
            problems.append("autoscaler.tick_interval_sec must be > 0")
        if scaler.load_window < 1:
            problems.append("autoscaler.load_window must be >= 1")

        health = self.health
        if health.failure_threshold < 1:
            problems.append("health.failure_threshold must be >= 1")
        if health.success_threshold < 1:
            problems.append("health.success_threshold must be >= 1")
        if health.interval_sec <= 0:
            problems.append("health.interval_sec must be > 0")
        if not 0 < health.timeout_sec < health.interval_sec:
            problems.append("health.timeout_sec must be > 0 and shorter than health.interval_sec")

        if self.pool.drain_deadline_sec < 0:
            problems.append("pool.drain_deadline_sec must be >= 0")
        if self.pool.provisioning_timeout_sec <= 0:
            problems.append("pool.provisioning_timeout_sec must be > 0")
        if self.pool.max_provisioning_attempts < 1:
            problems.append("pool.max_provisioning_attempts must be >= 1")

        if self.admission.per_instance_inflight_ceiling < 1:
            problems.append("admission.per_instance_inflight_ceiling must be >= 1")
        if self.admission.max_queue_depth < 0:
            problems.append("admission.max_queue_depth must be >= 0")

        if self.data_router.max_allowed_replica_lag_sec < 0:
            problems.append("data_router.max_allowed_replica_lag_sec must be >= 0")
        if self.data_router.lag_refresh_interval_sec <= 0:
            problems.append("data_router.lag_refresh_interval_sec must be > 0")

        if self.cache.virtual_nodes < 1:
            problems.append("cache.virtual_nodes must be >= 1")

        if problems:
            raise ConfigValidationError(problems)
