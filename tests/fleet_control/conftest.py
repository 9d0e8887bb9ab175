# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the SAGE project

"""pytest configuration for fleet_control tests."""

import logging
import sys
from pathlib import Path

import pytest
from aioresponses import aioresponses

# Configure logging
logging.basicConfig(level=logging.INFO)

# Set up path for fleet_control imports
root = Path(__file__).parent.parent.parent
if str(root) not in sys.path:
    sys.path.insert(0, str(root))

from fleet_control import (  # noqa: E402
    HealthStatus,
    PoolConfig,
    ReadinessReport,
    ScalingDecision,
    ScalingReason,
    TransientProbeFailure,
    WorkerPool,
    WorkerResponse,
)


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class FakeProvisioner:
    """Provisioner handing out localhost ports; can be told to fail."""

    def __init__(self, base_port: int = 9000):
        self.base_port = base_port
        self.provisioned: list[str] = []
        self.terminated: list[str] = []
        self.fail_next = 0

    async def provision(self, instance_id):
        if self.fail_next > 0:
            self.fail_next -= 1
            raise RuntimeError("launch failed")
        port = self.base_port + len(self.provisioned)
        self.provisioned.append(instance_id)
        return "localhost", port, {"fake": True}

    async def terminate(self, instance):
        self.terminated.append(instance.instance_id)
        return True


class FakeChecker:
    """HealthCheckable answering from a per-instance script.

    ``responses[instance_id]`` is a ReadinessReport or an exception; a
    missing entry answers ready with ``default_load``.
    """

    def __init__(self, default_load: float = 0.5):
        self.default_load = default_load
        self.responses = {}
        self.calls = []

    def fail(self, instance_id, reason="connection refused"):
        self.responses[instance_id] = TransientProbeFailure(instance_id, reason)

    def succeed(self, instance_id, load=None):
        self.responses[instance_id] = ReadinessReport(
            ready=True, load=self.default_load if load is None else load
        )

    async def check_readiness(self, instance, timeout):
        self.calls.append(instance.instance_id)
        response = self.responses.get(instance.instance_id)
        if isinstance(response, Exception):
            raise response
        if response is None:
            return ReadinessReport(ready=True, load=self.default_load)
        return response


class FakeWorkerClient(FakeChecker):
    """Worker client answering probes from a script and echoing forwards."""

    def __init__(self):
        super().__init__(default_load=0.3)
        self.initialized = False
        self.closed = False

    async def initialize(self):
        self.initialized = True

    async def cleanup(self):
        self.closed = True

    async def forward(self, instance, request):
        return WorkerResponse(
            status=200, body=request.path.encode(), instance_id=instance.instance_id
        )


@pytest.fixture
def mock_aiohttp():
    """Fixture providing mocked aiohttp responses for worker and probe endpoints."""
    with aioresponses() as m:
        yield m


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def provisioner():
    return FakeProvisioner()


@pytest.fixture
def checker():
    return FakeChecker()


@pytest.fixture
def worker_client():
    return FakeWorkerClient()


@pytest.fixture
def pool_config():
    return PoolConfig(
        drain_deadline_sec=0.2,
        provisioning_timeout_sec=5.0,
        max_provisioning_attempts=3,
        unhealthy_termination_sec=300.0,
        terminate_timeout_sec=1.0,
    )


@pytest.fixture
def pool(provisioner, pool_config, clock):
    """Fixture providing an empty worker pool on a fake clock."""
    return WorkerPool(
        provisioner,
        pool_config,
        min_instances=0,
        max_instances=10,
        clock=clock,
    )


@pytest.fixture
def grow_pool(clock):
    """Fixture providing a coroutine that brings a pool to N Ready instances.

    Instances are created one second apart (on the fake clock) and get the
    given loads, so tests can reason about age and load ordering.
    """

    async def _grow(pool, loads):
        instances = []
        for load in loads:
            decision = ScalingDecision(
                target_instances=len(instances) + 1,
                reason=ScalingReason.SCALE_UP,
                decision_time=clock(),
            )
            result = await pool.apply_scaling_decision(decision)
            assert result.accepted, result.reason
            instance = pool.get_instance(result.provisioned[0])
            instance.load_metric = load
            instance.last_health_check = clock()
            instance.health = HealthStatus.HEALTHY
            pool.mark_healthy(instance.instance_id)
            instances.append(instance)
            clock.advance(1.0)
        return instances

    return _grow
