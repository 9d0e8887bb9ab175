# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the SAGE project

"""Tests for the worker pool lifecycle and snapshot publication."""

import asyncio

import pytest

from fleet_control import (
    HealthStatus,
    PoolConfig,
    ScalingDecision,
    ScalingReason,
    StateStore,
    UnknownInstanceError,
    WorkerPool,
    WorkerState,
)


async def wait_until(predicate, timeout=2.0):
    """Poll ``predicate`` until it holds or ``timeout`` passes."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            return False
        await asyncio.sleep(0.01)
    return True


def decision(target, at, reason=ScalingReason.SCALE_UP):
    return ScalingDecision(target_instances=target, reason=reason, decision_time=at)


@pytest.mark.asyncio
class TestScaling:
    """Test applying scaling decisions."""

    async def test_scale_up_provisions_missing_instances(self, pool, provisioner, clock):
        """Scale-up launches target - (routable + provisioning) instances."""
        result = await pool.apply_scaling_decision(decision(3, clock()))

        assert result.accepted
        assert len(result.provisioned) == 3
        assert pool.counts()["provisioning"] == 3
        # Nothing is routable before the first passing probe
        assert pool.current_snapshot().ready_count == 0

    async def test_repeated_decision_does_not_duplicate_capacity(self, pool, provisioner, clock):
        """Instances still provisioning count towards the target."""
        await pool.apply_scaling_decision(decision(2, clock()))
        result = await pool.apply_scaling_decision(decision(2, clock.advance(1)))

        assert result.accepted
        assert result.provisioned == []
        assert len(provisioner.provisioned) == 2

    async def test_scale_down_picks_lowest_load_then_oldest(self, pool, grow_pool, clock):
        """5 -> 3 drains the two least-loaded instances, oldest first on ties."""
        instances = await grow_pool(pool, [0.4, 0.2, 0.2, 0.2, 0.9])

        result = await pool.apply_scaling_decision(
            decision(3, clock.advance(1), ScalingReason.SCALE_DOWN)
        )

        assert result.accepted
        assert result.draining == [instances[1].instance_id, instances[2].instance_id]
        snapshot = pool.current_snapshot()
        assert snapshot.ready_count == 3
        assert instances[1].instance_id not in snapshot
        assert instances[2].instance_id not in snapshot

    async def test_stale_decision_rejected(self, pool, clock):
        """A decision older than the applied one changes nothing."""
        await pool.apply_scaling_decision(decision(1, clock()))

        result = await pool.apply_scaling_decision(decision(4, clock() - 10))

        assert not result.accepted
        assert "stale" in result.reason
        assert len(pool.list_instances()) == 1

    async def test_out_of_bounds_target_rejected(self, pool, clock):
        result = await pool.apply_scaling_decision(decision(11, clock()))

        assert not result.accepted
        assert pool.last_decision is None

    async def test_launch_failure_is_retried(self, pool, provisioner, clock):
        """A failed provisioner call is retried within the attempt bound."""
        provisioner.fail_next = 1

        result = await pool.apply_scaling_decision(decision(1, clock()))

        assert len(result.provisioned) == 1
        instance = pool.get_instance(result.provisioned[0])
        assert instance.provisioning_attempt == 2
        assert any(e.kind == "provision_failed" for e in pool.events())


@pytest.mark.asyncio
class TestSnapshots:
    """Test snapshot publication."""

    async def test_versions_strictly_increase(self, pool, grow_pool, clock):
        """Every publication has a new version and membership per version is unique."""
        seen = {}
        versions = []

        def record():
            snapshot = pool.current_snapshot()
            if snapshot.version in seen:
                assert seen[snapshot.version] == snapshot.instance_ids
            seen[snapshot.version] = snapshot.instance_ids
            versions.append(snapshot.version)

        record()
        instances = await grow_pool(pool, [0.1, 0.2, 0.3])
        record()
        pool.mark_unhealthy(instances[0].instance_id)
        record()
        pool.mark_healthy(instances[0].instance_id)
        record()
        await pool.apply_scaling_decision(decision(2, clock.advance(1), ScalingReason.SCALE_DOWN))
        record()

        assert versions == sorted(versions)
        assert len(set(versions)) == len(versions)

    async def test_snapshot_is_immutable(self, pool, grow_pool):
        (instance,) = await grow_pool(pool, [0.5])
        snapshot = pool.current_snapshot()

        instance.load_metric = 0.99
        pool.metrics_updated(instance.instance_id)

        assert snapshot.get(instance.instance_id).load_metric == 0.5
        assert pool.current_snapshot().get(instance.instance_id).load_metric == 0.99
        assert pool.current_snapshot().version > snapshot.version

    async def test_unhealthy_instance_leaves_and_rejoins(self, pool, grow_pool):
        (instance,) = await grow_pool(pool, [0.5])

        instance.health = HealthStatus.UNHEALTHY
        assert pool.mark_unhealthy(instance.instance_id)
        assert instance.instance_id not in pool.current_snapshot()

        instance.health = HealthStatus.HEALTHY
        assert pool.mark_healthy(instance.instance_id)
        assert instance.instance_id in pool.current_snapshot()


@pytest.mark.asyncio
class TestDraining:
    """Test draining and termination."""

    async def test_drain_waits_for_in_flight(self, pool, provisioner, grow_pool, clock, pool_config):
        """A draining instance is terminated once its last request finishes."""
        pool_config.drain_deadline_sec = 5.0
        (instance,) = await grow_pool(pool, [0.5])
        assert pool.acquire(instance.instance_id)

        await pool.apply_scaling_decision(decision(0, clock.advance(1), ScalingReason.SCALE_DOWN))

        assert instance.state == WorkerState.DRAINING
        assert pool.current_snapshot().ready_count == 0
        await asyncio.sleep(0.05)
        assert provisioner.terminated == []

        pool.release(instance.instance_id)
        assert await wait_until(lambda: instance.state == WorkerState.TERMINATED)
        assert provisioner.terminated == [instance.instance_id]

    async def test_drain_deadline_forces_termination(self, pool, provisioner, grow_pool, clock):
        """In-flight requests do not hold an instance past the drain deadline."""
        (instance,) = await grow_pool(pool, [0.5])
        pool.acquire(instance.instance_id)

        await pool.apply_scaling_decision(decision(0, clock.advance(1), ScalingReason.SCALE_DOWN))

        assert await wait_until(lambda: instance.state == WorkerState.TERMINATED)
        assert any(e.kind == "drain_deadline" for e in pool.events())
        with pytest.raises(UnknownInstanceError):
            pool.get_instance(instance.instance_id)
        assert instance in pool.list_instances(include_terminated=True)

    async def test_acquire_refused_when_not_routable(self, pool, grow_pool, clock):
        (instance,) = await grow_pool(pool, [0.5])
        await pool.apply_scaling_decision(decision(0, clock.advance(1), ScalingReason.SCALE_DOWN))

        assert pool.acquire(instance.instance_id) is False
        assert pool.acquire("worker-unknown") is False

    async def test_stop_forces_outstanding_drains(self, provisioner, grow_pool, clock):
        config = PoolConfig(drain_deadline_sec=60.0)
        pool = WorkerPool(provisioner, config, max_instances=5, clock=clock)
        (instance,) = await grow_pool(pool, [0.5])
        pool.acquire(instance.instance_id)
        await pool.apply_scaling_decision(decision(0, clock.advance(1), ScalingReason.SCALE_DOWN))

        await asyncio.wait_for(pool.stop(), timeout=2.0)

        assert instance.state == WorkerState.TERMINATED

    async def test_unhealthy_instance_reaped(self, pool, provisioner, grow_pool, clock):
        """An instance unhealthy past the limit is drained and terminated."""
        (instance,) = await grow_pool(pool, [0.5])
        instance.health = HealthStatus.UNHEALTHY
        pool.mark_unhealthy(instance.instance_id)

        assert pool.reap_unhealthy() == []
        clock.advance(301)
        assert pool.reap_unhealthy() == [instance.instance_id]
        assert await wait_until(lambda: instance.state == WorkerState.TERMINATED)


@pytest.mark.asyncio
class TestProvisioningTimeout:
    """Test replacement of instances that never become Ready."""

    async def test_timeout_replaces_until_attempts_exhausted(self, provisioner, clock):
        config = PoolConfig(provisioning_timeout_sec=0.05, max_provisioning_attempts=3)
        pool = WorkerPool(provisioner, config, max_instances=5, clock=clock)

        await pool.apply_scaling_decision(decision(1, clock()))

        assert await wait_until(
            lambda: any(e.kind == "provision_exhausted" for e in pool.events())
        )
        assert len(provisioner.provisioned) == 3
        kinds = [e.kind for e in pool.events()]
        assert kinds.count("provisioning_timeout") == 3
        assert "provision_exhausted" in kinds
        assert pool.list_instances() == []

    async def test_ready_instance_is_not_replaced(self, provisioner, clock):
        config = PoolConfig(provisioning_timeout_sec=0.05)
        pool = WorkerPool(provisioner, config, max_instances=5, clock=clock)
        result = await pool.apply_scaling_decision(decision(1, clock()))

        pool.mark_healthy(result.provisioned[0])
        await asyncio.sleep(0.1)

        assert provisioner.terminated == []
        assert len(provisioner.provisioned) == 1


@pytest.mark.asyncio
class TestPersistence:
    """Test durable version and decision state."""

    async def test_versions_keep_increasing_across_restart(self, tmp_path, provisioner, clock):
        store = StateStore(tmp_path / "state.json")
        pool = WorkerPool(provisioner, max_instances=5, state_store=store, clock=clock)
        result = await pool.apply_scaling_decision(decision(1, clock()))
        pool.mark_healthy(result.provisioned[0])
        last_version = pool.current_snapshot().version
        last_decision = pool.last_decision

        restored = store.load()
        restarted = WorkerPool(
            provisioner,
            max_instances=5,
            state_store=store,
            initial_version=restored.snapshot_version,
            last_decision=restored.last_decision,
            clock=clock,
        )

        assert restarted.current_snapshot().version > last_version
        assert restarted.last_decision == last_decision
        stale = await restarted.apply_scaling_decision(decision(3, last_decision.decision_time - 1))
        assert not stale.accepted
