# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the SAGE project

"""Tests for the utilization-based autoscaler."""

import asyncio

import pytest

from fleet_control import (
    Autoscaler,
    AutoscalerConfig,
    FleetMetricsCollector,
    PoolSnapshot,
    ScalingReason,
    WorkerView,
)


def snapshot_of(count, version=1):
    views = tuple(
        WorkerView(f"worker-{i}", "localhost", 9000 + i, 0.5, float(i)) for i in range(count)
    )
    return PoolSnapshot(version=version, instances=views)


@pytest.fixture
def scaler_config():
    return AutoscalerConfig(
        min_instances=1,
        max_instances=10,
        target_utilization=0.7,
        scale_down_cooldown_sec=300.0,
        tick_interval_sec=30.0,
    )


@pytest.fixture
def autoscaler(scaler_config, pool, clock):
    return Autoscaler(scaler_config, pool, clock=clock)


class TestDesiredComputation:
    """Test the sizing formula."""

    def test_scale_up_two_to_three(self, autoscaler):
        """2 instances at 0.95 with target 0.7 need ceil(2.71) = 3."""
        assert autoscaler.compute_desired(2, 0.95) == 3

    def test_exact_fit_does_not_round_up(self, autoscaler):
        assert autoscaler.compute_desired(3, 0.7) == 3

    def test_clamped_to_bounds(self, autoscaler):
        assert autoscaler.compute_desired(8, 1.0) == 10
        assert autoscaler.compute_desired(4, 0.0) == 1


class TestEvaluate:
    """Test decisions produced by evaluate()."""

    def test_scale_up_is_immediate(self, autoscaler):
        decision = autoscaler.evaluate(snapshot_of(2), 0.95, now=1000.0)

        assert decision.reason == ScalingReason.SCALE_UP
        assert decision.target_instances == 3
        assert decision.current_instances == 2

    def test_scale_down_waits_for_cooldown(self, autoscaler):
        """desired < current must hold for the full cooldown window."""
        first = autoscaler.evaluate(snapshot_of(4), 0.1, now=1000.0)
        assert first.reason == ScalingReason.HOLD_COOLDOWN
        assert first.target_instances == 4

        held = autoscaler.evaluate(snapshot_of(4), 0.1, now=1299.0)
        assert held.reason == ScalingReason.HOLD_COOLDOWN

        done = autoscaler.evaluate(snapshot_of(4), 0.1, now=1300.0)
        assert done.reason == ScalingReason.SCALE_DOWN
        assert done.target_instances == 1

    def test_scale_down_uses_window_maximum(self, autoscaler):
        """The target is the highest desired count seen during the window."""
        autoscaler.evaluate(snapshot_of(6), 0.1, now=1000.0)  # desired 1
        autoscaler.evaluate(snapshot_of(6), 0.35, now=1100.0)  # desired 3
        decision = autoscaler.evaluate(snapshot_of(6), 0.1, now=1300.0)

        assert decision.reason == ScalingReason.SCALE_DOWN
        assert decision.target_instances == 3

    def test_load_spike_resets_cooldown(self, autoscaler):
        autoscaler.evaluate(snapshot_of(4), 0.1, now=1000.0)
        steady = autoscaler.evaluate(snapshot_of(4), 0.7, now=1200.0)
        assert steady.reason == ScalingReason.HOLD_STEADY
        assert autoscaler.below_since is None

        decision = autoscaler.evaluate(snapshot_of(4), 0.1, now=1400.0)
        assert decision.reason == ScalingReason.HOLD_COOLDOWN

    def test_emergency_scale_up_without_metrics(self, autoscaler):
        """No Ready instances triggers scale-up even without a load signal."""
        decision = autoscaler.evaluate(snapshot_of(0), None, now=1000.0)

        assert decision.reason == ScalingReason.EMERGENCY_SCALE_UP
        assert decision.target_instances == 1

    def test_missing_metrics_hold(self, autoscaler):
        decision = autoscaler.evaluate(snapshot_of(3), None, now=1000.0)

        assert decision.reason == ScalingReason.HOLD_NO_METRICS
        assert decision.target_instances == 3
        assert decision.is_hold

    def test_decision_times_strictly_increase(self, autoscaler):
        first = autoscaler.evaluate(snapshot_of(2), 0.5, now=1000.0)
        second = autoscaler.evaluate(snapshot_of(2), 0.5, now=1000.0)
        third = autoscaler.evaluate(snapshot_of(2), 0.5, now=999.0)

        assert first.decision_time < second.decision_time < third.decision_time

    def test_decision_records_snapshot_version(self, autoscaler):
        decision = autoscaler.evaluate(snapshot_of(2, version=42), 0.5, now=1000.0)
        assert decision.snapshot_version == 42


@pytest.mark.asyncio
class TestTick:
    """Test ticks against a real pool."""

    async def test_tick_scales_pool_up(self, autoscaler, pool, grow_pool, clock):
        """2 Ready instances at 0.95 grow to 3 on the next tick."""
        await grow_pool(pool, [0.95, 0.95])

        decision = await autoscaler.tick()

        assert decision.reason == ScalingReason.SCALE_UP
        assert decision.target_instances == 3
        assert pool.counts()["provisioning"] == 1
        assert pool.last_decision == decision

    async def test_tick_ignores_stale_metrics(self, autoscaler, pool, grow_pool, clock):
        await grow_pool(pool, [0.95, 0.95])
        clock.advance(61)

        decision = await autoscaler.tick()

        assert decision.reason == ScalingReason.HOLD_NO_METRICS
        assert pool.counts()["provisioning"] == 0

    async def test_hold_is_not_sent_to_pool(self, autoscaler, pool, grow_pool):
        await grow_pool(pool, [0.7, 0.7])
        applied_before = pool.last_decision

        decision = await autoscaler.tick()

        assert decision.reason == ScalingReason.HOLD_STEADY
        assert pool.last_decision == applied_before

    async def test_dry_run_does_not_apply(self, scaler_config, pool, grow_pool, clock):
        scaler_config.dry_run = True
        autoscaler = Autoscaler(scaler_config, pool, clock=clock)
        await grow_pool(pool, [0.95, 0.95])
        applied_before = pool.last_decision

        decision = await autoscaler.tick()

        assert decision.reason == ScalingReason.SCALE_UP
        assert pool.last_decision == applied_before

    async def test_overlapping_tick_is_skipped(self, autoscaler, pool):
        autoscaler._evaluating = True

        assert await autoscaler.tick() is None
        assert autoscaler.skipped_ticks == 1

    async def test_scale_down_after_cooldown_drains(self, scaler_config, pool, grow_pool, clock):
        scaler_config.scale_down_cooldown_sec = 60.0
        autoscaler = Autoscaler(scaler_config, pool, clock=clock)
        instances = await grow_pool(pool, [0.1, 0.1, 0.1])

        first = await autoscaler.tick()
        assert first.reason == ScalingReason.HOLD_COOLDOWN

        clock.advance(30)
        for instance in instances:
            instance.last_health_check = clock()
        second = await autoscaler.tick()
        assert second.reason == ScalingReason.HOLD_COOLDOWN

        clock.advance(30)
        for instance in instances:
            instance.last_health_check = clock()
        third = await autoscaler.tick()
        assert third.reason == ScalingReason.SCALE_DOWN
        assert pool.current_snapshot().ready_count == 1

    async def test_loop_start_stop(self, scaler_config, pool, clock):
        scaler_config.tick_interval_sec = 0.01
        autoscaler = Autoscaler(scaler_config, pool, clock=clock)

        await autoscaler.start()
        await asyncio.sleep(0.05)
        await autoscaler.stop()

        status = autoscaler.get_status()
        assert status["running"] is False
        assert status["last_decision"]["reason"] == ScalingReason.EMERGENCY_SCALE_UP.value


class TestMetricsCollector:
    """Test the aggregate load signal."""

    @pytest.mark.asyncio
    async def test_mean_of_fresh_instances(self, pool, grow_pool, clock):
        instances = await grow_pool(pool, [0.2, 0.6])
        collector = FleetMetricsCollector(pool, max_age_sec=60.0, clock=clock)

        assert collector.aggregate_load(pool.current_snapshot()) == pytest.approx(0.4)

        instances[0].last_health_check = clock() - 120
        assert collector.aggregate_load(pool.current_snapshot()) == pytest.approx(0.6)

    @pytest.mark.asyncio
    async def test_moving_average_smoothing(self, pool, grow_pool, clock):
        (instance,) = await grow_pool(pool, [0.2])
        collector = FleetMetricsCollector(
            pool, smoothing="moving_average", window_size=2, clock=clock
        )
        collector.aggregate_load(pool.current_snapshot())
        instance.load_metric = 0.6
        pool.metrics_updated(instance.instance_id)

        assert collector.aggregate_load(pool.current_snapshot()) == pytest.approx(0.4)

    def test_no_instances_is_no_signal(self, pool, clock):
        collector = FleetMetricsCollector(pool, clock=clock)
        assert collector.aggregate_load(pool.current_snapshot()) is None
