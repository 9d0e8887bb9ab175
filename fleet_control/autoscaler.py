# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the SAGE project

"""
Autoscaler - utilization-based sizing of the worker pool.

Every tick the autoscaler reads the latest pool snapshot and the aggregate
load signal and computes

    desired = ceil(ready * load / target_utilization)

clamped to [min_instances, max_instances]. Scale-up is immediate;
scale-down waits until the fleet has been oversized for a full cooldown
window and then shrinks only to the largest size that window asked for.
"""

import asyncio
import logging
import math
import time
from typing import Callable, Optional

from .config import AutoscalerConfig
from .metrics import FleetMetricsCollector
from .pool import WorkerPool
from .types import PoolSnapshot, ScalingDecision, ScalingReason

logger = logging.getLogger(__name__)

# Absorbs float error so that e.g. 3 * 0.7 / 0.7 does not round up to 4
_CEIL_TOLERANCE = 1e-9

# Bump applied to a decision time that would not increase
_MIN_TIME_STEP = 1e-6


class Autoscaler:
    """
    Utilization-based autoscaler for the worker pool.

    Produces one ScalingDecision per tick. Hold decisions are recorded but
    never sent to the pool; all others are applied through
    ``WorkerPool.apply_scaling_decision`` before the next tick starts.
    """

    def __init__(
        self,
        config: AutoscalerConfig,
        pool: WorkerPool,
        metrics_collector: Optional[FleetMetricsCollector] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the autoscaler.

        Args:
            config: Autoscaler configuration
            pool: Pool to read snapshots from and send decisions to
            metrics_collector: Source of the aggregate load signal
            clock: Time source for decision timestamps
        """
        self.config = config
        self.pool = pool
        self.metrics_collector = metrics_collector or FleetMetricsCollector(
            pool,
            max_age_sec=config.metrics_max_age_sec,
            smoothing=config.load_smoothing,
            window_size=config.load_window,
            clock=clock,
        )
        self._clock = clock

        # Scale-down hysteresis window
        self.below_since: Optional[float] = None
        self.window_max_desired: Optional[int] = None

        # Seeded from the pool so a restored decision keeps timestamps increasing
        self.last_decision: Optional[ScalingDecision] = pool.last_decision
        self.last_tick_time: Optional[float] = None
        self.skipped_ticks = 0

        self.running = False
        self._evaluating = False
        self._task: Optional[asyncio.Task] = None

        logger.info(
            f"Autoscaler initialized: min={config.min_instances}, "
            f"max={config.max_instances}, target_utilization={config.target_utilization}, "
            f"cooldown={config.scale_down_cooldown_sec}s"
        )

    # ------------------------------------------------------------------
    # Decision logic
    # ------------------------------------------------------------------
    def evaluate(
        self,
        snapshot: PoolSnapshot,
        aggregate_load: Optional[float],
        now: Optional[float] = None,
    ) -> ScalingDecision:
        """
        Compute the scaling decision for one tick.

        Args:
            snapshot: Latest pool snapshot
            aggregate_load: Mean utilization of Ready instances, or None when
                no fresh signal is available
            now: Evaluation time; defaults to the autoscaler clock

        Returns:
            ScalingDecision with a reason code. Holds have
            ``target_instances == current_instances``.
        """
        now = self._clock() if now is None else now
        current = snapshot.ready_count

        if current == 0:
            desired = self._apply_constraints(0)
            if desired > 0:
                self._reset_window()
                logger.warning(
                    f"No Ready instances: emergency scale-up to {desired} "
                    f"(load={aggregate_load})"
                )
                return self._decide(
                    desired, ScalingReason.EMERGENCY_SCALE_UP, now, snapshot, desired, aggregate_load
                )

        if aggregate_load is None or math.isnan(aggregate_load):
            # An unknown load says nothing about the oversize window either way
            self._reset_window()
            logger.info("No fresh load signal, holding at %d instances", current)
            return self._decide(
                current, ScalingReason.HOLD_NO_METRICS, now, snapshot, current, aggregate_load
            )

        desired = self.compute_desired(current, aggregate_load)

        if desired > current:
            self._reset_window()
            logger.info(
                f"Scale-up: load={aggregate_load:.3f} ready={current} -> desired={desired}"
            )
            return self._decide(
                desired, ScalingReason.SCALE_UP, now, snapshot, desired, aggregate_load
            )

        if desired < current:
            if self.below_since is None:
                self.below_since = now
                self.window_max_desired = desired
            else:
                self.window_max_desired = max(self.window_max_desired or desired, desired)

            held_for = now - self.below_since
            if held_for >= self.config.scale_down_cooldown_sec:
                target = self.window_max_desired
                self._reset_window()
                logger.info(
                    f"Scale-down: oversized for {held_for:.0f}s, "
                    f"ready={current} -> target={target}"
                )
                return self._decide(
                    target, ScalingReason.SCALE_DOWN, now, snapshot, desired, aggregate_load
                )

            logger.debug(
                f"Scale-down pending: desired={desired} < ready={current} for "
                f"{held_for:.0f}s of {self.config.scale_down_cooldown_sec}s"
            )
            return self._decide(
                current, ScalingReason.HOLD_COOLDOWN, now, snapshot, desired, aggregate_load
            )

        self._reset_window()
        return self._decide(
            current, ScalingReason.HOLD_STEADY, now, snapshot, desired, aggregate_load
        )

    def compute_desired(self, current: int, load: float) -> int:
        """Instances needed to bring ``load`` on ``current`` instances to the target."""
        raw = current * load / self.config.target_utilization
        return self._apply_constraints(math.ceil(raw - _CEIL_TOLERANCE))

    def _apply_constraints(self, desired: int) -> int:
        return max(self.config.min_instances, min(desired, self.config.max_instances))

    def _reset_window(self) -> None:
        self.below_since = None
        self.window_max_desired = None

    def _decide(
        self,
        target: int,
        reason: ScalingReason,
        now: float,
        snapshot: PoolSnapshot,
        desired: int,
        aggregate_load: Optional[float],
    ) -> ScalingDecision:
        decision_time = now
        if self.last_decision is not None and decision_time <= self.last_decision.decision_time:
            decision_time = self.last_decision.decision_time + _MIN_TIME_STEP

        decision = ScalingDecision(
            target_instances=target,
            reason=reason,
            decision_time=decision_time,
            current_instances=snapshot.ready_count,
            desired_instances=desired,
            aggregate_load=aggregate_load,
            snapshot_version=snapshot.version,
        )
        self.last_decision = decision
        return decision

    # ------------------------------------------------------------------
    # Tick and loop
    # ------------------------------------------------------------------
    async def tick(self) -> Optional[ScalingDecision]:
        """
        Run one evaluation and apply its decision.

        Returns:
            The decision, or None when another evaluation is still running.
        """
        if self._evaluating:
            self.skipped_ticks += 1
            logger.warning("Previous autoscaler tick still running, skipping")
            return None

        self._evaluating = True
        try:
            now = self._clock()
            self.last_tick_time = now
            snapshot = self.pool.current_snapshot()
            load = self.metrics_collector.aggregate_load(snapshot, now)
            decision = self.evaluate(snapshot, load, now)

            if decision.is_hold:
                return decision

            if self.config.dry_run:
                logger.info(
                    f"[DRY RUN] Would apply {decision.reason.value}: "
                    f"target={decision.target_instances}"
                )
                return decision

            await self._apply_scaling_decision(decision)
            return decision
        finally:
            self._evaluating = False

    async def _apply_scaling_decision(self, decision: ScalingDecision) -> None:
        try:
            result = await self.pool.apply_scaling_decision(decision)
        except Exception as e:
            logger.error(f"Failed to apply scaling decision: {e}", exc_info=True)
            return

        if result.accepted:
            logger.info(
                f"Applied scaling decision {decision.reason.value}: "
                f"target={decision.target_instances}, "
                f"provisioned={len(result.provisioned)}, draining={len(result.draining)}"
            )
        else:
            logger.warning(f"Pool rejected scaling decision: {result.reason}")

    async def start(self):
        """Start the autoscaling loop."""
        if self.running:
            logger.warning("Autoscaler already running")
            return

        self.running = True
        self._task = asyncio.create_task(self._autoscaling_loop())
        logger.info("Autoscaler started")

    async def stop(self):
        """Stop the autoscaling loop."""
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
        logger.info("Autoscaler stopped")

    async def _autoscaling_loop(self):
        """Run ticks on a fixed schedule; ticks missed while one ran are skipped."""
        interval = self.config.tick_interval_sec
        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        while self.running:
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Error in autoscaling loop: {e}", exc_info=True)

            next_tick += interval
            now = loop.time()
            if now > next_tick:
                missed = int((now - next_tick) // interval) + 1
                self.skipped_ticks += missed
                logger.warning(f"Autoscaler tick overran, skipping {missed} tick(s)")
                next_tick += missed * interval
            await asyncio.sleep(next_tick - now)

    def get_status(self) -> dict:
        """Get current autoscaler status."""
        return {
            "running": self.running,
            "config": {
                "min_instances": self.config.min_instances,
                "max_instances": self.config.max_instances,
                "target_utilization": self.config.target_utilization,
                "scale_down_cooldown_sec": self.config.scale_down_cooldown_sec,
                "tick_interval_sec": self.config.tick_interval_sec,
                "dry_run": self.config.dry_run,
            },
            "cooldown_window_start": self.below_since,
            "cooldown_window_max_desired": self.window_max_desired,
            "last_decision": self.last_decision.to_dict() if self.last_decision else None,
            "last_tick_time": self.last_tick_time,
            "skipped_ticks": self.skipped_ticks,
        }
