# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the SAGE project

"""Tests for lag-aware read/write splitting."""

import asyncio

import pytest

from fleet_control import (
    Consistency,
    DataRouter,
    DataRouterConfig,
    Endpoint,
    EndpointRole,
    HttpLagProbe,
    PrimaryUnreachable,
    Query,
    QueryKind,
    ReplicaUnreachable,
)


class FakeLagProbe:
    """LagProbe answering from dictionaries."""

    def __init__(self, lags=None, primary_alive=True):
        self.lags = lags or {}
        self.alive = primary_alive

    async def replica_lag(self, replica, timeout):
        lag = self.lags.get(replica.endpoint_id)
        if isinstance(lag, Exception):
            raise lag
        if lag is None:
            raise ReplicaUnreachable(replica.endpoint_id, "no answer")
        return lag

    async def primary_alive(self, primary, timeout):
        return self.alive


PRIMARY = Endpoint("db-primary", "postgres://primary/app", EndpointRole.PRIMARY, "http://primary:8008")
REPLICA_A = Endpoint("db-a", "postgres://a/app", probe_url="http://a:8008")
REPLICA_B = Endpoint("db-b", "postgres://b/app", probe_url="http://b:8008")


@pytest.fixture
def data_config():
    return DataRouterConfig(
        max_allowed_replica_lag_sec=2.0,
        lag_refresh_interval_sec=5.0,
        lag_probe_timeout_sec=0.2,
        read_your_writes_window_sec=5.0,
    )


@pytest.fixture
def data_router(data_config, clock):
    return DataRouter(PRIMARY, [REPLICA_A, REPLICA_B], data_config, FakeLagProbe(), clock=clock)


READ = Query()
WRITE = Query(kind=QueryKind.WRITE)


class TestRouting:
    """Test endpoint choice per query."""

    def test_lagging_replica_skipped(self, data_router, clock):
        """Replica A at 5s lag is skipped in favour of B at 0.5s."""
        data_router.update_lag("db-a", 5.0)
        data_router.update_lag("db-b", 0.5)

        assert data_router.route(READ) == REPLICA_B

    def test_least_lagged_replica_preferred(self, data_router):
        data_router.update_lag("db-a", 0.2)
        data_router.update_lag("db-b", 0.5)

        assert data_router.route(READ) == REPLICA_A

    def test_writes_go_to_primary(self, data_router):
        data_router.update_lag("db-a", 0.0)

        assert data_router.route(WRITE) == PRIMARY
        assert data_router.stats["primary"] == 1

    def test_strong_read_goes_to_primary(self, data_router):
        data_router.update_lag("db-a", 0.0)

        assert data_router.route(Query(consistency=Consistency.STRONG)) == PRIMARY

    def test_read_your_writes_window(self, data_router, clock):
        """A session's reads follow its write to the primary until the window passes."""
        data_router.update_lag("db-a", 0.1)
        data_router.route(Query(kind=QueryKind.WRITE, session_id="s1"))

        assert data_router.route(Query(session_id="s1")) == PRIMARY
        assert data_router.route(Query(session_id="s2")) == REPLICA_A

        clock.advance(4.0)
        data_router.update_lag("db-a", 0.1)
        assert data_router.route(Query(session_id="s1")) == PRIMARY

        clock.advance(1.0)
        assert data_router.route(Query(session_id="s1")) == REPLICA_A

    def test_no_estimate_falls_back_to_primary(self, data_router):
        """Replicas without a lag estimate are never used."""
        assert data_router.route(READ) == PRIMARY
        assert data_router.stats["fallback_to_primary"] == 1

    def test_stale_estimate_not_trusted(self, data_router, clock):
        data_router.update_lag("db-a", 0.1)
        clock.advance(15.0)
        assert data_router.route(READ) == REPLICA_A

        clock.advance(0.1)
        assert data_router.route(READ) == PRIMARY

    def test_lag_at_limit_is_ineligible(self, data_router):
        data_router.update_lag("db-a", 2.0)
        assert data_router.best_replica() is None

    def test_unreachable_replica_skipped(self, data_router):
        data_router.update_lag("db-a", 0.1)
        data_router.update_lag("db-b", 0.9)
        data_router.mark_replica_unreachable("db-a", "connection refused")

        assert data_router.route(READ) == REPLICA_B

    def test_write_with_primary_down_raises(self, data_router):
        data_router.set_primary_reachable(False)

        with pytest.raises(PrimaryUnreachable) as exc_info:
            data_router.route(WRITE)
        assert exc_info.value.primary_id == "db-primary"

    def test_reads_survive_primary_outage(self, data_router):
        data_router.update_lag("db-b", 0.3)
        data_router.set_primary_reachable(False)

        assert data_router.route(READ) == REPLICA_B
        with pytest.raises(PrimaryUnreachable):
            data_router.route(Query(consistency=Consistency.STRONG))

    def test_primary_role_enforced(self, data_config):
        router = DataRouter(Endpoint("p", "dsn"), config=data_config, lag_probe=FakeLagProbe())
        assert router.primary.role == EndpointRole.PRIMARY

    def test_removed_replica_not_routed(self, data_router):
        data_router.update_lag("db-a", 0.1)
        assert data_router.remove_replica("db-a") == REPLICA_A

        assert data_router.route(READ) == PRIMARY


@pytest.mark.asyncio
class TestLagRefresh:
    """Test periodic lag measurement."""

    async def test_refresh_updates_estimates(self, data_config, clock):
        probe = FakeLagProbe({"db-a": 0.4, "db-b": ReplicaUnreachable("db-b", "refused")})
        router = DataRouter(PRIMARY, [REPLICA_A, REPLICA_B], data_config, probe, clock=clock)

        estimates = await router.refresh_lag()

        assert estimates["db-a"].lag_seconds == 0.4
        assert estimates["db-a"].reachable
        assert not estimates["db-b"].reachable
        assert estimates["db-b"].last_error == "refused"
        assert router.route(READ) == REPLICA_A

    async def test_unexpected_probe_error_marks_unreachable(self, data_config, clock):
        probe = FakeLagProbe({"db-a": RuntimeError("boom"), "db-b": 0.1})
        router = DataRouter(PRIMARY, [REPLICA_A, REPLICA_B], data_config, probe, clock=clock)

        estimates = await router.refresh_lag()

        assert not estimates["db-a"].reachable
        assert estimates["db-b"].reachable

    async def test_refresh_tracks_primary_liveness(self, data_config, clock):
        probe = FakeLagProbe(primary_alive=False)
        router = DataRouter(PRIMARY, [], data_config, probe, clock=clock)

        await router.refresh_lag()
        assert not router.primary_reachable

        probe.alive = True
        await router.refresh_lag()
        assert router.primary_reachable

    async def test_slow_replica_times_out(self, data_config, clock):
        class SlowProbe(FakeLagProbe):
            async def replica_lag(self, replica, timeout):
                await asyncio.sleep(10)

        router = DataRouter(PRIMARY, [REPLICA_A], data_config, SlowProbe(), clock=clock)

        estimates = await router.refresh_lag()

        assert "timeout" in estimates["db-a"].last_error

    async def test_start_stop(self, data_config):
        data_config.lag_refresh_interval_sec = 0.01
        router = DataRouter(PRIMARY, [REPLICA_A], data_config, FakeLagProbe({"db-a": 0.1}))

        await router.start()
        await asyncio.sleep(0.05)
        await router.stop()

        status = router.get_status()
        assert status["replicas"]["db-a"]["eligible"]
        assert router.running is False


@pytest.mark.asyncio
class TestHttpLagProbe:
    """Test the HTTP introspection client."""

    async def test_replica_lag(self, mock_aiohttp):
        mock_aiohttp.get("http://a:8008/lag", payload={"lag_seconds": 1.5})
        probe = HttpLagProbe()
        try:
            assert await probe.replica_lag(REPLICA_A, timeout=1.0) == 1.5
        finally:
            await probe.cleanup()

    async def test_replica_lag_error_status(self, mock_aiohttp):
        mock_aiohttp.get("http://a:8008/lag", status=503)
        probe = HttpLagProbe()
        try:
            with pytest.raises(ReplicaUnreachable) as exc_info:
                await probe.replica_lag(REPLICA_A, timeout=1.0)
            assert "503" in exc_info.value.message
        finally:
            await probe.cleanup()

    async def test_replica_lag_malformed(self, mock_aiohttp):
        mock_aiohttp.get("http://a:8008/lag", payload={"lag": "soon"})
        probe = HttpLagProbe()
        try:
            with pytest.raises(ReplicaUnreachable):
                await probe.replica_lag(REPLICA_A, timeout=1.0)
        finally:
            await probe.cleanup()

    async def test_replica_without_probe_url(self):
        probe = HttpLagProbe()
        with pytest.raises(ReplicaUnreachable):
            await probe.replica_lag(Endpoint("db-x", "dsn"), timeout=1.0)

    async def test_primary_alive(self, mock_aiohttp):
        mock_aiohttp.get("http://primary:8008/health", status=200)
        mock_aiohttp.get("http://primary:8008/health", status=500)
        probe = HttpLagProbe()
        try:
            assert await probe.primary_alive(PRIMARY, timeout=1.0) is True
            assert await probe.primary_alive(PRIMARY, timeout=1.0) is False
        finally:
            await probe.cleanup()
