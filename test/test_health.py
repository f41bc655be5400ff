"""Tests for per-source health tracking."""

from ethflow.health import HealthRegistry, HealthStatus, SourceHealth


class TestSourceHealth:
    """Tests for SourceHealth transitions."""

    def test_fresh_source_is_healthy(self, clock):
        health = SourceHealth("rpc", clock=clock)
        assert health.is_healthy()
        assert health.last_success is None
        assert health.last_error is None

    def test_success_clears_error(self, clock):
        health = SourceHealth("rpc", clock=clock)
        health.record_error(RuntimeError("boom"))
        health.record_success()

        assert health.is_healthy()
        assert health.last_error is None
        assert health.last_success == clock.now

    def test_error_clears_last_success(self, clock):
        health = SourceHealth("rpc", clock=clock)
        health.record_success()
        health.record_error(RuntimeError("boom"))

        assert health.last_success is None
        assert str(health.last_error) == "boom"

    def test_error_after_recent_success_stays_healthy(self, clock):
        """An error right after a success does not flip the source."""
        health = SourceHealth("rpc", clock=clock)
        health.record_success()
        clock.advance(10)
        health.record_error(RuntimeError("timeout"))

        assert health.is_healthy()

    def test_unhealthy_once_window_elapses(self, clock):
        health = SourceHealth("rpc", clock=clock, window=300)
        health.record_success()
        health.record_error(RuntimeError("timeout"))

        clock.advance(299)
        assert health.is_healthy()
        clock.advance(1)
        assert not health.is_healthy()

    def test_error_without_any_success_is_unhealthy(self, clock):
        health = SourceHealth("beacon", clock=clock)
        health.record_error(RuntimeError("down"))
        assert not health.is_healthy()

    def test_status_snapshot(self, clock):
        health = SourceHealth("relay", clock=clock)
        health.record_error(RuntimeError("503"))

        status = health.status()
        assert status == HealthStatus(name="relay", healthy=False, last_success=None, last_error="503")
        assert status.to_dict() == {
            "name": "relay",
            "healthy": False,
            "lastSuccess": None,
            "lastError": "503",
        }


class TestHealthRegistry:
    """Tests for HealthRegistry summaries."""

    def test_all_healthy(self, clock):
        registry = HealthRegistry(clock=clock)
        report = registry.report()

        assert report["status"] == "healthy"
        assert report["summary"] == {"total": 4, "healthy": 4, "unhealthy": 0}
        assert [s["name"] for s in report["dataSources"]] == ["beacon", "relay", "rpc", "mempool"]

    def test_degraded_and_unhealthy(self, clock):
        registry = HealthRegistry(clock=clock)
        registry.relay.record_error(RuntimeError("x"))
        assert registry.report()["status"] == "degraded"

        for source in registry.sources.values():
            source.record_error(RuntimeError("x"))
        report = registry.report()
        assert report["status"] == "unhealthy"
        assert report["summary"]["unhealthy"] == 4

    def test_readiness_needs_beacon_and_rpc(self, clock):
        registry = HealthRegistry(clock=clock)
        assert registry.is_ready()

        registry.relay.record_error(RuntimeError("x"))
        assert registry.is_ready()

        registry.rpc.record_error(RuntimeError("x"))
        assert not registry.is_ready()
        assert registry.is_live()
