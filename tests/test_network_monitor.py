"""Tests for the network and rate-limit monitor."""
import pytest

from marlin_sync.models.schema import NetworkStatus, RateLimitInfo
from marlin_sync.services.network_monitor import NetworkMonitor
from marlin_sync.state import StatusBoard


def quota(remaining, limit=5000, reset=2_000_000_000):
    return RateLimitInfo(limit=limit, remaining=remaining, reset=reset)


@pytest.fixture
def monitor(remote, status):
    return NetworkMonitor(remote, status=status, probe_interval=3600, low_water=100)


@pytest.fixture
def transitions(monitor):
    seen = []
    monitor.on_transition(lambda old, new: seen.append((old, new)))
    return seen


class TestClassification:
    """Probe results to network status."""

    def test_classify(self, monitor):
        assert monitor.classify(None) == NetworkStatus.OFFLINE
        assert monitor.classify(quota(99)) == NetworkStatus.LIMITED
        assert monitor.classify(quota(100)) == NetworkStatus.ONLINE

    def test_probe_online_records_quota(self, monitor, remote, status):
        remote.rate_limit_info = quota(4000)

        assert monitor.probe() == NetworkStatus.ONLINE
        assert status.rate_limit_info.remaining == 4000

    def test_probe_limited(self, monitor, remote, transitions):
        remote.rate_limit_info = quota(10)

        assert monitor.probe() == NetworkStatus.LIMITED
        assert transitions == [(NetworkStatus.ONLINE, NetworkStatus.LIMITED)]

    def test_failed_probe_is_offline(self, monitor, remote, status):
        remote.fail_next("rate_limit", "unreachable")

        assert monitor.probe() == NetworkStatus.OFFLINE
        assert status.network_status == NetworkStatus.OFFLINE

    def test_unauthenticated_probe_is_offline(self, monitor, remote):
        remote.authenticated = False

        assert monitor.probe() == NetworkStatus.OFFLINE


class TestTransitions:
    """Listener notifications and passive observations."""

    def test_recovery_notifies_listeners(self, monitor, remote, transitions):
        remote.fail_next("rate_limit", "unreachable")
        monitor.probe()
        monitor.probe()

        assert transitions == [
            (NetworkStatus.ONLINE, NetworkStatus.OFFLINE),
            (NetworkStatus.OFFLINE, NetworkStatus.ONLINE),
        ]

    def test_no_notification_without_change(self, monitor, transitions):
        monitor.probe()
        monitor.probe()
        assert transitions == []

    def test_observed_headers_never_lift_offline(self, monitor, remote, status):
        remote.fail_next("rate_limit", "unreachable")
        monitor.probe()

        monitor.observe_rate_limit(quota(5000))

        assert status.network_status == NetworkStatus.OFFLINE
        assert status.rate_limit_info.remaining == 5000

    def test_observed_headers_move_between_online_and_limited(self, monitor, status):
        monitor.observe_rate_limit(quota(5))
        assert status.network_status == NetworkStatus.LIMITED

        monitor.observe_rate_limit(quota(4000))
        assert status.network_status == NetworkStatus.ONLINE

    def test_report_quota_exceeded(self, monitor, status):
        status.set_rate_limit_info(quota(50, reset=100))

        monitor.report_quota_exceeded(reset_epoch=200)

        assert status.network_status == NetworkStatus.LIMITED
        assert status.rate_limit_info.remaining == 0
        assert status.rate_limit_info.reset == 200

    def test_report_unauthenticated(self, monitor, status):
        monitor.report_unauthenticated()
        assert status.network_status == NetworkStatus.OFFLINE

    def test_failing_listener_does_not_block_others(self, monitor, transitions):
        def broken(old, new):
            raise RuntimeError("listener bug")

        monitor.on_transition(broken)
        monitor.report_unauthenticated()

        assert transitions == [(NetworkStatus.ONLINE, NetworkStatus.OFFLINE)]

    def test_removed_listener_is_silent(self, monitor):
        seen = []
        remove = monitor.on_transition(lambda old, new: seen.append(new))
        remove()

        monitor.report_unauthenticated()

        assert seen == []


class TestLifecycle:
    """Probe loop start and stop."""

    def test_start_probes_immediately_and_stop_cancels(self, remote):
        monitor = NetworkMonitor(remote, status=StatusBoard(), probe_interval=3600)

        monitor.start()
        try:
            assert monitor.running
            assert remote.count("rate_limit") == 1
            monitor.start()
            assert remote.count("rate_limit") == 1
        finally:
            monitor.stop()

        assert not monitor.running
