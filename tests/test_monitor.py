from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import MagicMock, call

import pytest

from spot_guardian.ec2 import EC2Client
from spot_guardian.errors import NotFound, StartFailedError, TransientError
from spot_guardian.models import (
    CreditsSummary,
    InstanceStatus,
    RegionGroup,
    StopMode,
    TrafficSummary,
)
from spot_guardian.monitor import Monitor
from spot_guardian.state import InstanceRegistry
from spot_guardian.tasks import BackgroundTasks

from conftest import make_instance


NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


def traffic_summary(china_gb: float = 0.0, non_china_gb: float = 0.0) -> TrafficSummary:
    return TrafficSummary(
        start=NOW.replace(day=1, hour=0), end=NOW, china_gb=china_gb, non_china_gb=non_china_gb
    )


@pytest.fixture
def compute():
    return MagicMock(spec=EC2Client)


@pytest.fixture
def make_monitor(config, compute, notifier, ticking_clock):
    created = []

    def _make(instances=(), **kwargs):
        kwargs.setdefault("sleep", MagicMock())
        kwargs.setdefault("clock", ticking_clock)
        kwargs.setdefault("tasks", BackgroundTasks(max_workers=2))
        monitor = Monitor(
            config=config,
            compute=compute,
            notifier=notifier,
            registry=InstanceRegistry(instances),
            **kwargs,
        )
        created.append(monitor)
        return monitor

    yield _make
    for monitor in created:
        monitor.tasks.shutdown()


class TestReclaimAndRestart:
    """check_instance state machine."""

    def test_not_stopped_issues_no_start(self, make_monitor, compute, notifier):
        inst = make_instance()
        compute.get_instance_status.return_value = InstanceStatus.RUNNING
        make_monitor([inst]).check_instance(inst)

        compute.start_instance.assert_not_called()
        notifier.notify_reclaimed.assert_not_called()

    def test_starting_instance_is_left_alone(self, make_monitor, compute):
        inst = make_instance()
        compute.get_instance_status.return_value = InstanceStatus.STARTING
        make_monitor([inst]).check_instance(inst)
        compute.start_instance.assert_not_called()

    def test_stopped_instance_started_on_first_attempt(self, make_monitor, compute, notifier):
        inst = make_instance()
        refreshed = make_instance(public_ip="203.0.113.9")
        compute.get_instance_status.side_effect = [InstanceStatus.STOPPED, InstanceStatus.RUNNING]
        compute.get_instance.return_value = refreshed

        make_monitor([inst]).check_instance(inst)

        compute.start_instance.assert_called_once_with("us-east-1", "i-001")
        notifier.notify_reclaimed.assert_called_once_with(inst)
        notifier.notify_started.assert_called_once()
        started_inst, duration = notifier.notify_started.call_args.args
        assert started_inst.public_ip == "203.0.113.9"
        assert duration > 0

    def test_start_fails_twice_then_succeeds(self, make_monitor, compute, notifier, config):
        """retry_count=3, two failed starts, running on first poll."""
        inst = make_instance()
        config.retry_interval = 30
        compute.get_instance_status.side_effect = [InstanceStatus.STOPPED, InstanceStatus.RUNNING]
        compute.start_instance.side_effect = [TransientError("boom"), TransientError("boom"), None]
        compute.get_instance.return_value = inst
        sleep = MagicMock()

        make_monitor([inst], sleep=sleep).check_instance(inst)

        assert compute.start_instance.call_count == 3
        notifier.notify_started.assert_called_once()
        assert notifier.notify_started.call_args.args[1] > 0
        notifier.notify_start_failed.assert_not_called()
        # two retry delays, then one poll wait
        assert sleep.call_args_list[:2] == [call(30), call(30)]

    def test_retries_exhausted_raises_and_notifies(self, make_monitor, compute, notifier, config):
        inst = make_instance()
        config.retry_interval = 7
        compute.get_instance_status.return_value = InstanceStatus.STOPPED
        compute.start_instance.side_effect = TransientError("quota exceeded")
        sleep = MagicMock()

        with pytest.raises(StartFailedError) as exc_info:
            make_monitor([inst], sleep=sleep).check_instance(inst)

        assert exc_info.value.attempts == 3
        assert compute.start_instance.call_count == 3
        # no sleep after the final attempt
        assert sleep.call_args_list == [call(7), call(7)]
        notifier.notify_start_failed.assert_called_once()
        assert notifier.notify_start_failed.call_args.args[1] == 3
        notifier.notify_started.assert_not_called()

    def test_running_wait_timeout_counts_as_failed_attempt(self, make_monitor, compute, notifier):
        inst = make_instance()
        compute.get_instance_status.return_value = InstanceStatus.STOPPED

        with pytest.raises(StartFailedError):
            make_monitor([inst]).check_instance(inst)

        assert compute.start_instance.call_count == 3
        notifier.notify_start_failed.assert_called_once()

    def test_address_refresh_failure_uses_old_record(self, make_monitor, compute, notifier):
        inst = make_instance()
        compute.get_instance_status.side_effect = [InstanceStatus.STOPPED, InstanceStatus.RUNNING]
        compute.get_instance.side_effect = TransientError("throttled")

        make_monitor([inst]).check_instance(inst)

        assert notifier.notify_started.call_args.args[0] is inst

    def test_vanished_instance_is_skipped(self, make_monitor, compute, notifier):
        inst = make_instance()
        compute.get_instance_status.side_effect = NotFound("gone")
        make_monitor([inst]).check_instance(inst)
        compute.start_instance.assert_not_called()
        notifier.notify_reclaimed.assert_not_called()

    def test_latched_group_is_skipped(self, make_monitor, compute):
        inst = make_instance(region="cn-hangzhou")
        monitor = make_monitor([inst])
        monitor.latch.evaluate(RegionGroup.CHINA, True)

        monitor.check_instance(inst)

        compute.get_instance_status.assert_not_called()

    def test_reclaimed_notification_respects_cooldown(self, make_monitor, compute, notifier):
        inst = make_instance()
        compute.get_instance_status.side_effect = [
            InstanceStatus.STOPPED, InstanceStatus.RUNNING,
            InstanceStatus.STOPPED, InstanceStatus.RUNNING,
        ]
        compute.get_instance.return_value = inst
        monitor = make_monitor([inst])

        monitor.check_instance(inst)
        monitor.check_instance(inst)

        assert notifier.notify_reclaimed.call_count == 1
        assert notifier.notify_started.call_count == 2

    def test_check_once_continues_after_failure(self, make_monitor, compute, notifier):
        a, b = make_instance("i-a"), make_instance("i-b")
        compute.list_regions.return_value = ["us-east-1"]
        compute.list_spot_instances.return_value = [a, b]
        compute.get_instance_status.side_effect = [TransientError("timeout"), InstanceStatus.RUNNING]
        monitor = make_monitor([a, b])

        monitor.check_once()

        assert compute.get_instance_status.call_count == 2


class TestDiscovery:
    """discover / refresh reconciliation."""

    def test_diff_old_ab_new_ac(self, make_monitor, compute):
        a, b, c = make_instance("i-a"), make_instance("i-b"), make_instance("i-c")
        compute.list_regions.return_value = ["us-east-1"]
        compute.list_spot_instances.return_value = [a, c]
        monitor = make_monitor([a, b])

        diff = monitor.refresh()

        assert [i.instance_id for i in diff.removed] == ["i-b"]
        assert [i.instance_id for i in diff.added] == ["i-c"]
        assert {i.instance_id for i in monitor.registry.snapshot()} == {"i-a", "i-c"}

    def test_monitor_started_sent_once(self, make_monitor, compute, notifier):
        compute.list_regions.return_value = ["us-east-1"]
        compute.list_spot_instances.return_value = [make_instance()]
        monitor = make_monitor()

        assert monitor.discover()
        assert monitor.discover()
        monitor.refresh()

        notifier.notify_monitor_started.assert_called_once()

    def test_failed_first_discovery_does_not_announce(self, make_monitor, compute, notifier):
        compute.list_regions.side_effect = [TransientError("down"), ["us-east-1"]]
        compute.list_spot_instances.return_value = [make_instance()]
        monitor = make_monitor()

        assert monitor.discover() is False
        notifier.notify_monitor_started.assert_not_called()
        assert monitor.discover() is True
        notifier.notify_monitor_started.assert_called_once()

    def test_region_listing_failure_keeps_snapshot(self, make_monitor, compute):
        inst = make_instance()
        compute.list_regions.side_effect = TransientError("down")
        monitor = make_monitor([inst])

        assert monitor.refresh() is None
        assert monitor.registry.snapshot() == (inst,)

    def test_every_region_failing_keeps_snapshot(self, make_monitor, compute):
        inst = make_instance("i-a")
        compute.list_regions.return_value = ["us-east-1", "eu-west-1"]
        compute.list_spot_instances.return_value = [inst]
        monitor = make_monitor()
        assert monitor.discover()

        compute.list_spot_instances.side_effect = TransientError("network down")

        assert monitor.refresh() is None
        assert monitor.registry.snapshot() == (inst,)

    def test_outage_cycle_still_checks_cached_instances(self, make_monitor, compute):
        inst = make_instance("i-a")
        compute.list_regions.return_value = ["us-east-1", "eu-west-1"]
        compute.list_spot_instances.return_value = [inst]
        compute.get_instance_status.return_value = InstanceStatus.RUNNING
        monitor = make_monitor()
        monitor.check_once()

        compute.list_spot_instances.side_effect = TransientError("network down")
        compute.get_instance_status.reset_mock()
        monitor.check_once()

        compute.get_instance_status.assert_called_once_with("us-east-1", "i-a")

    def test_empty_fleet_is_not_announced(self, make_monitor, compute, notifier):
        compute.list_regions.return_value = ["us-east-1"]
        compute.list_spot_instances.return_value = []
        monitor = make_monitor()

        assert monitor.discover()

        notifier.notify_monitor_started.assert_not_called()

    def test_empty_region_is_not_a_failure(self, make_monitor, compute):
        compute.list_regions.return_value = ["us-east-1"]
        compute.list_spot_instances.return_value = []
        monitor = make_monitor([make_instance("i-gone")])

        diff = monitor.refresh()

        assert [i.instance_id for i in diff.removed] == ["i-gone"]
        assert len(monitor.registry) == 0

    def test_region_failure_counts_as_zero(self, make_monitor, compute):
        good = make_instance("i-good", region="us-east-1")

        def list_spot(region):
            if region == "eu-west-1":
                raise TransientError("unreachable")
            return [good]

        compute.list_regions.return_value = ["us-east-1", "eu-west-1"]
        compute.list_spot_instances.side_effect = list_spot
        monitor = make_monitor()

        monitor.refresh()

        assert monitor.registry.snapshot() == (good,)

    def test_concurrency_ceiling(self, make_monitor, compute, config):
        config.discovery_concurrency = 2
        regions = [f"r-{n}" for n in range(6)]
        compute.list_regions.return_value = regions
        compute.list_spot_instances.side_effect = lambda region: [make_instance(f"i-{region}", region=region)]
        monitor = make_monitor()

        monitor.refresh()

        assert len(monitor.registry) == 6


class TestTrafficEnforcer:
    """Latch edges and bulk shutdown."""

    def test_china_over_budget_stops_group_once(self, make_monitor, compute, notifier):
        """i-001 in cn-hangzhou, budget 19 GB, traffic 20 GB."""
        china = make_instance("i-001", region="cn-hangzhou")
        other = make_instance("i-002", region="us-east-1")
        traffic = MagicMock()
        traffic.query_traffic.return_value = traffic_summary(china_gb=20, non_china_gb=1)
        compute.get_instance_status.return_value = InstanceStatus.RUNNING
        monitor = make_monitor([china, other], traffic=traffic)

        monitor.check_traffic()
        monitor.tasks.wait_all(timeout=5)

        assert monitor.latch.is_latched(RegionGroup.CHINA)
        assert not monitor.latch.is_latched(RegionGroup.NON_CHINA)
        compute.stop_instance.assert_called_once_with("cn-hangzhou", "i-001", StopMode.COST_SAVING)
        notifier.notify_traffic_shutdown.assert_called_once_with(
            RegionGroup.CHINA, 20, 19, [china], False
        )

    def test_repeated_checks_above_budget_shut_down_once(self, make_monitor, compute, notifier):
        inst = make_instance("i-001", region="cn-hangzhou")
        traffic = MagicMock()
        traffic.query_traffic.return_value = traffic_summary(china_gb=25)
        compute.get_instance_status.return_value = InstanceStatus.RUNNING
        monitor = make_monitor([inst], traffic=traffic)

        for _ in range(3):
            monitor.check_traffic()
            monitor.tasks.wait_all(timeout=5)

        assert compute.stop_instance.call_count == 1
        assert notifier.notify_traffic_shutdown.call_count == 1

    def test_drop_below_budget_clears_and_rearms(self, make_monitor, compute, notifier):
        inst = make_instance("i-001", region="us-west-2")
        traffic = MagicMock()
        traffic.query_traffic.side_effect = [
            traffic_summary(non_china_gb=200),
            traffic_summary(non_china_gb=10),
            traffic_summary(non_china_gb=200),
        ]
        compute.get_instance_status.return_value = InstanceStatus.RUNNING
        monitor = make_monitor([inst], traffic=traffic)

        monitor.check_traffic()
        monitor.tasks.wait_all(timeout=5)
        monitor.check_traffic()
        assert not monitor.latch.is_latched(RegionGroup.NON_CHINA)
        monitor.check_traffic()
        monitor.tasks.wait_all(timeout=5)

        assert compute.stop_instance.call_count == 2

    def test_only_running_instances_are_stopped(self, make_monitor, compute, notifier):
        running = make_instance("i-run", region="cn-north-1")
        stopped = make_instance("i-stop", region="cn-north-1")
        traffic = MagicMock()
        traffic.query_traffic.return_value = traffic_summary(china_gb=19)
        compute.get_instance_status.side_effect = lambda region, iid: (
            InstanceStatus.RUNNING if iid == "i-run" else InstanceStatus.STOPPED
        )
        monitor = make_monitor([running, stopped], traffic=traffic)

        monitor.check_traffic()
        monitor.tasks.wait_all(timeout=5)

        compute.stop_instance.assert_called_once_with("cn-north-1", "i-run", StopMode.COST_SAVING)

    def test_no_notification_when_nothing_stopped(self, make_monitor, compute, notifier):
        inst = make_instance("i-001", region="cn-north-1")
        traffic = MagicMock()
        traffic.query_traffic.return_value = traffic_summary(china_gb=30)
        compute.get_instance_status.return_value = InstanceStatus.STOPPED
        monitor = make_monitor([inst], traffic=traffic)

        monitor.check_traffic()
        monitor.tasks.wait_all(timeout=5)

        notifier.notify_traffic_shutdown.assert_not_called()

    def test_dry_run_does_not_stop(self, make_monitor, compute, notifier, config):
        config.dry_run = True
        inst = make_instance("i-001", region="cn-north-1")
        traffic = MagicMock()
        traffic.query_traffic.return_value = traffic_summary(china_gb=30)
        compute.get_instance_status.return_value = InstanceStatus.RUNNING
        monitor = make_monitor([inst], traffic=traffic)

        monitor.check_traffic()
        monitor.tasks.wait_all(timeout=5)

        compute.stop_instance.assert_not_called()
        assert notifier.notify_traffic_shutdown.call_args.args[4] is True

    def test_disabled_enforcer_is_noop(self, make_monitor, config):
        config.traffic_shutdown_enabled = False
        traffic = MagicMock()
        monitor = make_monitor(traffic=traffic)

        assert monitor.check_traffic() is None
        traffic.query_traffic.assert_not_called()


class TestCreditsWatch:
    def test_low_credits_alert_is_rate_limited(self, make_monitor, notifier, config):
        config.credits_alert_percent = Decimal("5")
        credits = MagicMock()
        credits.query_credits.return_value = CreditsSummary(
            total=Decimal("100"), used=Decimal("96"), query_time=NOW
        )
        monitor = make_monitor(credits=credits)

        monitor.check_credits()
        monitor.check_credits()

        notifier.notify_credits_low.assert_called_once()

    def test_no_alert_above_threshold(self, make_monitor, notifier):
        credits = MagicMock()
        credits.query_credits.return_value = CreditsSummary(
            total=Decimal("300"), used=Decimal("100"), query_time=NOW
        )
        make_monitor(credits=credits).check_credits()
        notifier.notify_credits_low.assert_not_called()


class TestReports:
    def test_status_report_marks_lookup_errors_unknown(self, make_monitor, compute, notifier):
        a, b = make_instance("i-a"), make_instance("i-b")
        compute.get_instance_status.side_effect = [InstanceStatus.RUNNING, TransientError("x")]
        monitor = make_monitor([a, b])

        rows = monitor.status_rows()

        assert [status for _, status in rows] == [InstanceStatus.RUNNING, InstanceStatus.UNKNOWN]

    def test_report_goes_to_explicit_channel(self, make_monitor, compute, notifier):
        compute.get_instance_status.return_value = InstanceStatus.RUNNING
        reply = MagicMock()
        make_monitor([make_instance()]).send_status_report(reply)

        reply.send.assert_called_once()
        notifier.send.assert_not_called()

    def test_traffic_report_includes_limits(self, make_monitor, notifier):
        traffic = MagicMock()
        traffic.query_traffic.return_value = traffic_summary(china_gb=5, non_china_gb=50)
        make_monitor(traffic=traffic).send_traffic_report()

        text = notifier.send.call_args.args[0]
        assert "/ 19 GB" in text
        assert "/ 195 GB" in text
