"""
Spot Guardian monitor - keeps reclaimed spot instances running and enforces
monthly traffic budgets per region group.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional, Protocol

from .config import Config
from .errors import NotFound, SpotGuardianError, StartFailedError, TransientError
from .models import (
    BillingSummary,
    CreditsSummary,
    InstanceStatus,
    RegionGroup,
    StopMode,
    TrackedInstance,
    TrafficSummary,
)
from .notify import (
    Notifier,
    format_billing,
    format_credits,
    format_status,
    format_traffic,
)
from .state import CooldownTracker, InstanceRegistry, RegistryDiff, TrafficLatch
from .tasks import BackgroundTasks

logger = logging.getLogger(__name__)

CREDITS_ALERT_KEY = "credits"


class ComputeAPI(Protocol):
    def list_regions(self) -> list[str]: ...

    def list_spot_instances(self, region: str) -> list[TrackedInstance]: ...

    def get_instance_status(self, region: str, instance_id: str) -> InstanceStatus: ...

    def get_instance(self, region: str, instance_id: str) -> TrackedInstance: ...

    def start_instance(self, region: str, instance_id: str) -> None: ...

    def stop_instance(self, region: str, instance_id: str, mode: StopMode = ...) -> None: ...


class TrafficAPI(Protocol):
    def query_traffic(self) -> TrafficSummary: ...


class BillingAPI(Protocol):
    def query_billing(self, instances: list[TrackedInstance], hours: int) -> BillingSummary: ...


class CreditsAPI(Protocol):
    def query_credits(self) -> CreditsSummary: ...


class Monitor:
    """Fleet monitor: discovery, reclaim-and-restart, traffic enforcement and reports."""

    def __init__(
        self,
        config: Config,
        compute: ComputeAPI,
        notifier: Notifier,
        traffic: Optional[TrafficAPI] = None,
        billing: Optional[BillingAPI] = None,
        credits: Optional[CreditsAPI] = None,
        tasks: Optional[BackgroundTasks] = None,
        registry: Optional[InstanceRegistry] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.compute = compute
        self.notifier = notifier
        self.traffic = traffic
        self.billing = billing
        self.credits = credits
        self.tasks = tasks or BackgroundTasks()
        self.registry = registry or InstanceRegistry()
        self.cooldown = CooldownTracker(config.notify_cooldown)
        self.latch = TrafficLatch()
        self._sleep = sleep
        self._clock = clock
        self._discovered = False
        self._announced = False

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def _discover_region(self, region: str) -> Optional[list[TrackedInstance]]:
        """Spot instances in ``region``, or None when the region could not be listed."""
        try:
            return self.compute.list_spot_instances(region)
        except SpotGuardianError as e:
            logger.warning("Discovery failed in %s: %s", region, e)
            return None

    def _discover_all(self) -> list[TrackedInstance]:
        regions = self.compute.list_regions()
        if not regions:
            return []
        workers = max(1, min(self.config.discovery_concurrency, len(regions)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="discovery") as pool:
            results = list(pool.map(self._discover_region, regions))
        if all(result is None for result in results):
            raise TransientError(f"discovery failed in all {len(regions)} regions")
        return [inst for region_instances in results if region_instances for inst in region_instances]

    def _reconcile(self) -> Optional[RegistryDiff]:
        try:
            instances = self._discover_all()
        except TransientError as e:
            logger.warning("Discovery failed, keeping %d cached instances: %s", len(self.registry), e)
            return None

        diff = self.registry.replace(instances)
        for inst in diff.added:
            logger.info("New instance discovered: %s", inst.describe())
        for inst in diff.removed:
            logger.info("Instance removed: %s", inst.describe())
        return diff

    def discover(self) -> bool:
        """Initial discovery. Announces the monitor once, on the first success with instances."""
        if self._reconcile() is None:
            return False
        self._discovered = True

        instances = self.registry.snapshot()
        logger.info("Discovered %d spot instances", len(instances))
        for inst in instances:
            logger.info("  - %s [%s]", inst.describe(), inst.status.value)

        if instances and not self._announced:
            self._announced = True
            self.notifier.notify_monitor_started(instances)
        return True

    def refresh(self) -> Optional[RegistryDiff]:
        """Re-discover and replace the registry. Never notifies."""
        return self._reconcile()

    # ------------------------------------------------------------------
    # Reclaim and restart
    # ------------------------------------------------------------------

    def check_once(self) -> None:
        """One fleet cycle: reconcile, then check every tracked instance in turn."""
        if self._discovered:
            self.refresh()
        else:
            self.discover()

        for inst in self.registry.snapshot():
            try:
                self.check_instance(inst)
            except StartFailedError as e:
                logger.error("%s", e)
            except SpotGuardianError as e:
                logger.error("Failed to check instance %s: %s", inst.instance_id, e)

    def check_instance(self, inst: TrackedInstance) -> None:
        started_at = self._clock()

        if self.latch.is_latched(inst.group):
            logger.debug("Instance %s skipped: traffic shutdown active for %s", inst.describe(), inst.group.value)
            return

        try:
            status = self.compute.get_instance_status(inst.region, inst.instance_id)
        except NotFound:
            logger.info("Instance %s no longer exists, skipping", inst.describe())
            return

        logger.debug("Instance %s status: %s", inst.describe(), status.value)
        if status is not InstanceStatus.STOPPED:
            return

        logger.warning("Instance %s is stopped, attempting to start", inst.describe())
        if self.cooldown.try_acquire(inst.instance_id):
            self.notifier.notify_reclaimed(inst)
        else:
            logger.debug("Notification cooldown active for instance %s", inst.instance_id)

        retries = self.config.retry_count
        last_error: Optional[Exception] = None
        for attempt in range(1, retries + 1):
            if attempt > 1:
                logger.info("Retry %d/%d for instance %s", attempt, retries, inst.instance_id)
            try:
                self.compute.start_instance(inst.region, inst.instance_id)
                logger.info("Start command sent for instance %s", inst.instance_id)
                self._wait_for_running(inst)
            except SpotGuardianError as e:
                last_error = e
                logger.warning("Failed to start instance %s (attempt %d): %s", inst.instance_id, attempt, e)
                if attempt < retries:
                    self._sleep(self.config.retry_interval)
                continue

            try:
                inst = self.compute.get_instance(inst.region, inst.instance_id)
            except SpotGuardianError as e:
                logger.warning("Failed to refresh addresses of %s: %s", inst.instance_id, e)

            duration = self._clock() - started_at
            logger.info("Instance %s started successfully in %.0f seconds", inst.instance_id, duration)
            self.notifier.notify_started(inst, duration)
            return

        self.notifier.notify_start_failed(inst, retries, last_error)
        raise StartFailedError(inst.instance_id, retries, last_error)

    def _wait_for_running(self, inst: TrackedInstance) -> None:
        deadline = self._clock() + self.config.start_timeout
        while True:
            self._sleep(self.config.start_poll_interval)
            try:
                status = self.compute.get_instance_status(inst.region, inst.instance_id)
            except TransientError as e:
                logger.warning("Failed to get instance status: %s", e)
                status = InstanceStatus.UNKNOWN
            if status is InstanceStatus.RUNNING:
                return
            if self._clock() >= deadline:
                raise TransientError(
                    f"timeout waiting for {inst.instance_id} to reach Running (last status {status.value})"
                )
            logger.debug("Instance %s status: %s, waiting...", inst.instance_id, status.value)

    # ------------------------------------------------------------------
    # Traffic budget
    # ------------------------------------------------------------------

    def traffic_limits(self) -> dict[RegionGroup, float]:
        return {
            RegionGroup.CHINA: self.config.traffic_limit_china_gb,
            RegionGroup.NON_CHINA: self.config.traffic_limit_non_china_gb,
        }

    def check_traffic(self) -> Optional[TrafficSummary]:
        """Evaluate both latches against month-to-date traffic."""
        if not self.config.traffic_shutdown_enabled or self.traffic is None:
            return None

        summary = self.traffic.query_traffic()
        limits = self.traffic_limits()
        logger.debug(
            "Traffic check: China=%.2f/%.0f GB, Non-China=%.2f/%.0f GB",
            summary.china_gb, limits[RegionGroup.CHINA],
            summary.non_china_gb, limits[RegionGroup.NON_CHINA],
        )

        for group, limit in limits.items():
            used = summary.traffic_for(group)
            edge = self.latch.evaluate(group, used >= limit)
            if edge is True:
                logger.warning(
                    "%s traffic %.2f GB exceeded limit %.0f GB, shutting down %s instances",
                    group.value, used, limit, group.value,
                )
                self.tasks.spawn(f"traffic-shutdown-{group.value}", self._shutdown_group, group, used, limit)
            elif edge is False:
                logger.info(
                    "%s traffic %.2f GB is below limit %.0f GB, clearing shutdown flag",
                    group.value, used, limit,
                )
        return summary

    def _shutdown_group(self, group: RegionGroup, traffic_gb: float, limit_gb: float) -> list[TrackedInstance]:
        stopped: list[TrackedInstance] = []
        for inst in self.registry.snapshot():
            if inst.group is not group:
                continue
            try:
                status = self.compute.get_instance_status(inst.region, inst.instance_id)
            except SpotGuardianError as e:
                logger.error("Failed to get status for instance %s: %s", inst.instance_id, e)
                continue
            if status is not InstanceStatus.RUNNING:
                continue

            if self.config.dry_run:
                logger.warning("[DRY RUN] Would stop %s due to traffic limit", inst.describe())
                stopped.append(inst)
                continue

            logger.warning("Stopping instance %s due to traffic limit exceeded", inst.describe())
            try:
                self.compute.stop_instance(inst.region, inst.instance_id, StopMode.COST_SAVING)
            except SpotGuardianError as e:
                logger.error("Failed to stop instance %s: %s", inst.instance_id, e)
                continue
            stopped.append(inst)

        if stopped:
            self.notifier.notify_traffic_shutdown(group, traffic_gb, limit_gb, stopped, self.config.dry_run)
        return stopped

    # ------------------------------------------------------------------
    # Credits
    # ------------------------------------------------------------------

    def check_credits(self) -> Optional[CreditsSummary]:
        if self.credits is None:
            return None
        summary = self.credits.query_credits()
        logger.debug("Credits: $%.2f remaining (%.1f%%)", summary.remaining, summary.remaining_pct)
        if summary.remaining_pct <= self.config.credits_alert_percent:
            if self.cooldown.try_acquire(CREDITS_ALERT_KEY):
                self.notifier.notify_credits_low(summary, self.config.credits_alert_percent)
        return summary

    # ------------------------------------------------------------------
    # On-demand reports
    # ------------------------------------------------------------------

    def status_rows(self) -> list[tuple[TrackedInstance, InstanceStatus]]:
        rows = []
        for inst in self.registry.snapshot():
            try:
                status = self.compute.get_instance_status(inst.region, inst.instance_id)
            except SpotGuardianError as e:
                logger.debug("Status lookup failed for %s: %s", inst.instance_id, e)
                status = InstanceStatus.UNKNOWN
            rows.append((inst, status))
        return rows

    def send_status_report(self, notifier: Optional[Notifier] = None) -> Optional[str]:
        return (notifier or self.notifier).send(format_status(self.status_rows()))

    def send_billing_report(self, notifier: Optional[Notifier] = None) -> Optional[str]:
        if self.billing is None:
            raise SpotGuardianError("billing client not configured")
        logger.info("Querying billing data...")
        summary = self.billing.query_billing(list(self.registry.snapshot()), self.config.billing_hours)
        return (notifier or self.notifier).send(format_billing(summary))

    def send_traffic_report(self, notifier: Optional[Notifier] = None) -> Optional[str]:
        if self.traffic is None:
            raise SpotGuardianError("traffic client not configured")
        logger.info("Querying traffic data...")
        summary = self.traffic.query_traffic()
        if self.config.traffic_shutdown_enabled:
            text = format_traffic(summary, self.traffic_limits(), self.latch.states())
        else:
            text = format_traffic(summary)
        logger.info(
            "Traffic report (total: %.2f GB, China: %.2f GB, Non-China: %.2f GB)",
            summary.total_gb, summary.china_gb, summary.non_china_gb,
        )
        return (notifier or self.notifier).send(text)

    def send_credits_report(self, notifier: Optional[Notifier] = None) -> Optional[str]:
        if self.credits is None:
            raise SpotGuardianError("credits tracking is disabled")
        summary = self.credits.query_credits()
        return (notifier or self.notifier).send(format_credits(summary))
