"""
Notification channels and message formatting.

Messages are built as Telegram-flavoured HTML. Channels that cannot render
HTML (SNS email/SMS) strip the tags before delivery.
"""

import html
import logging
import re
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, Optional, Sequence

from .aws import AWS_ERRORS, make_client
from .models import (
    BillingSummary,
    CreditsSummary,
    InstanceStatus,
    Keyboard,
    RegionGroup,
    TrackedInstance,
    TrafficSummary,
)

logger = logging.getLogger(__name__)

RULE = "━━━━━━━━━━━━━━━━"
TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

GROUP_LABELS = {
    RegionGroup.CHINA: "China mainland",
    RegionGroup.NON_CHINA: "Non-China",
}

STATUS_ICONS = {
    InstanceStatus.RUNNING: "🟢",
    InstanceStatus.STOPPED: "🔴",
    InstanceStatus.STARTING: "🟡",
    InstanceStatus.STOPPING: "🟠",
    InstanceStatus.UNKNOWN: "⚪",
}

_TAG_RE = re.compile(r"<[^>]+>")


def esc(value: Any) -> str:
    return html.escape(str(value), quote=False)


def strip_html(text: str) -> str:
    return html.unescape(_TAG_RE.sub("", text))


def _now() -> str:
    return datetime.now().strftime(TIME_FORMAT)


def _instance_lines(instance: TrackedInstance) -> list[str]:
    lines = [
        f"Instance: {esc(instance.name)}",
        f"ID: <code>{esc(instance.instance_id)}</code>",
        f"Region: {esc(instance.region)}",
    ]
    if instance.public_ip:
        lines.append(f"Public IP: <code>{esc(instance.public_ip)}</code>")
    if instance.private_ip:
        lines.append(f"Private IP: <code>{esc(instance.private_ip)}</code>")
    return lines


def format_reclaimed(instance: TrackedInstance) -> str:
    return "\n".join(
        ["⚠️ <b>Spot instance reclaimed</b>", RULE, *_instance_lines(instance), f"Time: {_now()}", "", "Restarting..."]
    )


def format_started(instance: TrackedInstance, duration: float) -> str:
    return "\n".join(
        [
            "✅ <b>Instance restarted</b>",
            RULE,
            *_instance_lines(instance),
            f"Took: {duration:.1f}s",
            f"Time: {_now()}",
        ]
    )


def format_start_failed(instance: TrackedInstance, retries: int, error: Any) -> str:
    return "\n".join(
        [
            "❌ <b>Instance restart failed</b>",
            RULE,
            *_instance_lines(instance),
            f"Attempts: {retries}",
            f"Error: {esc(error)}",
            f"Time: {_now()}",
        ]
    )


def format_monitor_started(instances: Sequence[TrackedInstance]) -> str:
    lines = ["🚀 <b>Spot monitor started</b>", RULE, f"Tracking {len(instances)} spot instance(s)"]
    for inst in instances:
        lines.append(f"• {esc(inst.name)} ({esc(inst.region)})")
    return "\n".join(lines)


def format_traffic_shutdown(
    group: RegionGroup,
    traffic_gb: float,
    limit_gb: float,
    stopped: Sequence[TrackedInstance],
    dry_run: bool = False,
) -> str:
    title = "🛑 <b>Traffic limit exceeded</b>"
    if dry_run:
        title = "[DRY RUN] " + title
    lines = [
        title,
        RULE,
        f"Region group: {GROUP_LABELS[group]}",
        f"Traffic: {traffic_gb:.2f} GB / {limit_gb:.0f} GB",
        "",
        "Would stop:" if dry_run else "Stopped instances:",
    ]
    for inst in stopped:
        lines.append(f"• {esc(inst.name)} (<code>{esc(inst.instance_id)}</code>) - {esc(inst.region)}")
    lines.append(f"Time: {_now()}")
    return "\n".join(lines)


def format_billing(summary: BillingSummary) -> str:
    lines = [
        f"💰 <b>Billing, last {summary.hours} hours</b>",
        RULE,
        f"{summary.start:%m-%d %H:%M} to {summary.end:%m-%d %H:%M}",
        "",
    ]
    if not summary.instances:
        lines.append("No billing data for tracked instances")
    for billing in summary.instances:
        lines.append(f"🖥 <b>{esc(billing.name)}</b> ({esc(billing.region)})")
        for item in billing.items:
            lines.append(f"   {esc(item.usage_type)}: {item.amount:.4f}")
        lines.append(f"   Subtotal: {billing.total:.4f} {esc(summary.currency)}")
        lines.append("")
    lines.append(f"Total: <b>{summary.total:.4f} {esc(summary.currency)}</b>")
    lines.append(f"Monthly estimate: {summary.monthly_estimate:.2f} {esc(summary.currency)}")
    return "\n".join(lines)


def format_traffic(
    summary: TrafficSummary,
    limits: Optional[dict[RegionGroup, float]] = None,
    latches: Optional[dict[RegionGroup, bool]] = None,
) -> str:
    lines = [
        "📊 <b>Internet traffic, month to date</b>",
        RULE,
        f"{summary.start:%Y-%m-%d} to {summary.end:%Y-%m-%d}",
        "",
    ]
    for group in (RegionGroup.CHINA, RegionGroup.NON_CHINA):
        used = summary.traffic_for(group)
        line = f"{GROUP_LABELS[group]}: {used:.2f} GB"
        if limits:
            limit = limits[group]
            pct = used / limit * 100 if limit > 0 else 0.0
            line += f" / {limit:.0f} GB ({pct:.1f}%)"
        if latches and latches.get(group):
            line += " 🛑 shut down"
        lines.append(line)
    lines.append(f"Total: {summary.total_gb:.2f} GB")
    if summary.regions:
        lines.append("")
        for region in summary.regions:
            lines.append(f"   {esc(region.region)}: {region.traffic_gb:.2f} GB")
    return "\n".join(lines)


def format_credits(summary: CreditsSummary) -> str:
    return "\n".join(
        [
            "🎫 <b>Credits</b>",
            RULE,
            f"Total: ${summary.total:.2f}",
            f"Used: ${summary.used:.2f}",
            f"Remaining: ${summary.remaining:.2f} ({summary.remaining_pct:.1f}%)",
            f"Time: {summary.query_time:%Y-%m-%d %H:%M}",
        ]
    )


def format_credits_low(summary: CreditsSummary, alert_percent: Decimal) -> str:
    return "\n".join(
        [
            "⚠️ <b>Credits running low</b>",
            RULE,
            f"Remaining: ${summary.remaining:.2f} ({summary.remaining_pct:.1f}%)",
            f"Alert threshold: {alert_percent}%",
            f"Used: ${summary.used:.2f} of ${summary.total:.2f}",
        ]
    )


def format_status(rows: Iterable[tuple[TrackedInstance, InstanceStatus]]) -> str:
    rows = list(rows)
    lines = ["📋 <b>Instance status</b>", RULE]
    if not rows:
        lines.append("No spot instances tracked")
    for inst, status in rows:
        lines.append(f"{STATUS_ICONS[status]} {esc(inst.name)} - {status.value}")
        lines.append(f"   {esc(inst.instance_id)} ({esc(inst.region)})")
    lines.append(f"Time: {_now()}")
    return "\n".join(lines)


HELP_TEXT = "\n".join(
    [
        "🤖 <b>Commands</b>",
        RULE,
        "/status - instance status",
        "/billing - cost of tracked instances",
        "/traffic - month-to-date internet traffic",
        "/credits - promotional credits remaining",
        "/cbwp - manage shared bandwidth pools",
        "/help - this message",
    ]
)


class Notifier:
    """Fire-and-forget outbound channel. Subclasses implement ``send``."""

    def send(self, text: str, keyboard: Optional[Keyboard] = None) -> Optional[str]:
        """Deliver ``text``; return a message id or None. Never raises."""
        raise NotImplementedError

    def notify_reclaimed(self, instance: TrackedInstance) -> Optional[str]:
        return self.send(format_reclaimed(instance))

    def notify_started(self, instance: TrackedInstance, duration: float) -> Optional[str]:
        return self.send(format_started(instance, duration))

    def notify_start_failed(self, instance: TrackedInstance, retries: int, error: Any) -> Optional[str]:
        return self.send(format_start_failed(instance, retries, error))

    def notify_monitor_started(self, instances: Sequence[TrackedInstance]) -> Optional[str]:
        return self.send(format_monitor_started(instances))

    def notify_traffic_shutdown(
        self,
        group: RegionGroup,
        traffic_gb: float,
        limit_gb: float,
        stopped: Sequence[TrackedInstance],
        dry_run: bool = False,
    ) -> Optional[str]:
        return self.send(format_traffic_shutdown(group, traffic_gb, limit_gb, stopped, dry_run))

    def notify_credits_low(self, summary: CreditsSummary, alert_percent: Decimal) -> Optional[str]:
        return self.send(format_credits_low(summary, alert_percent))


class LogNotifier(Notifier):
    """Writes messages to the log. Used when no channel is configured."""

    def send(self, text: str, keyboard: Optional[Keyboard] = None) -> Optional[str]:
        logger.info("Notification:\n%s", strip_html(text))
        return None


class SnsNotifier(Notifier):
    """Publishes plain-text alerts to an SNS topic."""

    def __init__(self, topic_arn: str, region: Optional[str] = None, client: Optional[Any] = None):
        self.topic_arn = topic_arn
        self.sns = client or make_client("sns", region)

    def send(self, text: str, keyboard: Optional[Keyboard] = None) -> Optional[str]:
        message = strip_html(text)
        subject = message.splitlines()[0].strip() if message else "Spot Guardian"
        # SNS subjects are ASCII-only and at most 100 characters.
        subject = " ".join(subject.encode("ascii", "ignore").decode().split()) or "Spot Guardian"
        try:
            response = self.sns.publish(
                TopicArn=self.topic_arn, Subject=subject[:100], Message=message
            )
            return response.get("MessageId")
        except AWS_ERRORS as e:
            logger.error("SNS publish failed: %s", e)
            return None


class MultiNotifier(Notifier):
    """Sends every message to each channel; returns the first message id."""

    def __init__(self, notifiers: Sequence[Notifier]):
        self.notifiers = list(notifiers)

    def send(self, text: str, keyboard: Optional[Keyboard] = None) -> Optional[str]:
        first: Optional[str] = None
        for notifier in self.notifiers:
            message_id = notifier.send(text, keyboard)
            if first is None:
                first = message_id
        return first
