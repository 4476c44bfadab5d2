"""
Inbound command surface: slash-command dispatch and the bandwidth-pool
callback flow driven by inline keyboards.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional, Protocol

from .errors import SpotGuardianError
from .models import BandwidthPackage, InlineButton, Keyboard, PublicAddress
from .notify import HELP_TEXT, RULE, Notifier, esc
from .state import InstanceRegistry

logger = logging.getLogger(__name__)

CALLBACK_PREFIX = "cbwp"
BACK = InlineButton("« Back", f"{CALLBACK_PREFIX}:back")
BACK_TO_LIST = InlineButton("« Back to instances", f"{CALLBACK_PREFIX}:back")
TITLE = "🌐 <b>Shared bandwidth</b>"


class BandwidthAPI(Protocol):
    def list_packages(self, region: str) -> list[BandwidthPackage]: ...

    def list_addresses(self, region: str, instance_id: str) -> list[PublicAddress]: ...

    def add_address(self, region: str, package_id: str, allocation_id: str) -> None: ...

    def remove_address(self, region: str, package_id: str, allocation_id: str) -> None: ...


class ChatChannel(Protocol):
    def send_message_with_keyboard(self, text: str, keyboard: Keyboard) -> Optional[int]: ...

    def edit_message_text(self, message_id: int, text: str, keyboard: Optional[Keyboard] = None) -> None: ...

    def answer_callback_query(self, callback_id: str, text: str = "", show_alert: bool = False) -> None: ...


@dataclass
class Screen:
    """One rendered state of the bandwidth flow."""

    text: str
    keyboard: Keyboard = field(default_factory=list)


class BandwidthFlow:
    """Stateless screens for moving an instance's public IPs in and out of shared pools.

    Everything a screen needs is carried in the callback data, so no session
    state is kept between taps.
    """

    def __init__(self, registry: InstanceRegistry, packages: BandwidthAPI):
        self.registry = registry
        self.packages = packages

    def instance_list(self) -> Screen:
        instances = self.registry.snapshot()
        if not instances:
            return Screen(f"{TITLE}\n\nNo instances are being monitored")
        keyboard = [
            [InlineButton(f"{inst.name} ({inst.region})", f"{CALLBACK_PREFIX}:select:{inst.instance_id}")]
            for inst in instances
        ]
        return Screen(f"{TITLE}\n{RULE}\n\nChoose an instance:", keyboard)

    def back(self) -> Screen:
        return self.instance_list()

    def select(self, instance_id: str) -> Screen:
        inst = self.registry.find(instance_id)
        if inst is None:
            return Screen("❌ Instance not found")

        try:
            addresses = self.packages.list_addresses(inst.region, instance_id)
        except SpotGuardianError as e:
            logger.error("Failed to query public IPs for instance %s: %s", instance_id, e)
            return Screen(f"❌ Failed to query public IPs: {esc(e)}", [[BACK]])
        if not addresses:
            return Screen(
                f"🌐 <b>{esc(inst.name)}</b>\n\nThis instance has no Elastic IP to manage", [[BACK]]
            )

        try:
            pools = self.packages.list_packages(inst.region)
        except SpotGuardianError as e:
            logger.error("Failed to query bandwidth packages in %s: %s", inst.region, e)
            return Screen(f"❌ Failed to query bandwidth packages: {esc(e)}", [[BACK]])
        if not pools:
            return Screen(
                f"🌐 <b>{esc(inst.name)}</b>\n\nNo bandwidth packages in {esc(inst.region)}", [[BACK]]
            )

        lines = [f"🌐 <b>{esc(inst.name)}</b>", f"   Region: {esc(inst.region)}", RULE, ""]
        keyboard: Keyboard = []
        by_id = {pool.package_id: pool for pool in pools}
        for address in addresses:
            lines.append(f"📍 IP: <code>{esc(address.ip_address)}</code>")
            if address.package_id:
                pool = by_id.get(address.package_id)
                label = pool.label if pool else address.package_id
                suffix = f" ({esc(pool.bandwidth)})" if pool and pool.bandwidth else ""
                lines.append(f"   📦 Package: {esc(label)}{suffix}")
                lines.append("   Status: ✅ in shared bandwidth")
                lines.append("")
                keyboard.append(
                    [
                        InlineButton(
                            f"🔴 Remove {address.ip_address}",
                            f"{CALLBACK_PREFIX}:unbind:{instance_id}:{address.package_id}",
                        )
                    ]
                )
            else:
                lines.append("   Status: ⚪ not in shared bandwidth")
                lines.append("")
                for pool in pools:
                    suffix = f" ({pool.bandwidth})" if pool.bandwidth else ""
                    keyboard.append(
                        [
                            InlineButton(
                                f"🟢 Add to {pool.label}{suffix}",
                                f"{CALLBACK_PREFIX}:bind:{instance_id}:{pool.package_id}",
                            )
                        ]
                    )
        keyboard.append([BACK])
        return Screen("\n".join(lines), keyboard)

    def bind(self, instance_id: str, package_id: str) -> Screen:
        inst = self.registry.find(instance_id)
        if inst is None:
            return Screen("❌ Instance not found")
        try:
            addresses = self.packages.list_addresses(inst.region, instance_id)
        except SpotGuardianError as e:
            logger.error("Failed to query public IPs for instance %s: %s", instance_id, e)
            return Screen("❌ Failed to query public IPs")

        target = next((a for a in addresses if not a.package_id), None)
        if target is None:
            return Screen("❌ No free public IP (all are already in a bandwidth package)")

        try:
            self.packages.add_address(inst.region, package_id, target.allocation_id)
        except SpotGuardianError as e:
            logger.error("Failed to bind %s to %s: %s", target.allocation_id, package_id, e)
            return Screen(
                f"❌ <b>Add failed</b>\n\nIP: {esc(target.ip_address)}\nError: {esc(e)}", [[BACK]]
            )
        return Screen(
            _result_text("✅ <b>Added to shared bandwidth</b>", inst.name, target, package_id),
            [[BACK_TO_LIST]],
        )

    def unbind(self, instance_id: str, package_id: str) -> Screen:
        inst = self.registry.find(instance_id)
        if inst is None:
            return Screen("❌ Instance not found")
        try:
            addresses = self.packages.list_addresses(inst.region, instance_id)
        except SpotGuardianError as e:
            logger.error("Failed to query public IPs for instance %s: %s", instance_id, e)
            return Screen("❌ Failed to query public IPs")

        target = next((a for a in addresses if a.package_id == package_id), None)
        if target is None:
            return Screen("❌ No public IP of this instance is in that bandwidth package")

        try:
            self.packages.remove_address(inst.region, package_id, target.allocation_id)
        except SpotGuardianError as e:
            logger.error("Failed to unbind %s from %s: %s", target.allocation_id, package_id, e)
            return Screen(
                f"❌ <b>Remove failed</b>\n\nIP: {esc(target.ip_address)}\nError: {esc(e)}", [[BACK]]
            )
        return Screen(
            _result_text("✅ <b>Removed from shared bandwidth</b>", inst.name, target, package_id),
            [[BACK_TO_LIST]],
        )


def _result_text(title: str, name: str, address: PublicAddress, package_id: str) -> str:
    return "\n".join(
        [
            title,
            RULE,
            f"Instance: {esc(name)}",
            f"IP: <code>{esc(address.ip_address)}</code>",
            f"Package: <code>{esc(package_id)}</code>",
            f"Time: {datetime.now():%Y-%m-%d %H:%M:%S}",
        ]
    )


class CommandRouter:
    """Maps slash commands and callback data onto monitor reports and the bandwidth flow."""

    def __init__(
        self,
        monitor,
        reply: Notifier,
        channel: Optional[ChatChannel] = None,
        flow: Optional[BandwidthFlow] = None,
    ):
        self.monitor = monitor
        self.reply = reply
        self.channel = channel
        self.flow = flow
        self.handlers = self._build_table()

    def _build_table(self) -> dict[str, Callable[[], object]]:
        table: dict[str, Callable[[], object]] = {}
        for name in ("billing", "cost", "fee"):
            table[name] = lambda: self.monitor.send_billing_report(self.reply)
        for name in ("traffic", "flow", "bandwidth"):
            table[name] = lambda: self.monitor.send_traffic_report(self.reply)
        for name in ("credits", "credit"):
            table[name] = lambda: self.monitor.send_credits_report(self.reply)
        table["status"] = lambda: self.monitor.send_status_report(self.reply)
        table["cbwp"] = self._send_instance_list
        table["help"] = lambda: self.reply.send(HELP_TEXT)
        return table

    def handle_command(self, command: str) -> None:
        handler = self.handlers.get(command.lower())
        if handler is None:
            logger.debug("Unknown command: %s", command)
            return
        try:
            handler()
        except Exception:
            logger.exception("Failed to handle command /%s", command)

    def _send_instance_list(self) -> None:
        if self.flow is None or self.channel is None:
            self.reply.send(f"{TITLE}\n\nBandwidth management is not available")
            return
        screen = self.flow.instance_list()
        if screen.keyboard:
            self.channel.send_message_with_keyboard(screen.text, screen.keyboard)
        else:
            self.reply.send(screen.text)

    def handle_callback(self, callback_id: str, data: str, message_id: int) -> None:
        try:
            self._handle_callback(callback_id, data, message_id)
        except Exception:
            logger.exception("Failed to handle callback %s", data)

    def _handle_callback(self, callback_id: str, data: str, message_id: int) -> None:
        parts = data.split(":")
        if len(parts) < 2 or parts[0] != CALLBACK_PREFIX or self.flow is None or self.channel is None:
            return
        action = parts[1]

        if action == "select" and len(parts) >= 3:
            self.channel.answer_callback_query(callback_id, "Loading...")
            screen = self.flow.select(parts[2])
        elif action == "bind" and len(parts) >= 4:
            self.channel.answer_callback_query(callback_id, "Adding to bandwidth package...")
            screen = self.flow.bind(parts[2], parts[3])
        elif action == "unbind" and len(parts) >= 4:
            self.channel.answer_callback_query(callback_id, "Removing from bandwidth package...")
            screen = self.flow.unbind(parts[2], parts[3])
        elif action == "back":
            self.channel.answer_callback_query(callback_id)
            screen = self.flow.back()
        else:
            logger.debug("Ignoring malformed callback data: %s", data)
            return

        self.channel.edit_message_text(message_id, screen.text, screen.keyboard or None)
