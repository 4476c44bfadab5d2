#!/usr/bin/env python3
"""
Spot Guardian CLI
Run the monitor daemon or query the fleet once from a terminal.
"""

import argparse
import logging
import signal
import sys
import threading
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from . import __version__
from .bandwidth import BandwidthPackageClient
from .billing import BillingClient, CreditsClient
from .commands import BandwidthFlow, CommandRouter
from .config import Config, require_aws_credentials
from .ec2 import EC2Client
from .errors import ConfigurationError, SpotGuardianError
from .monitor import Monitor
from .notify import (
    LogNotifier,
    MultiNotifier,
    Notifier,
    SnsNotifier,
    format_billing,
    format_credits,
    format_status,
    format_traffic,
    strip_html,
)
from .tasks import BackgroundTasks, PeriodicTask
from .telegram import TelegramAPI, TelegramBot, TelegramNotifier
from .traffic import TrafficClient

logger = logging.getLogger(__name__)

EXIT_CONFIG_ERROR = 2


@dataclass
class App:
    config: Config
    monitor: Monitor
    bot: Optional[TelegramBot] = None
    router: Optional[CommandRouter] = None


def configure_logging(level: str, log_file: Optional[str] = None) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
        handlers=handlers,
        force=True,
    )
    for noisy in ("botocore", "boto3", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def _load_config(args) -> Config:
    config = Config.from_env()
    if args.regions:
        config.regions = [r.strip() for r in args.regions.split(",") if r.strip()]
    if args.dry_run:
        config.dry_run = True
    return config


def build_app(config: Config) -> App:
    """Wire clients, channels and the monitor from configuration."""
    compute = EC2Client(home_region=config.home_region, regions=config.regions)

    channels: list[Notifier] = []
    api: Optional[TelegramAPI] = None
    if config.telegram_enabled:
        api = TelegramAPI(config.telegram_bot_token, config.telegram_chat_id)
        channels.append(TelegramNotifier(api))
    if config.sns_topic_arn:
        channels.append(SnsNotifier(config.sns_topic_arn, region=config.home_region))
    if not channels:
        channels.append(LogNotifier())
    notifier = channels[0] if len(channels) == 1 else MultiNotifier(channels)

    credits = None
    if config.credits_enabled:
        credits = CreditsClient(config.credits_total, config.credits_window_start())

    monitor = Monitor(
        config=config,
        compute=compute,
        notifier=notifier,
        traffic=TrafficClient(),
        billing=BillingClient(),
        credits=credits,
        tasks=BackgroundTasks(),
    )

    app = App(config=config, monitor=monitor)
    if api is not None:
        bot = TelegramBot(api)
        flow = BandwidthFlow(monitor.registry, BandwidthPackageClient())
        router = CommandRouter(monitor, reply=TelegramNotifier(api), channel=bot, flow=flow)
        bot.set_command_handler(router.handle_command)
        bot.set_callback_handler(router.handle_callback)
        app.bot, app.router = bot, router
    return app


def cmd_run(app: App, args) -> int:
    """Run the monitor until interrupted."""
    config = app.config
    monitor = app.monitor
    stop = threading.Event()

    def _terminate(signum, _frame):
        logger.info("Received signal %s, shutting down", signum)
        stop.set()

    signal.signal(signal.SIGTERM, _terminate)
    signal.signal(signal.SIGINT, _terminate)

    logger.info("Spot Guardian %s starting (dry_run=%s)", __version__, config.dry_run)
    tasks = [PeriodicTask("fleet-check", config.check_interval, monitor.check_once)]
    if config.traffic_shutdown_enabled:
        tasks.append(PeriodicTask("traffic-check", config.traffic_check_interval, monitor.check_traffic))
    if config.credits_enabled:
        tasks.append(PeriodicTask("credits-check", config.credits_check_interval, monitor.check_credits))

    for task in tasks:
        task.start()
    if app.bot:
        app.bot.start()

    stop.wait()

    for task in tasks:
        task.stop()
    if app.bot:
        app.bot.stop()
    monitor.tasks.wait_all(timeout=30)
    monitor.tasks.shutdown(wait=False)
    return 0


def cmd_status(app: App, args) -> int:
    """Discover spot instances and print their live status."""
    monitor = app.monitor
    if monitor.refresh() is None:
        print("Failed to list regions")
        return 1
    print(strip_html(format_status(monitor.status_rows())))
    if args.verbose:
        print()
        for inst in monitor.registry.snapshot():
            print(f"  - {inst.describe()} public={inst.public_ip or '-'} private={inst.private_ip or '-'}")
    return 0


def cmd_check(app: App, args) -> int:
    """Run a single reclaim-and-restart cycle (and a traffic check)."""
    monitor = app.monitor
    monitor.check_once()
    if app.config.traffic_shutdown_enabled:
        monitor.check_traffic()
        monitor.tasks.wait_all()
    return 0


def cmd_traffic(app: App, args) -> int:
    """Print month-to-date internet traffic."""
    monitor = app.monitor
    if args.notify:
        monitor.send_traffic_report()
        return 0
    summary = monitor.traffic.query_traffic()
    limits = monitor.traffic_limits() if app.config.traffic_shutdown_enabled else None
    print(strip_html(format_traffic(summary, limits)))
    return 0


def cmd_billing(app: App, args) -> int:
    """Print per-instance cost for the last BILLING_HOURS hours."""
    monitor = app.monitor
    if args.hours:
        app.config.billing_hours = args.hours
    monitor.refresh()
    if args.notify:
        monitor.send_billing_report()
        return 0
    summary = monitor.billing.query_billing(list(monitor.registry.snapshot()), app.config.billing_hours)
    print(strip_html(format_billing(summary)))
    return 0


def cmd_credits(app: App, args) -> int:
    """Print promotional credits remaining."""
    monitor = app.monitor
    if monitor.credits is None:
        print("Credits tracking is disabled (set CREDITS_ENABLED=true)")
        return 1
    if args.notify:
        monitor.send_credits_report()
        return 0
    print(strip_html(format_credits(monitor.credits.query_credits())))
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Spot Guardian - restart reclaimed spot instances and enforce traffic budgets"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--env-file", default=None, help="Load environment from this .env file")
    parser.add_argument("--regions", default=None, help="Comma-separated list of AWS regions")
    parser.add_argument("--dry-run", action="store_true", help="Log instead of stopping instances")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    subparsers.add_parser("run", help="Run the monitor daemon")

    status_parser = subparsers.add_parser("status", help="Show tracked instances and their status")
    status_parser.add_argument("-v", "--verbose", action="store_true", help="Show instance addresses")

    subparsers.add_parser("check", help="Run one check cycle")

    for name, help_text in (
        ("traffic", "Show month-to-date traffic"),
        ("billing", "Show per-instance billing"),
        ("credits", "Show credits remaining"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--notify", action="store_true", help="Send the report to the notifier")
        if name == "billing":
            sub.add_argument("--hours", type=int, default=None, help="Billing window in hours")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    load_dotenv(args.env_file)

    try:
        config = _load_config(args)
        configure_logging(config.log_level, config.log_file)
        require_aws_credentials(config.home_region)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    commands = {
        "run": cmd_run,
        "status": cmd_status,
        "check": cmd_check,
        "traffic": cmd_traffic,
        "billing": cmd_billing,
        "credits": cmd_credits,
    }

    app = build_app(config)
    try:
        return commands[args.command](app, args)
    except SpotGuardianError as e:
        logger.error("%s failed: %s", args.command, e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
