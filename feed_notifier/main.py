"""
Main entry point for Feed Notifier.

Validates the notifiers and the feed, then runs the notification pipeline
until SIGINT/SIGTERM.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from urllib.parse import urlparse

import coloredlogs
import yaml
from pydantic import ValidationError

from feed_notifier.config import AppConfig, load_config
from feed_notifier.models import DeliveryRequest
from feed_notifier.notifier import DeliveryError, Notifier
from feed_notifier.pipeline import NotificationPipeline
from feed_notifier.pushover import PushoverNotifier
from feed_notifier.rss_parser import FeedError, FeedParser
from feed_notifier.telegram import TelegramNotifier

logger = logging.getLogger(__name__)


class StartupValidationError(Exception):
    """Raised when credentials or the feed fail the startup check."""


def redact_proxy_url(proxy_url: str) -> str:
    """
    Redact credentials from a proxy URL for safe logging.

    Parameters
    ----------
    proxy_url : str
        The proxy URL potentially containing credentials.

    Returns
    -------
    str
        The proxy URL with password redacted.
    """
    try:
        parsed = urlparse(proxy_url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:****@{netloc}"
            return f"{parsed.scheme}://{netloc}{parsed.path}"
        return proxy_url
    except ValueError:
        return "<proxy url>"


class FeedNotifier:
    """
    Main application.

    Builds the feed source and notifiers from configuration, validates
    them and runs the pipeline.
    """

    def __init__(self, config: AppConfig):
        """
        Initialize the application.

        Parameters
        ----------
        config : AppConfig
            Validated application configuration.
        """
        self.config = config
        self.parser: FeedParser | None = None
        self.notifiers: list[Notifier] = []
        self.pipeline: NotificationPipeline | None = None
        self._stop_requested = False

    def _build_components(self) -> None:
        """Create the feed parser and notifiers."""
        feed = self.config.feed
        if feed.proxy:
            logger.info("Using proxy: %s", redact_proxy_url(feed.proxy))

        self.parser = FeedParser(
            timeout=feed.request_timeout,
            user_agent=feed.user_agent,
            proxy_url=feed.proxy,
        )

        self.notifiers = []
        if self.config.pushover:
            self.notifiers.append(
                PushoverNotifier(
                    self.config.pushover,
                    timeout=feed.request_timeout,
                    proxy_url=feed.proxy,
                )
            )
        if self.config.telegram:
            self.notifiers.append(TelegramNotifier(self.config.telegram, proxy_url=feed.proxy))

    async def validate(self) -> None:
        """
        Send a readiness message through every notifier and fetch the feed once.

        Raises
        ------
        StartupValidationError
            If any notifier or the feed fails.
        """
        if self.parser is None or not self.notifiers:
            raise RuntimeError("Components not initialized")

        title = self.config.notification.title
        ready = DeliveryRequest(title=title, body=f"{title} is ready to send notifications!")

        for notifier in self.notifiers:
            logger.info("Validating %s credentials", notifier.name)
            try:
                await notifier.send(ready)
            except DeliveryError as e:
                raise StartupValidationError(f"{notifier.name} validation failed: {e}") from e

        logger.info("Validating feed URL (host %s)", urlparse(self.config.feed.url).hostname)
        try:
            items = await self.parser.fetch_items(self.config.feed.url)
        except FeedError as e:
            raise StartupValidationError(f"Feed validation failed: {e}") from e
        logger.info("Feed is valid, currently %d items", len(items))

    async def start(self) -> None:
        """Validate, then run the pipeline until shutdown."""
        logger.info("Starting Feed Notifier")
        self._build_components()
        await self.validate()

        pipeline_config = self.config.pipeline
        self.pipeline = NotificationPipeline(
            source=self.parser,
            feed_url=self.config.feed.url,
            notifiers=self.notifiers,
            poll_interval=self.config.feed.poll_interval,
            title=self.config.notification.title,
            item_queue_size=pipeline_config.item_queue_size,
            delivery_queue_size=pipeline_config.delivery_queue_size,
            delivery_workers=pipeline_config.delivery_workers,
        )
        if self._stop_requested:
            self.pipeline.shutdown("stop requested during startup")

        self.pipeline.install_signal_handlers()
        try:
            await self.pipeline.run()
        finally:
            self.pipeline.remove_signal_handlers()

    def stop(self) -> None:
        """Request a graceful shutdown. Safe to call more than once."""
        self._stop_requested = True
        if self.pipeline:
            self.pipeline.shutdown()

    async def close(self) -> None:
        """Release HTTP sessions held by the parser and notifiers."""
        if self.parser:
            await self.parser.close()
        for notifier in self.notifiers:
            await notifier.close()
        logger.info("Feed Notifier stopped")


def setup_logging(verbose: bool = False) -> None:
    """
    Configure application logging.

    Parameters
    ----------
    verbose : bool
        If True, set log level to DEBUG.
    """
    level = logging.DEBUG if verbose else logging.INFO

    coloredlogs.install(
        level=level,
        fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("telegram").setLevel(logging.WARNING)


def build_arg_parser() -> argparse.ArgumentParser:
    """Create the command line parser."""
    parser = argparse.ArgumentParser(
        prog="feed-notifier",
        description="Send a notification for every new item of an RSS/Atom feed",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "-c",
        "--config",
        default=None,
        help="Path to configuration file (default: ./feed-notifier.yaml if present)",
    )
    parser.add_argument("-f", "--feed-url", help="URL to RSS feed")
    parser.add_argument("-t", "--pushover-app-token", help="Pushover app API token")
    parser.add_argument("-r", "--pushover-recipient", help="Pushover recipient key")
    parser.add_argument(
        "-p",
        "--poll-interval",
        type=int,
        help="Interval at which to poll the feed for new items, in seconds (default 120)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    return parser


def overrides_from_args(args: argparse.Namespace) -> dict[str, dict]:
    """Map command line flags onto config sections."""
    return {
        "feed": {"url": args.feed_url, "poll_interval": args.poll_interval},
        "pushover": {
            "app_token": args.pushover_app_token,
            "recipient": args.pushover_recipient,
        },
    }


async def run(app: FeedNotifier) -> None:
    """Run the application and always release its resources."""
    try:
        await app.start()
    finally:
        await app.close()


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    args = build_arg_parser().parse_args(argv)

    setup_logging(args.verbose)

    try:
        config = load_config(
            Path(args.config) if args.config else None,
            overrides=overrides_from_args(args),
        )
    except (FileNotFoundError, ValueError, ValidationError, yaml.YAMLError) as e:
        logger.error("Invalid configuration: %s", e)
        sys.exit(1)

    app = FeedNotifier(config)

    try:
        asyncio.run(run(app))
    except StartupValidationError as e:
        logger.error("Startup validation failed: %s", e)
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")


if __name__ == "__main__":
    main()
