"""tempalias console worker entry point.

This module runs one alias session headless:
- Logs in to the provider for a domain
- Optionally creates an alias right away
- Keeps deletion timers, log polling and status refresh running
- Handles graceful shutdown via SIGTERM/SIGINT (logout before exit)

Notifications are written to the log.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from collections.abc import Sequence
from typing import TYPE_CHECKING, NoReturn

from tempalias.core.settings import get_settings
from tempalias.services.lifecycle import AliasValidationError
from tempalias.services.notifications import LoggingNotificationSink, NotificationScheduler
from tempalias.services.provider_client import ProviderError
from tempalias.services.session import AliasSession
from tempalias.services.storage import SqlStateStore

if TYPE_CHECKING:
    from tempalias.core.config import Settings
    from tempalias.services.storage import StateStore

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tempalias-worker",
        description="Run a temporary email alias session.",
    )
    parser.add_argument(
        "--domain",
        default=None,
        help="Provider domain to manage (default: TEMPALIAS_DOMAIN)",
    )
    parser.add_argument(
        "--api-key",
        default=None,
        help="Provider API key (default: TEMPALIAS_PROVIDER__API_KEY)",
    )
    parser.add_argument("--create", metavar="NAME", default=None, help="Create this alias on start")
    parser.add_argument(
        "--forward",
        metavar="ADDRESS",
        default=None,
        help="Forward target for the created alias (default: saved target)",
    )
    return parser


async def run_session(
    args: argparse.Namespace,
    shutdown_event: asyncio.Event,
    *,
    settings: Settings,
    store: StateStore,
) -> int:
    """Run a session until shutdown is requested.

    Returns:
        Process exit code.
    """
    lifecycle = settings.lifecycle
    notifier = NotificationScheduler(
        LoggingNotificationSink(),
        default_duration_ms=lifecycle.notification_duration_ms,
        tick_seconds=lifecycle.notification_tick_seconds,
    )
    notifier.start()
    session = AliasSession(store, settings, notifier=notifier)

    try:
        try:
            await session.login(args.api_key, args.domain or settings.domain or "")
        except (ValueError, ProviderError) as e:
            logger.error("Login failed: domain=%s, error=%s", args.domain or settings.domain, e)
            return 1

        if args.create is not None or args.forward is not None:
            try:
                record = await session.create_alias(args.create, args.forward)
                logger.info(
                    "Alias ready: alias=%s, expires_at=%s",
                    record.address,
                    record.expires_at.isoformat(),
                )
            except (AliasValidationError, ProviderError) as e:
                logger.error("Alias creation failed: %s", e)

        await shutdown_event.wait()
        return 0
    finally:
        await session.close()


def _handle_shutdown(signum: int, shutdown_event: asyncio.Event) -> None:
    """Handle shutdown signals gracefully."""
    logger.info("Shutdown signal received (signal=%d)", signum)
    shutdown_event.set()


def install_signal_handlers(
    loop: asyncio.AbstractEventLoop, shutdown_event: asyncio.Event
) -> None:
    """Set ``shutdown_event`` on SIGTERM/SIGINT, from inside ``loop``."""
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _handle_shutdown, sig, shutdown_event)


def run(argv: Sequence[str] | None = None) -> NoReturn:
    """Run the worker process.

    This is the main entry point for the worker. It:
    - Loads settings and sets up logging
    - Registers signal handlers for graceful shutdown
    - Runs the session until a signal arrives
    """
    args = build_parser().parse_args(argv)
    settings = get_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    logger.info("tempalias worker starting...")

    async def _run_with_event() -> int:
        shutdown_event = asyncio.Event()
        install_signal_handlers(asyncio.get_running_loop(), shutdown_event)
        store = SqlStateStore.from_settings(settings.store)
        return await run_session(args, shutdown_event, settings=settings, store=store)

    exit_code = 0
    try:
        exit_code = asyncio.run(_run_with_event())
    except KeyboardInterrupt:
        logger.info("Worker interrupted")
    except Exception as e:
        logger.exception("Worker failed: %s", e)
        sys.exit(1)

    logger.info("tempalias worker shutdown complete")
    sys.exit(exit_code)


if __name__ == "__main__":
    run()
