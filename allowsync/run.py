"""Command-line entry point for allowsync.

Startup sequence:
  1. Load config: ConfigError → "CONFIG ERROR: …" on stderr, exit 1
  2. Configure logging: level / renderer from config
  3. Load the allow-list: LoadError → "LOAD ERROR: …" on stderr, exit 1
     (an unparsable file is NOT fatal: it loads empty)
  4. Run the reconciliation loop until SIGTERM / SIGINT

Usage:
    allowsync /etc/allowsync/config.yaml           # via pyproject.toml [project.scripts]
    python -m allowsync.run config.yaml --once     # one cycle, exit 0 / 1

SIGTERM and SIGINT let an in-flight cycle finish, then stop the loop.
"""

from __future__ import annotations

import argparse
import asyncio
import functools
import signal
import sys
from typing import Optional, Sequence

from allowsync import __version__
from allowsync.allowlist.store import AllowListStore
from allowsync.config import Config, load_config
from allowsync.errors import ConfigError, LoadError
from allowsync.fetch.meta import MetaFetcher
from allowsync.hook.runner import run_hook
from allowsync.reconcile.loop import ReconcileLoop
from allowsync.utils.logger import configure_logging, get_logger

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="allowsync",
        description="Keep an nginx allow-list in sync with the GitHub meta API.",
    )
    parser.add_argument(
        "config",
        nargs="?",
        help="Path to config file (default: $ALLOWSYNC_CONFIG, ./allowsync.yaml, "
        "/etc/allowsync/config.yaml)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single update cycle and exit (status 1 if it failed)",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def build_loop(config: Config, store: AllowListStore, fetcher: MetaFetcher) -> ReconcileLoop:
    """Wire the collaborators described by ``config`` into a ReconcileLoop."""
    return ReconcileLoop(
        fetch=fetcher,
        store=store,
        hook_command=config.after_update_hook,
        run_hook=functools.partial(run_hook, timeout=config.hook_timeout),
        interval=config.repeat,
    )


async def serve(config: Config, store: AllowListStore, once: bool = False) -> int:
    """Run the loop (or a single cycle) and return the process exit status."""
    fetcher = MetaFetcher(
        token=config.token,
        url=config.meta_url,
        field=config.meta_field,
        timeout=config.fetch_timeout,
    )
    async with fetcher:
        loop = build_loop(config, store, fetcher)

        if once:
            outcome = await loop.tick()
            return 0 if outcome.ok else 1

        event_loop = asyncio.get_running_loop()
        for signum in (signal.SIGTERM, signal.SIGINT):
            try:
                event_loop.add_signal_handler(signum, _request_stop, loop, signum)
            except (NotImplementedError, RuntimeError, ValueError):
                # Not available on this platform / not the main thread
                logger.debug("Signal handler not installed", signal=signum)

        await loop.run_forever()
    return 0


def _request_stop(loop: ReconcileLoop, signum: int) -> None:
    logger.info("Shutdown requested", signal=signal.Signals(signum).name)
    loop.stop()


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Start allowsync.

    Raises:
        SystemExit: 1 on configuration or allow-list load failure, or when a
            ``--once`` cycle failed; 0 otherwise.
    """
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as exc:
        print(
            f"CONFIG ERROR: {exc}\n"
            "allowsync refuses to start with an invalid config.",
            file=sys.stderr,
        )
        raise SystemExit(1)

    configure_logging(config.log_level, json_output=config.json_logs)

    try:
        store = AllowListStore.load(config.allow_file)
    except LoadError as exc:
        print(f"LOAD ERROR: {exc}", file=sys.stderr)
        raise SystemExit(1)

    raise SystemExit(asyncio.run(serve(config, store, once=args.once)))


if __name__ == "__main__":
    main()
