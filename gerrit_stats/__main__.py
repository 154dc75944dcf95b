"""CLI: fetch Gerrit reviews for configured users and write CSV statistics."""

from __future__ import annotations

import argparse
import getpass
import logging
import sys
from collections.abc import Callable, Sequence
from pathlib import Path

import httpx

from gerrit_stats import __version__
from gerrit_stats.config import GERRIT_PASSWORD, ConfigError, load_config
from gerrit_stats.fetcher import fetch_all
from gerrit_stats.gerrit_client import GerritError
from gerrit_stats.report import write_report
from gerrit_stats.stats import collect_stats

logger = logging.getLogger("gerrit_stats")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gerrit-stats",
        description="Gathers basic statistics based on the reviews users participated in.",
    )
    parser.add_argument(
        "-c", "--config", required=True, metavar="FILE", help="Path to a config file"
    )
    parser.add_argument(
        "-u", "--user", required=True, metavar="NAME",
        help="Username for fetching Gerrit changes",
    )
    parser.add_argument(
        "-o", "--output-dir", default=".", metavar="DIR",
        help="Directory for stats.csv and detailed.csv (default: current directory)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(
    argv: Sequence[str] | None = None,
    prompt: Callable[[str], str] = getpass.getpass,
    transport: httpx.BaseTransport | None = None,
) -> int:
    """Run the whole pipeline; returns the process exit code.

    *prompt* supplies the HTTP password when ``GERRIT_HTTP_PASSWORD`` is
    unset. Nothing is written unless every user's fetch succeeded.
    """
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )

    try:
        config = load_config(args.config)
    except ConfigError as exc:
        logger.error("ConfigError: %s", exc)
        return 1

    password = GERRIT_PASSWORD or prompt(f"HTTP password for {args.user}@{config.server}: ")

    try:
        index = fetch_all(config, args.user, password, transport=transport)
    except GerritError as exc:
        logger.error(
            "%s for user %s on %s: %s",
            type(exc).__name__, exc.user, exc.endpoint, exc,
        )
        return 1
    logger.info("Index complete: %d unique change(s)", len(index))

    stats = collect_stats(index, config.users, config.approval_label, config.approval_value)
    write_report(stats, Path(args.output_dir))
    return 0


if __name__ == "__main__":
    sys.exit(main())
