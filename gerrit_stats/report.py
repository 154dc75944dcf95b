"""CSV report writer."""

from __future__ import annotations

import logging
from pathlib import Path

import pandas as pd

from gerrit_stats.config import DETAILED_FILE, SUMMARY_FILE
from gerrit_stats.models import UserStats
from gerrit_stats.stats import COLUMNS, as_row, average_stats, summary_rows

logger = logging.getLogger(__name__)


def summary_frame(stats: list[UserStats]) -> pd.DataFrame:
    """One row per user in configuration order, then the average row."""
    rows = summary_rows(stats) + [average_stats(stats)]
    return pd.DataFrame(
        [{"User": s.display_name, **as_row(s)} for s in rows],
        columns=["User", *COLUMNS],
        dtype=object,
    )


def detailed_frame(stats: list[UserStats]) -> pd.DataFrame:
    """Every row, all-projects first for each user, then per project."""
    return pd.DataFrame(
        [{"User": s.display_name, "Repo": s.project, **as_row(s)} for s in stats],
        columns=["User", "Repo", *COLUMNS],
        dtype=object,
    )


def write_report(stats: list[UserStats], output_dir: str | Path) -> tuple[Path, Path]:
    """Write ``stats.csv`` and ``detailed.csv`` into *output_dir*."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    summary_path = output_dir / SUMMARY_FILE
    detailed_path = output_dir / DETAILED_FILE
    summary_frame(stats).to_csv(summary_path, index=False)
    detailed_frame(stats).to_csv(detailed_path, index=False)

    logger.info("Saved %d user row(s) → %s", len(summary_rows(stats)), summary_path)
    logger.info("Saved %d detailed row(s) → %s", len(stats), detailed_path)
    return summary_path, detailed_path
