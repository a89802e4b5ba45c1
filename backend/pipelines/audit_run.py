"""Wide audit sweep for legs the timer-driven pass could not settle.

Runs the same pipeline as :mod:`pipelines.settlement_run` under the audit
policy: longer window, no backoff or retry ceiling, web research when the
scores feed is silent, and an explicit PENDING verdict when nothing supports a
decision.
"""

from __future__ import annotations

import argparse
from pathlib import Path

from .settlement_run import SettlementSummary, run_job


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Audit recent tickets that still hold pending legs",
    )
    parser.add_argument(
        "--summary-path",
        type=Path,
        default=None,
        help="Optional path where a JSON summary report will be written",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> SettlementSummary:
    args = _parse_args(argv)
    return run_job(audit=True, summary_path=args.summary_path)


if __name__ == "__main__":
    main()
