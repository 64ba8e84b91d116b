#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import pathlib
import sys

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from policy_engine.pipeline import run_smoke
from policy_engine.runtime_profile import feature_enabled
from policy_engine.telemetry import Telemetry


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the prescriptive pipeline on a synthetic scenario batch.")
    parser.add_argument("--seed", type=int, default=42, help="sampler seed")
    parser.add_argument("--total", type=int, default=30, help="stratified scenario count")
    parser.add_argument("--summary-only", action="store_true", help="print counts instead of the full report")
    parser.add_argument("--verbose", action="store_true", help="debug logging")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)
    if not feature_enabled():
        print(json.dumps({"reason": "feature_flag_disabled"}, ensure_ascii=False))
        return 1

    report = run_smoke(seed=args.seed, total=args.total, telemetry=Telemetry())
    if args.summary_only:
        report = {
            "seed": report["seed"],
            "summary": report["summary"],
            "frontier_size": len(report["frontier"]["frontier"]),
            "adaptive_stats": report["adaptive"]["stats"],
            "policy_version_id": report["simulation"]["policy_version_id"],
            "notes": report["simulation"]["notes"],
        }
    print(json.dumps(report, ensure_ascii=False, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
