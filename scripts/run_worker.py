#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from render_core.runtime import create_services_from_env


def main() -> int:
    load_dotenv()
    parser = argparse.ArgumentParser(description="Run the resident render sweep loop.")
    parser.add_argument("--max", type=int, default=1, help="Jobs to claim per sweep (clamped to RENDER_SWEEP_MAX_CAP).")
    parser.add_argument(
        "--iterations",
        type=int,
        default=0,
        help="Stop after N sweeps (0 means run forever).",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=os.environ.get("RENDER_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    services = create_services_from_env()
    max_jobs = max(1, min(services.config.sweep_max_cap, args.max))
    stats = services.worker.run_forever(
        max_jobs=max_jobs,
        stop_after_iterations=args.iterations if args.iterations > 0 else None,
    )
    print(json.dumps({"success": True, "stats": stats}, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
