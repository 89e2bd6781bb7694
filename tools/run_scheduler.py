#!/usr/bin/env python3
"""Run the agent job scheduler from a shell or a cron entry.

    tools/run_scheduler.py            one tick, prints the summary as JSON
    tools/run_scheduler.py --enroll   enrollment pass, then one tick
    tools/run_scheduler.py --forever  poll every scheduler.poll_interval_seconds
"""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[1]


def main(argv: list[str] | None = None) -> int:
    repo = _repo_root()
    sys.path.insert(0, str(repo / "runtime" / "core"))

    from bootstrap import build_components
    from config.logging import apply_logging_config
    from config.settings import load_runtime_config, resolve_config_paths

    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--enroll", action="store_true", help="run an enrollment pass before the tick")
    parser.add_argument("--forever", action="store_true", help="keep polling (requires scheduler.enabled)")
    args = parser.parse_args(argv)

    runtime_path, logging_path = resolve_config_paths()
    runtime = load_runtime_config(runtime_path)
    apply_logging_config(logging_path)
    components = build_components(runtime)

    if args.enroll:
        print(json.dumps(components.enroller.run_once().to_document(), sort_keys=True))

    if args.forever:
        components.scheduler.run_forever()
        return 0

    print(json.dumps(components.scheduler.run_once().to_document(), sort_keys=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
