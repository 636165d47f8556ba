#!/usr/bin/env python3
from __future__ import annotations

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from plan_source import TerminalChooser
from plansheet_config import load_settings
from plansheet_core import PlansheetError, decode_plan_detail
from print_plan import dump_plan_file, fetch_plan_payload


def parse_args() -> tuple[argparse.Namespace, list[str]]:
    p = argparse.ArgumentParser(
        description="Select a plan through the content API and dump its JSON for offline rendering (--load-plan).",
        epilog="Any other option is passed through to the print_plan configuration (e.g. --config, --service-id).",
    )
    p.add_argument("--out", type=Path, required=True, help="Output plan JSON path")
    return p.parse_known_args()


def main() -> None:
    args, rest = parse_args()
    try:
        settings = load_settings(rest)
        chooser = TerminalChooser() if settings.interactive else None
        plan_id, payload = fetch_plan_payload(settings, chooser=chooser)
        plan = decode_plan_detail(payload)
    except PlansheetError as exc:
        raise SystemExit(f"error: {exc}")
    print(f"[status] plan {plan.title} [id {plan_id}]: {len(plan.rows)} items, teams: {', '.join(plan.teams) or 'none'}")
    print(f"[status] writing plan dump to {args.out}")
    dump_plan_file(args.out, plan_id, payload)
    print(f"Wrote {args.out}")


if __name__ == "__main__":
    main()
