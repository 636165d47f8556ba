#!/usr/bin/env python3
"""
Print this week's service plan as one PDF plansheet per team profile.

Example:
  python3 print_plan.py \
    --api-base https://content.example.org/api/v1 \
    --service-day sunday --timezone America/Chicago \
    --profiles-file profiles.json --out-dir out --keep-html
"""

from __future__ import annotations

import json
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Set, Tuple

from plan_source import Chooser, ContentApi, TerminalChooser, authenticate, select_plan, select_service
from plansheet_config import Settings, load_settings
from plansheet_core import (
    ConfigError,
    ConversionFailed,
    MalformedPlanData,
    MarkupWriteFailed,
    PlanDetail,
    PlansheetError,
    build_document,
    decode_plan_detail,
    next_occurrence_window,
    render_html,
    status,
    warn,
)
from plansheet_pdf import Converter, make_converter, output_paths, write_markup
from profile_store import resolve_profiles


def dump_plan_file(path: Path, plan_id: str, payload: object) -> None:
    wrapped = {
        "version": 1,
        "created_at": datetime.now().isoformat(timespec="seconds"),
        "plan_id": plan_id,
        "plan": payload,
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(wrapped, indent=2), encoding="utf-8")


def load_plan_file(path: Path) -> object:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigError(f"Plan file {path} is unreadable: {exc}") from exc
    except ValueError as exc:
        raise MalformedPlanData(f"Plan file {path} is not valid JSON: {exc}") from exc
    # Accept our own dumps as well as a raw API response.
    if isinstance(raw, dict) and "version" in raw and "plan" in raw:
        return raw["plan"]
    return raw


def load_stylesheet(path: Optional[Path]) -> Optional[str]:
    if not path:
        return None
    try:
        return path.read_text(encoding="utf-8")
    except OSError as exc:
        warn(f"stylesheet {path} not readable ({exc}); using the built-in stylesheet")
        return None


def clear_output_dir(path: Path) -> None:
    try:
        if path.exists():
            for child in path.iterdir():
                if child.is_dir() and not child.is_symlink():
                    shutil.rmtree(child)
                else:
                    child.unlink()
        path.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ConfigError(f"Could not clear output directory {path}: {exc}") from exc


def fetch_plan_payload(settings: Settings, chooser: Optional[Chooser] = None) -> Tuple[str, object]:
    """
    Log in, settle on exactly one plan and fetch it.

    Precedence: explicit plan id, then explicit service id, then a search of
    the next service day's window.
    """
    say = settings.status_messages
    status(say, f"Authenticating as {settings.username} at {settings.api_base}")
    token = authenticate(settings.api_base, settings.username, settings.password, token_cache=settings.token_cache)
    api = ContentApi(settings.api_base, token)

    if settings.plan_id:
        status(say, f"Using plan id {settings.plan_id}")
        return settings.plan_id, api.plan_payload(settings.plan_id)

    candidates = []
    searched = ""
    if not settings.service_id:
        start, end = next_occurrence_window(settings.reference_instant(), settings.service_day, settings.display_zone)
        searched = (
            f"{start.strftime('%Y-%m-%d %H:%M %Z')} to {end.strftime('%Y-%m-%d %H:%M %Z')}"
            f" ({', '.join(settings.statuses)})"
        )
        status(say, f"Searching services {searched}")
        candidates = api.search_services(start, end, settings.statuses)
        status(say, f"Found {len(candidates)} candidate service(s)")
        for c in candidates:
            status(say, f"  {c.label()}")

    picked = select_service(candidates, api.service_detail, chooser=chooser, explicit_id=settings.service_id, searched=searched)
    detail = api.service_detail(picked) if isinstance(picked, str) else picked
    status(say, f"Selected service {detail.title} [id {detail.id}]")
    plan = select_plan(detail, chooser=chooser)
    status(say, f"Selected plan {plan.title} [id {plan.id}]")
    return plan.id, api.plan_payload(plan.id)


def render_profiles(
    settings: Settings,
    plan: PlanDetail,
    converter: Converter,
    run_stamp: datetime,
) -> List[Path]:
    say = settings.status_messages
    profiles = resolve_profiles(settings.profiles, settings.profiles_file, plan.teams)
    status(say, f"Rendering {len(profiles)} profile(s)")
    stylesheet = load_stylesheet(settings.css)

    written: List[Path] = []
    taken: Set[Path] = set()
    for idx, profile in enumerate(profiles, start=1):
        if not profile.teams:
            warn(f"profile {profile.name!r} has no teams; skipping")
            continue
        status(say, f"Profile {idx}/{len(profiles)}: {profile.name} ({profile.orientation}, {len(profile.teams)} team(s))")
        # Profile names that slug alike still get their own files.
        seq = 1
        pdf_path, html_path = output_paths(settings.out_dir, profile.name, plan.title, run_stamp)
        while pdf_path in taken:
            seq += 1
            pdf_path, html_path = output_paths(settings.out_dir, profile.name, plan.title, run_stamp, seq)
        taken.add(pdf_path)
        try:
            document = build_document(
                plan,
                profile.teams,
                profile.name,
                profile.orientation,
                stylesheet,
                display_zone=settings.display_zone,
                local_zone=settings.local_zone,
                printed_at=run_stamp,
            )
            markup = render_html(document)
            converter.convert(document, markup, pdf_path)
        except ConversionFailed as exc:
            warn(f"conversion failed for profile {profile.name!r}: {exc}")
            continue
        except PlansheetError as exc:
            warn(f"could not build plansheet for profile {profile.name!r}: {exc}")
            continue
        written.append(pdf_path)
        status(say, f"Wrote {pdf_path}")

        if settings.keep_html:
            try:
                write_markup(markup, html_path)
                status(say, f"Wrote {html_path}")
            except MarkupWriteFailed as exc:
                warn(f"profile {profile.name!r}: {exc}")
    return written


def run(
    settings: Settings,
    converter: Optional[Converter] = None,
    chooser: Optional[Chooser] = None,
    now: Optional[datetime] = None,
) -> List[Path]:
    say = settings.status_messages
    run_stamp = (now or datetime.now(timezone.utc)).astimezone(settings.local_zone)

    if settings.clean_output:
        status(say, f"Clearing output directory {settings.out_dir}")
        clear_output_dir(settings.out_dir)
    try:
        settings.out_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ConfigError(f"Could not create output directory {settings.out_dir}: {exc}") from exc

    if settings.load_plan:
        status(say, f"Loading plan from {settings.load_plan}")
        payload = load_plan_file(settings.load_plan)
    else:
        if chooser is None and settings.interactive:
            chooser = TerminalChooser()
        plan_id, payload = fetch_plan_payload(settings, chooser=chooser)
        if settings.dump_plan:
            status(say, f"Writing plan to {settings.dump_plan}")
            dump_plan_file(settings.dump_plan, plan_id, payload)

    plan = decode_plan_detail(payload)
    status(say, f"Plan {plan.title} [id {plan.id}]: {len(plan.rows)} item(s), {len(plan.teams)} team(s)")

    try:
        backend = converter or make_converter(settings.converter, settings.converter_command or None)
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc
    return render_profiles(settings, plan, backend, run_stamp)


def main(argv: List[str] | None = None) -> None:
    try:
        settings = load_settings(argv)
        written = run(settings)
    except PlansheetError as exc:
        raise SystemExit(f"error: {exc}")
    print(f"Wrote {len(written)} plansheet(s) to {settings.out_dir}")


if __name__ == "__main__":
    main()
