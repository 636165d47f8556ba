#!/usr/bin/env python3
"""
Shape a service plan's run-of-show into a printable, team-columnar plansheet.

The plan comes from the content API as JSON; `decode_plan_detail` turns it into
typed values, `build_document` lays it out for one profile, and `render_html`
produces the markup handed to a PDF converter.
"""

from __future__ import annotations

import html
import re
import sys
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


# Errors -------------------------------------------------------------------


class PlansheetError(Exception):
    pass


class ConfigError(PlansheetError):
    pass


class InvalidTimezone(PlansheetError):
    pass


class AuthenticationFailed(PlansheetError):
    pass


class FetchFailed(PlansheetError):
    pass


class NoEligibleService(PlansheetError):
    pass


class NoSelectionMade(PlansheetError):
    pass


class AmbiguousSelection(PlansheetError):
    def __init__(self, message: str, candidates: Sequence[Tuple[str, str]] = ()) -> None:
        super().__init__(message)
        self.candidates = list(candidates)


class NoPlanFound(PlansheetError):
    pass


class AmbiguousPlan(PlansheetError):
    def __init__(self, message: str, candidates: Sequence[Tuple[str, str]] = ()) -> None:
        super().__init__(message)
        self.candidates = list(candidates)


class InvalidProfileConfig(PlansheetError):
    pass


class NoProfilesResolved(PlansheetError):
    pass


class MalformedPlanData(PlansheetError):
    pass


class ConversionFailed(PlansheetError):
    pass


class MarkupWriteFailed(PlansheetError):
    pass


# Text helpers -------------------------------------------------------------


CSS_UNSAFE_RE = re.compile(r"[^A-Za-z0-9-]")
SLUG_RE = re.compile(r"[^A-Za-z0-9]+")

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

HEADER_START_FMT = "%A, %B %d, %Y %I:%M %p"
ROW_TIME_FMT = "%H:%M"
VERSION_FMT = "%Y-%m-%d %H:%M"


def status(enabled: bool, message: str) -> None:
    if enabled:
        print(f"[status] {clean_text(message)}")


def warn(message: str) -> None:
    print(f"[warn] {clean_text(message)}", file=sys.stderr)


def clean_text(s: object) -> str:
    return re.sub(r"\s+", " ", str(s or "")).strip()


def css_token(name: str) -> str:
    """Styling hook for a team or row kind: `[A-Za-z0-9-]` kept, the rest become `-`."""
    return CSS_UNSAFE_RE.sub("-", str(name or "")).lower()


def slugify(text: str) -> str:
    slug = SLUG_RE.sub("-", str(text or "")).strip("-")
    return slug or "untitled"


def minutes_label(seconds: int) -> str:
    # Half-up rounding; 90s reads as 2 min, 29s as nothing.
    minutes = (int(seconds) + 30) // 60
    return f"{minutes} min" if minutes > 0 else ""


# Time & schedule math -----------------------------------------------------


def resolve_zone(name: str) -> tzinfo:
    key = clean_text(name)
    if not key:
        raise InvalidTimezone("Timezone identifier is empty")
    try:
        return ZoneInfo(key)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise InvalidTimezone(f"Unrecognized timezone identifier: {key!r}") from exc


def system_zone() -> tzinfo:
    return datetime.now().astimezone().tzinfo or timezone.utc


def parse_weekday(text: Union[str, int]) -> int:
    """Monday=0 .. Sunday=6; accepts names, three-letter prefixes or digits."""
    if isinstance(text, int):
        value = text
    else:
        raw = clean_text(text).lower()
        if raw.isdigit():
            value = int(raw)
        else:
            matches = [i for i, name in enumerate(WEEKDAYS) if len(raw) >= 3 and name.startswith(raw)]
            if len(matches) != 1:
                raise ConfigError(f"Unrecognized weekday: {text!r}")
            value = matches[0]
    if not 0 <= value <= 6:
        raise ConfigError(f"Weekday out of range (0=Monday..6=Sunday): {text!r}")
    return value


def _require_aware(instant: datetime, what: str) -> datetime:
    if not isinstance(instant, datetime) or instant.tzinfo is None or instant.utcoffset() is None:
        raise MalformedPlanData(f"{what} is missing a timezone offset: {instant!r}")
    return instant


def next_occurrence_window(reference: datetime, target_weekday: int, tz: Union[str, tzinfo]) -> Tuple[datetime, datetime]:
    """
    Window covering the next `target_weekday` on or after `reference`'s local date.

    Start is that day's local midnight; end is the last microsecond before the
    following local midnight. The subtraction happens on the UTC timeline so a
    23h or 25h DST day keeps its real length.
    """
    zone = resolve_zone(tz) if isinstance(tz, str) else tz
    _require_aware(reference, "Reference instant")
    local_day = reference.astimezone(zone).date()
    ahead = (int(target_weekday) - local_day.weekday()) % 7
    day = local_day + timedelta(days=ahead)
    window_start = datetime.combine(day, time(0, 0), tzinfo=zone)
    next_midnight = datetime.combine(day + timedelta(days=1), time(0, 0), tzinfo=zone)
    last_instant = next_midnight.astimezone(timezone.utc) - timedelta(microseconds=1)
    return window_start, last_instant.astimezone(zone)


def localize(instant: datetime, tz: Union[str, tzinfo]) -> datetime:
    zone = resolve_zone(tz) if isinstance(tz, str) else tz
    return _require_aware(instant, "Timestamp").astimezone(zone)


def format_local(instant: datetime, tz: Union[str, tzinfo], fmt: str) -> str:
    return localize(instant, tz).strftime(fmt)


def parse_instant(value: object, what: str) -> datetime:
    text = clean_text(value)
    if not text:
        raise MalformedPlanData(f"{what} is missing")
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise MalformedPlanData(f"{what} is not an ISO-8601 timestamp: {value!r}") from exc
    return _require_aware(parsed, what)


# Data model ---------------------------------------------------------------


@dataclass(frozen=True)
class ServiceSummary:
    id: str
    title: str
    start: datetime
    end: datetime

    def label(self) -> str:
        return f"{self.title} ({self.start.isoformat(timespec='minutes')}) [id {self.id}]"


@dataclass(frozen=True)
class PlanSummary:
    id: str
    title: str
    start: datetime

    def label(self) -> str:
        return f"{self.title} ({self.start.isoformat(timespec='minutes')}) [id {self.id}]"


@dataclass(frozen=True)
class ServiceDetail:
    id: str
    title: str
    start: datetime
    end: datetime
    plans: Tuple[PlanSummary, ...] = ()


@dataclass(frozen=True)
class ScheduleRow:
    kind: str
    duration: int
    title: str = ""
    detail: str = ""
    notes: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PlanDetail:
    id: str
    title: str
    event_title: str
    start: datetime
    updated_at: datetime
    updated_by: str
    rows: Tuple[ScheduleRow, ...]
    teams: Tuple[str, ...]


@dataclass(frozen=True)
class Profile:
    name: str
    teams: Tuple[str, ...]
    orientation: str = "landscape"


# API decoding -------------------------------------------------------------


def _unwrap(payload: object, what: str) -> Dict[str, Any]:
    if isinstance(payload, dict) and "data" in payload and isinstance(payload["data"], (dict, list)):
        payload = payload["data"]
    if not isinstance(payload, dict):
        raise MalformedPlanData(f"{what} must be a JSON object")
    return payload


def _require_id(raw: Dict[str, Any], what: str) -> str:
    ident = clean_text(raw.get("id"))
    if not ident:
        raise MalformedPlanData(f"{what} has no id")
    return ident


def decode_service_summary(raw: object) -> ServiceSummary:
    row = _unwrap(raw, "Service")
    ident = _require_id(row, "Service")
    return ServiceSummary(
        id=ident,
        title=clean_text(row.get("title")),
        start=parse_instant(row.get("start"), f"Service {ident} start"),
        end=parse_instant(row.get("end"), f"Service {ident} end"),
    )


def decode_service_list(payload: object) -> List[ServiceSummary]:
    rows = payload.get("data") if isinstance(payload, dict) else payload
    if not isinstance(rows, list):
        raise MalformedPlanData("Service search response must be a list")
    return [decode_service_summary(r) for r in rows]


def decode_service_detail(payload: object) -> ServiceDetail:
    summary = decode_service_summary(payload)
    raw_plans = _unwrap(payload, "Service").get("plans") or []
    if not isinstance(raw_plans, list):
        raise MalformedPlanData(f"Service {summary.id} 'plans' must be a list")
    plans = []
    for raw in raw_plans:
        row = _unwrap(raw, f"Plan of service {summary.id}")
        ident = _require_id(row, f"Plan of service {summary.id}")
        plans.append(
            PlanSummary(
                id=ident,
                title=clean_text(row.get("title")),
                start=parse_instant(row.get("start"), f"Plan {ident} start"),
            )
        )
    return ServiceDetail(
        id=summary.id,
        title=summary.title,
        start=summary.start,
        end=summary.end,
        plans=tuple(plans),
    )


def _decode_duration(value: object, where: str) -> int:
    if value is None or value == "":
        return 0
    try:
        seconds = float(value)
    except (TypeError, ValueError) as exc:
        raise MalformedPlanData(f"{where} has a non-numeric length: {value!r}") from exc
    if seconds < 0:
        raise MalformedPlanData(f"{where} has a negative length: {value!r}")
    return int(round(seconds))


def _decode_row(raw: object, where: str) -> ScheduleRow:
    if not isinstance(raw, dict):
        raise MalformedPlanData(f"{where} must be an object")
    notes_raw = raw.get("notes") or {}
    if not isinstance(notes_raw, dict):
        raise MalformedPlanData(f"{where} 'notes' must be an object keyed by team")
    length = raw.get("length", raw.get("duration"))
    return ScheduleRow(
        kind=clean_text(raw.get("type")) or "normal",
        duration=_decode_duration(length, where),
        title=clean_text(raw.get("title")),
        detail=str(raw.get("detail") or "").strip(),
        notes={clean_text(k): str(v or "").strip() for k, v in notes_raw.items() if clean_text(k)},
    )


def decode_plan_detail(payload: object) -> PlanDetail:
    """
    Typed view of a plan response. Any missing or offset-less timestamp fails
    here, before a wrong time can reach paper.
    """
    raw = _unwrap(payload, "Plan")
    ident = _require_id(raw, "Plan")
    event = raw.get("event")
    event_title = clean_text(event.get("title")) if isinstance(event, dict) else ""
    event_title = event_title or clean_text(raw.get("event_title"))

    items = raw.get("items") or []
    if not isinstance(items, list):
        raise MalformedPlanData(f"Plan {ident} 'items' must be a list")
    rows = tuple(_decode_row(item, f"Plan {ident} item {idx}") for idx, item in enumerate(items, start=1))

    teams_raw = raw.get("teams") or []
    if not isinstance(teams_raw, list):
        raise MalformedPlanData(f"Plan {ident} 'teams' must be a list")
    teams: List[str] = []
    for t in teams_raw:
        name = clean_text(t.get("name") if isinstance(t, dict) else t)
        if name and name not in teams:
            teams.append(name)

    return PlanDetail(
        id=ident,
        title=clean_text(raw.get("title")),
        event_title=event_title,
        start=parse_instant(raw.get("start"), f"Plan {ident} start"),
        updated_at=parse_instant(raw.get("updated_at"), f"Plan {ident} updated_at"),
        updated_by=clean_text(raw.get("updated_by")),
        rows=rows,
        teams=tuple(teams),
    )


# Document model -----------------------------------------------------------


@dataclass(frozen=True)
class Column:
    label: str
    css_class: str


@dataclass(frozen=True)
class DocumentRow:
    time: str
    duration_caption: str
    kind_class: str
    title: str
    detail: str
    cells: Tuple[str, ...]


@dataclass(frozen=True)
class RenderedDocument:
    service_title: str
    start_label: str
    profile_name: str
    updated_label: str
    updated_by: str
    printed_label: str
    orientation: str
    columns: Tuple[Column, ...]
    rows: Tuple[DocumentRow, ...]
    stylesheet: str


PAGE_MARGIN = "0.4in"
PAGE_SIZE = "letter"
ORIENTATIONS = ("portrait", "landscape")

DEFAULT_CSS = """
body { font-family: "DejaVu Sans", Helvetica, Arial, sans-serif; font-size: 9pt; color: #111; }
header { margin-bottom: 8pt; }
header h1 { font-size: 15pt; margin: 0 0 2pt 0; }
header .start { font-size: 11pt; font-weight: bold; }
header .profile { font-size: 10pt; margin-top: 2pt; }
.version { float: right; font-size: 7pt; color: #555; text-align: right; }
table.plan { width: 100%; border-collapse: collapse; table-layout: fixed; }
table.plan thead { display: table-header-group; }
table.plan th, table.plan td { border: 0.5pt solid #999; padding: 3pt 4pt; vertical-align: top; word-wrap: break-word; }
table.plan th { background: #222; color: #fff; text-align: left; }
table.plan th.time, table.plan td.time { width: 0.6in; }
td.time .len { display: block; font-size: 7pt; color: #666; }
td.detail strong { display: block; }
tr { page-break-inside: avoid; }
tr.song td { background: #f2f6ff; }
tr.breaker td { background: #e6e6e6; font-weight: bold; }
tr.start td { background: #fff4d6; font-weight: bold; }
""".strip()


def page_directives(orientation: str) -> str:
    return f"@page {{ size: {PAGE_SIZE} {orientation}; margin: {PAGE_MARGIN}; }}"


def build_document(
    plan: PlanDetail,
    teams: Sequence[str],
    profile_name: str,
    orientation: str,
    stylesheet: Optional[str],
    display_zone: tzinfo,
    local_zone: tzinfo,
    printed_at: Optional[datetime] = None,
) -> RenderedDocument:
    """
    Lay out one plansheet.

    Row times are the plan start plus the lengths of every earlier row, so a
    zero-length row shares its time with the next one. The header start uses
    the plan's display zone; row times and the version block use the
    operator's local zone.
    """
    if orientation not in ORIENTATIONS:
        raise InvalidProfileConfig(f"Profile {profile_name!r}: orientation must be portrait or landscape, got {orientation!r}")
    start = _require_aware(plan.start, f"Plan {plan.id} start")
    updated = _require_aware(plan.updated_at, f"Plan {plan.id} updated_at")
    printed = printed_at or datetime.now(timezone.utc)

    columns = [Column("Time", "time"), Column("Detail", "detail")]
    columns.extend(Column(team, f"team-{css_token(team)}") for team in teams)

    rows: List[DocumentRow] = []
    elapsed = 0
    for idx, row in enumerate(plan.rows, start=1):
        if row.duration < 0:
            raise MalformedPlanData(f"Plan {plan.id} item {idx} has a negative length")
        at = start + timedelta(seconds=elapsed)
        rows.append(
            DocumentRow(
                time=format_local(at, local_zone, ROW_TIME_FMT),
                duration_caption=minutes_label(row.duration),
                kind_class=css_token(row.kind or "normal") or "normal",
                title=row.title,
                detail=row.detail,
                cells=tuple(row.notes.get(team, "") for team in teams),
            )
        )
        elapsed += row.duration

    css = stylesheet if stylesheet and stylesheet.strip() else DEFAULT_CSS
    return RenderedDocument(
        service_title=plan.event_title or plan.title,
        start_label=format_local(start, display_zone, HEADER_START_FMT),
        profile_name=profile_name,
        updated_label=format_local(updated, local_zone, VERSION_FMT),
        updated_by=plan.updated_by,
        printed_label=format_local(printed, local_zone, VERSION_FMT),
        orientation=orientation,
        columns=tuple(columns),
        rows=tuple(rows),
        stylesheet=f"{css.rstrip()}\n{page_directives(orientation)}\n",
    )


# Markup -------------------------------------------------------------------


@dataclass(frozen=True)
class Markup:
    """Pre-rendered markup inserted without escaping."""

    text: str


@dataclass(frozen=True)
class Element:
    tag: str
    attrs: Tuple[Tuple[str, str], ...] = ()
    children: Tuple[Union["Element", Markup, str], ...] = ()


Node = Union[Element, Markup, str]
VOID_TAGS = {"br", "meta"}


def el(tag: str, *children: Node, **attrs: str) -> Element:
    pairs = tuple((k.rstrip("_").replace("_", "-"), v) for k, v in attrs.items() if v)
    return Element(tag, pairs, tuple(c for c in children if c != ""))


def multiline(text: str) -> Tuple[Node, ...]:
    parts: List[Node] = []
    for i, line in enumerate(str(text).splitlines()):
        if i:
            parts.append(el("br"))
        parts.append(line)
    return tuple(parts)


def render_node(node: Node) -> str:
    if isinstance(node, Markup):
        return node.text
    if isinstance(node, str):
        return html.escape(node, quote=False)
    attrs = "".join(f' {k}="{html.escape(v, quote=True)}"' for k, v in node.attrs)
    if node.tag in VOID_TAGS:
        return f"<{node.tag}{attrs}>"
    inner = "".join(render_node(c) for c in node.children)
    return f"<{node.tag}{attrs}>{inner}</{node.tag}>"


def _detail_cell(row: DocumentRow) -> Element:
    parts: List[Node] = []
    if row.title:
        parts.append(el("strong", row.title))
    if row.detail:
        parts.append(Markup(row.detail.replace("\n", "<br>")))
    return el("td", *parts, class_="detail")


def document_nodes(doc: RenderedDocument) -> Element:
    head_cells = [el("th", col.label, class_=col.css_class) for col in doc.columns]
    team_columns = doc.columns[2:]
    body_rows = []
    for row in doc.rows:
        time_cell = el("td", row.time, el("span", row.duration_caption, class_="len") if row.duration_caption else "", class_="time")
        team_cells = [el("td", *multiline(text), class_=col.css_class) for col, text in zip(team_columns, row.cells)]
        body_rows.append(el("tr", time_cell, _detail_cell(row), *team_cells, class_=row.kind_class))

    version = el(
        "div",
        el("div", f"Last updated: {doc.updated_label}"),
        el("div", f"Updated by: {doc.updated_by or 'unknown'}"),
        el("div", f"Printed: {doc.printed_label}"),
        class_="version",
    )
    header = el(
        "header",
        version,
        el("h1", doc.service_title),
        el("div", doc.start_label, class_="start"),
        el("div", doc.profile_name, class_="profile"),
    )
    table = el("table", el("thead", el("tr", *head_cells)), el("tbody", *body_rows), class_="plan")
    return el(
        "html",
        el("head", el("meta", charset="utf-8"), el("title", f"{doc.service_title} - {doc.profile_name}"), el("style", Markup(doc.stylesheet))),
        el("body", header, table, class_=doc.orientation),
    )


def render_html(doc: RenderedDocument) -> str:
    return "<!DOCTYPE html>\n" + render_node(document_nodes(doc)) + "\n"


def parse_date(s: str) -> date:
    return datetime.strptime(s, "%Y-%m-%d").date()
