from __future__ import annotations

import argparse
import json
import os
import tomllib
from dataclasses import dataclass
from datetime import date, datetime, timezone, tzinfo
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from plansheet_core import ConfigError, parse_date, parse_weekday, resolve_zone, system_zone, warn

DEFAULTS: Dict[str, Any] = {
    "api_base": "",
    "username": "",
    "password": "",
    "service_id": "",
    "plan_id": "",
    "service_day": "sunday",
    "date": None,
    "statuses": ["published"],
    "timezone": "",
    "local_timezone": "",
    "profiles": None,
    "profiles_file": None,
    "css": None,
    "out_dir": Path("out"),
    "converter": "weasyprint",
    "converter_command": "",
    "keep_html": False,
    "clean_output": False,
    "interactive": False,
    "token_cache": None,
    "dump_plan": None,
    "load_plan": None,
    "status_messages": True,
}

# Environment variable -> setting key.
ENV_KEYS: Dict[str, str] = {
    "PLANSHEET_API_BASE": "api_base",
    "PLANSHEET_USERNAME": "username",
    "PLANSHEET_PASSWORD": "password",
    "PLANSHEET_SERVICE_ID": "service_id",
    "PLANSHEET_PLAN_ID": "plan_id",
    "PLANSHEET_SERVICE_DAY": "service_day",
    "PLANSHEET_STATUSES": "statuses",
    "PLANSHEET_TIMEZONE": "timezone",
    "TIMEZONE": "local_timezone",
    "PLANSHEET_PROFILES": "profiles",
    "PLANSHEET_PROFILES_FILE": "profiles_file",
    "PLANSHEET_CSS": "css",
    "PLANSHEET_OUT_DIR": "out_dir",
    "PLANSHEET_CONVERTER": "converter",
    "PLANSHEET_CONVERTER_COMMAND": "converter_command",
    "PLANSHEET_KEEP_HTML": "keep_html",
    "PLANSHEET_CLEAN_OUTPUT": "clean_output",
    "PLANSHEET_INTERACTIVE": "interactive",
    "PLANSHEET_TOKEN_CACHE": "token_cache",
}

PATH_KEYS = ("profiles_file", "css", "out_dir", "token_cache", "dump_plan", "load_plan")
BOOL_KEYS = ("keep_html", "clean_output", "interactive", "status_messages")


@dataclass(frozen=True)
class Settings:
    api_base: str
    username: str
    password: str
    service_id: str
    plan_id: str
    service_day: int
    reference_date: Optional[date]
    statuses: Tuple[str, ...]
    display_zone: tzinfo
    local_zone: tzinfo
    profiles: Union[str, list, None]
    profiles_file: Optional[Path]
    css: Optional[Path]
    out_dir: Path
    converter: str
    converter_command: str
    keep_html: bool
    clean_output: bool
    interactive: bool
    token_cache: Optional[Path]
    dump_plan: Optional[Path]
    load_plan: Optional[Path]
    status_messages: bool

    def reference_instant(self) -> datetime:
        if self.reference_date:
            return datetime.combine(self.reference_date, datetime.min.time(), tzinfo=self.local_zone)
        return datetime.now(timezone.utc)


def _parse_env_file(path: Path) -> Dict[str, str]:
    if not path.exists() or not path.is_file():
        return {}
    out: Dict[str, str] = {}
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        k, v = line.split("=", 1)
        key = k.strip()
        val = v.strip().strip("\"").strip("'")
        if key:
            out[key] = val
    return out


def load_env_values() -> Dict[str, str]:
    # Support running from project root or other cwd.
    candidate_paths = [
        Path.cwd() / ".env",
        Path(__file__).resolve().parent / ".env",
    ]
    merged: Dict[str, str] = {}
    for p in candidate_paths:
        merged.update(_parse_env_file(p))

    # Process env vars override file values.
    merged.update({k: v for k, v in os.environ.items() if k in ENV_KEYS})
    return merged


def _normalize_config_keys(cfg: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for k, v in cfg.items():
        key = k.replace("-", "_")
        if key == "profiles_json":
            key = "profiles"
        out[key] = v
    return out


def load_config_file(path: Optional[Path]) -> Dict[str, Any]:
    if not path:
        return {}
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Config file {path} is unreadable: {exc}") from exc
    try:
        if path.suffix.lower() == ".json":
            data = json.loads(raw)
        elif path.suffix.lower() in (".toml", ".tml"):
            data = tomllib.loads(raw)
        else:
            raise ConfigError(f"Unsupported config format: {path}. Use .json or .toml")
    except (ValueError, tomllib.TOMLDecodeError) as exc:
        raise ConfigError(f"Config file {path} could not be parsed: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError("Config root must be a JSON/TOML object")
    return _normalize_config_keys(data)


def _split_csv(value: object) -> List[str]:
    if isinstance(value, (list, tuple)):
        items = [str(v) for v in value]
    else:
        items = str(value or "").split(",")
    return [i.strip() for i in items if i.strip()]


def _coerce_config_values(cfg: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(cfg)

    for k in PATH_KEYS:
        if k in out and out[k] not in (None, "") and not isinstance(out[k], Path):
            out[k] = Path(str(out[k]))
        elif k in out and out[k] == "":
            out[k] = None

    if "date" in out and isinstance(out["date"], str):
        out["date"] = parse_date(out["date"]) if out["date"].strip() else None
    if "statuses" in out:
        out["statuses"] = _split_csv(out["statuses"])
    if "service_day" in out and isinstance(out["service_day"], int):
        out["service_day"] = str(out["service_day"])

    for k in BOOL_KEYS:
        if k in out and not isinstance(out[k], bool):
            if isinstance(out[k], str):
                out[k] = out[k].strip().lower() in ("1", "true", "yes", "on")
            else:
                out[k] = bool(out[k])

    for k in ("service_id", "plan_id"):
        if k in out and out[k] is not None:
            out[k] = str(out[k]).strip()

    return out


def _build_cli_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        argument_default=argparse.SUPPRESS,
        description="Render a service plan into one printable plansheet PDF per team profile.",
    )
    p.add_argument("--config", type=Path, help="Path to JSON/TOML config file.")
    p.add_argument("--api-base", type=str, help="Content API base URL, e.g. https://example.org/api/v1")
    p.add_argument("--username", type=str, help="API username.")
    p.add_argument("--password", type=str, help="API password (prefer PLANSHEET_PASSWORD or .env).")
    p.add_argument("--service-id", type=str, help="Render this service; skips the service search.")
    p.add_argument("--plan-id", type=str, help="Render this plan; skips service and plan selection.")
    p.add_argument("--service-day", type=str, help="Weekday to search for the next service (default sunday).")
    p.add_argument("--date", type=parse_date, help="Reference date YYYY-MM-DD for the search window (default today).")
    p.add_argument("--statuses", type=str, help='Comma-separated service statuses to search, e.g. "published,draft".')
    p.add_argument("--timezone", type=str, help="IANA zone used for the printed service start, e.g. America/Chicago.")
    p.add_argument("--local-timezone", type=str, help="IANA zone for row times and version stamps (default: system zone).")
    p.add_argument("--profiles", type=str, help="Inline JSON list of profiles; wins over --profiles-file.")
    p.add_argument("--profiles-file", type=Path, help="JSON/TOML file listing profiles.")
    p.add_argument("--css", type=Path, help="Stylesheet to use instead of the built-in one.")
    p.add_argument("--out-dir", type=Path, help="Directory for generated PDFs.")
    p.add_argument("--converter", choices=["weasyprint", "reportlab", "command"], help="PDF backend.")
    p.add_argument("--converter-command", type=str, help='HTML-to-PDF command, called as "<cmd> in.html out.pdf".')
    p.add_argument("--keep-html", action="store_true", help="Also keep the generated HTML beside each PDF.")
    p.add_argument("--clean-output", action="store_true", help="Empty the output directory before rendering.")
    p.add_argument("--interactive", action="store_true", help="Prompt when several services or plans match.")
    p.add_argument("--token-cache", type=Path, help="JSON file to cache the API token between runs.")
    p.add_argument("--dump-plan", type=Path, help="Write the fetched plan JSON to this path.")
    p.add_argument("--load-plan", type=Path, help="Render from a plan JSON file instead of the API.")
    p.add_argument("--no-status-messages", dest="status_messages", action="store_false", help="Silence [status] lines.")
    return p


def parse_effective_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    bootstrap = argparse.ArgumentParser(add_help=False)
    bootstrap.add_argument("--config", type=Path)
    bootstrap_ns, _ = bootstrap.parse_known_args(argv)

    cfg = _coerce_config_values(load_config_file(bootstrap_ns.config))

    parser = _build_cli_parser()
    cli_ns = parser.parse_args(argv)
    cli_values = _coerce_config_values(vars(cli_ns))
    cli_values.pop("config", None)
    env_values = load_env_values()
    env_settings = _coerce_config_values({ENV_KEYS[k]: v for k, v in env_values.items() if k in ENV_KEYS and v != ""})

    merged: Dict[str, Any] = dict(DEFAULTS)
    merged.update(env_settings)
    merged.update(cfg)
    merged.update(cli_values)

    if not merged.get("load_plan"):
        missing = [k for k in ("api_base", "username", "password") if not merged.get(k)]
        if missing:
            msg = ", ".join(missing)
            raise SystemExit(f"Missing required options (CLI, config or environment): {msg}")

    return argparse.Namespace(**merged)


def build_settings(ns: argparse.Namespace) -> Settings:
    """
    Freeze the merged options. Timezones and the service weekday are resolved
    here so a bad identifier stops the run before any network call.
    """
    if ns.local_timezone:
        local_zone = resolve_zone(ns.local_timezone)
    else:
        warn("no local timezone override (TIMEZONE); using the system zone")
        local_zone = system_zone()
    if ns.timezone:
        display_zone = resolve_zone(ns.timezone)
    else:
        warn("no plan display timezone configured; using the local zone for the service start")
        display_zone = local_zone

    return Settings(
        api_base=str(ns.api_base or "").rstrip("/"),
        username=str(ns.username or ""),
        password=str(ns.password or ""),
        service_id=str(ns.service_id or ""),
        plan_id=str(ns.plan_id or ""),
        service_day=parse_weekday(ns.service_day),
        reference_date=ns.date,
        statuses=tuple(ns.statuses or ()),
        display_zone=display_zone,
        local_zone=local_zone,
        profiles=ns.profiles,
        profiles_file=ns.profiles_file,
        css=ns.css,
        out_dir=ns.out_dir,
        converter=str(ns.converter or "weasyprint"),
        converter_command=str(ns.converter_command or ""),
        keep_html=bool(ns.keep_html),
        clean_output=bool(ns.clean_output),
        interactive=bool(ns.interactive),
        token_cache=ns.token_cache,
        dump_plan=ns.dump_plan,
        load_plan=ns.load_plan,
        status_messages=bool(ns.status_messages),
    )


def load_settings(argv: Optional[list[str]] = None) -> Settings:
    return build_settings(parse_effective_args(argv))
