from __future__ import annotations

import json
import tomllib
from pathlib import Path
from typing import List, Optional, Sequence, Union

from plansheet_core import (
    ORIENTATIONS,
    InvalidProfileConfig,
    NoProfilesResolved,
    Profile,
    clean_text,
)

FALLBACK_PROFILE_NAME = "All Teams"


def _profile_from_row(row: object, where: str) -> Profile:
    if not isinstance(row, dict):
        raise InvalidProfileConfig(f"{where}: each profile must be an object with name/teams/orientation")
    name = clean_text(row.get("name"))
    if not name:
        raise InvalidProfileConfig(f"{where}: profile has no name")

    teams_raw = row.get("teams", [])
    if teams_raw is None:
        teams_raw = []
    if not isinstance(teams_raw, list) or not all(isinstance(t, str) for t in teams_raw):
        raise InvalidProfileConfig(f"{where}: profile {name!r} 'teams' must be a list of strings")
    teams = tuple(clean_text(t) for t in teams_raw if clean_text(t))

    orientation = clean_text(row.get("orientation") or "landscape").lower()
    if orientation not in ORIENTATIONS:
        raise InvalidProfileConfig(f"{where}: profile {name!r} has orientation {orientation!r}; use portrait or landscape")
    return Profile(name=name, teams=teams, orientation=orientation)


def parse_profiles(data: object, where: str) -> List[Profile]:
    if isinstance(data, dict) and "profiles" in data:
        data = data["profiles"]
    if not isinstance(data, list):
        raise InvalidProfileConfig(f"{where}: profiles must be a list")
    return [_profile_from_row(row, where) for row in data]


def load_profiles_file(path: Path) -> List[Profile]:
    if not path.exists() or not path.is_file():
        raise InvalidProfileConfig(f"Profiles file not found: {path}")
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise InvalidProfileConfig(f"Profiles file {path} is unreadable: {exc}") from exc

    suffix = path.suffix.lower()
    try:
        if suffix == ".json":
            data = json.loads(raw)
        elif suffix in (".toml", ".tml"):
            data = tomllib.loads(raw)
        else:
            raise InvalidProfileConfig(f"Unsupported profiles format: {path}. Use .json or .toml")
    except (ValueError, tomllib.TOMLDecodeError) as exc:
        raise InvalidProfileConfig(f"Profiles file {path} could not be parsed: {exc}") from exc
    return parse_profiles(data, str(path))


def resolve_profiles(
    inline: Union[str, list, None],
    profiles_file: Optional[Path],
    plan_teams: Sequence[str],
) -> List[Profile]:
    """
    Profiles to render, highest precedence first:
    inline value (JSON text or an already-parsed list), then a profiles file,
    then a single landscape "All Teams" profile over the plan's own teams.
    """
    if isinstance(inline, str) and inline.strip():
        try:
            data = json.loads(inline)
        except ValueError as exc:
            raise InvalidProfileConfig(f"Inline profiles are not valid JSON: {exc}") from exc
        profiles = parse_profiles(data, "inline profiles")
    elif isinstance(inline, (list, dict)):
        profiles = parse_profiles(inline, "inline profiles")
    elif profiles_file:
        profiles = load_profiles_file(profiles_file)
    else:
        profiles = [Profile(name=FALLBACK_PROFILE_NAME, teams=tuple(plan_teams), orientation="landscape")]

    if not profiles:
        raise NoProfilesResolved("No profiles resolved; supply at least one profile")
    return profiles
