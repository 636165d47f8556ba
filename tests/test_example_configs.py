from __future__ import annotations

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

cfg = pytest.importorskip("plansheet_config")
ps = pytest.importorskip("profile_store")


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path: Path, monkeypatch):
    for key in cfg.ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)


def test_example_weekly_toml_parses():
    path = ROOT / "examples" / "weekly.toml"
    args = cfg.parse_effective_args(["--config", str(path), "--username", "ops", "--password", "pw"])

    assert args.api_base == "https://content.example.org/api/v1"
    assert args.statuses == ["published", "draft"]
    assert args.profiles_file == Path("examples/profiles.json")
    assert args.keep_html is True
    assert args.clean_output is True
    assert args.token_cache == Path("cache/token.json")


def test_example_inline_profiles_toml_parses():
    path = ROOT / "examples" / "inline_profiles.toml"
    settings = cfg.load_settings(["--config", str(path)])

    assert settings.load_plan == Path("tests/test_payloads/plan_sunday.json")
    assert settings.converter == "reportlab"
    profiles = ps.resolve_profiles(settings.profiles, settings.profiles_file, ())
    assert [(p.name, p.orientation) for p in profiles] == [("Stage", "portrait"), ("Broadcast", "landscape")]


def test_example_profiles_json_resolves():
    profiles = ps.load_profiles_file(ROOT / "examples" / "profiles.json")

    assert [p.name for p in profiles] == ["Production", "Band", "Hosts"]
    assert profiles[2].teams == ("Video", "Band")
    assert profiles[2].orientation == "landscape"
