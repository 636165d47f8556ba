from __future__ import annotations

import importlib.util
import json
import subprocess
import sys
from pathlib import Path

import pytest


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

PLAN_FILE = ROOT / "tests" / "test_payloads" / "plan_sunday.json"


def _load_tool(name: str):
    spec = importlib.util.spec_from_file_location(f"tool_{name}", ROOT / "tools" / f"{name}.py")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_print_plan_cli_renders_offline_with_command_converter(tmp_path: Path):
    out_dir = tmp_path / "out"
    copy_cmd = f'{sys.executable} -c "import shutil, sys; shutil.copy(sys.argv[1], sys.argv[2])"'
    cmd = [
        sys.executable,
        str(ROOT / "print_plan.py"),
        "--load-plan",
        str(PLAN_FILE),
        "--out-dir",
        str(out_dir),
        "--timezone",
        "America/Chicago",
        "--local-timezone",
        "America/Chicago",
        "--profiles",
        json.dumps([{"name": "Stage", "teams": ["Band", "Sound & Lights"]}, {"name": "Empty", "teams": []}]),
        "--converter",
        "command",
        "--converter-command",
        copy_cmd,
        "--keep-html",
    ]
    p = subprocess.run(cmd, check=True, cwd=str(tmp_path), capture_output=True, text=True)

    pdfs = sorted(out_dir.glob("Stage_Sunday-Morning_*.pdf"))
    assert len(pdfs) == 1
    # The copy command leaves the HTML in place of a real PDF.
    assert "<td class=\"time\">09:05" in pdfs[0].read_text(encoding="utf-8")
    assert pdfs[0].with_suffix(".html").exists()
    assert "Wrote 1 plansheet(s)" in p.stdout
    assert "profile 'Empty' has no teams" in p.stderr


def test_print_plan_cli_exits_nonzero_on_bad_timezone(tmp_path: Path):
    cmd = [
        sys.executable,
        str(ROOT / "print_plan.py"),
        "--load-plan",
        str(PLAN_FILE),
        "--timezone",
        "Atlantis/Central",
        "--out-dir",
        str(tmp_path / "out"),
    ]
    p = subprocess.run(cmd, cwd=str(tmp_path), capture_output=True, text=True)

    assert p.returncode != 0
    assert "Atlantis/Central" in p.stderr


def test_dump_plan_tool_writes_plan_json(tmp_path: Path, monkeypatch, capsys):
    src = pytest.importorskip("plan_source")
    cfg = pytest.importorskip("plansheet_config")
    for key in cfg.ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)
    plan = json.loads(PLAN_FILE.read_text(encoding="utf-8"))

    def _fake_http(url, method="GET", payload=None, headers=None):
        if url.endswith("/auth/token"):
            return {"access_token": "tok", "expires_in": 600}
        if url.endswith("/plans/pl-1042"):
            return plan
        raise AssertionError(f"Unexpected url: {url}")

    monkeypatch.setattr(src, "_http_json", _fake_http)
    out = tmp_path / "dumps" / "plan.json"
    monkeypatch.setattr(
        sys,
        "argv",
        [
            "dump_plan.py",
            "--out",
            str(out),
            "--api-base",
            "https://api.example.org/v1",
            "--username",
            "ops",
            "--password",
            "pw",
            "--plan-id",
            "pl-1042",
            "--timezone",
            "America/Chicago",
            "--local-timezone",
            "America/Chicago",
            "--no-status-messages",
        ],
    )

    _load_tool("dump_plan").main()

    saved = json.loads(out.read_text(encoding="utf-8"))
    assert saved["plan_id"] == "pl-1042"
    assert saved["plan"] == plan
    assert "teams: Band, Sound & Lights, Video" in capsys.readouterr().out
