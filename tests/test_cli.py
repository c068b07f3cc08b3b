from __future__ import annotations

import json
from pathlib import Path

import httpx
import pytest

from panelforge import cli
from panelforge.service import PanelService
from panelforge.storage import PanelStore
from tests.fakes import FakeRuntime, ModelRouter, make_panel


@pytest.fixture
def cli_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    cfg_path = tmp_path / "panelforge.yaml"
    cfg_path.write_text(
        "completions:\n"
        "  url: http://llm.test/v1/chat/completions\n"
        "thinker:\n"
        "  model: thinker-model\n"
        "  system_prompt: ''\n"
        "renderer:\n"
        "  model: renderer-model\n"
        "  system_prompt: ''\n"
        f"storage:\n  data_dir: {tmp_path / 'data'}\n"
    )
    monkeypatch.setenv("PANELFORGE_CONFIG", str(cfg_path))
    monkeypatch.setattr(cli, "configure_logging", lambda *args, **kwargs: None)
    return cfg_path


def _route_models(monkeypatch: pytest.MonkeyPatch, router: ModelRouter) -> FakeRuntime:
    runtime = FakeRuntime()
    original = PanelService.from_settings

    def from_settings(cls, settings, **kwargs):
        return original(settings, runtime=runtime, transport=httpx.MockTransport(router))

    monkeypatch.setattr(PanelService, "from_settings", classmethod(from_settings))
    return runtime


def test_add_streams_content_and_lists_applet(cli_env: Path, monkeypatch: pytest.MonkeyPatch, capsys) -> None:
    _route_models(monkeypatch, ModelRouter({"id": "clock", "title": "Clock", "alpha": "A clock"}))

    assert cli.main(["--config", str(cli_env), "add", "make me a clock"]) == 0
    out = capsys.readouterr().out
    assert "<html><body>hi</body></html>" in out
    assert json.loads(out.strip().splitlines()[-1]) == {"panel": "clock", "type": "build", "title": "Clock"}

    assert cli.main(["list"]) == 0
    listed = [json.loads(line) for line in capsys.readouterr().out.splitlines()]
    assert listed[0]["caption"] == "Clock"
    applet_id = listed[0]["id"]

    assert cli.main(["open", applet_id]) == 0
    view = json.loads(capsys.readouterr().out)
    assert view["kind"] == "artifact"

    assert cli.main(["delete", applet_id]) == 0
    assert json.loads(capsys.readouterr().out) == {"success": True}


def test_enhance_unknown_panel_exits_non_zero(cli_env: Path, monkeypatch: pytest.MonkeyPatch, capsys) -> None:
    _route_models(monkeypatch, ModelRouter({"id": "clock"}))

    assert cli.main(["enhance", "ghost", "make it blue"]) == 1
    assert "error" in json.loads(capsys.readouterr().out)


def test_open_missing_applet_reports_error(cli_env: Path) -> None:
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["open", "123"])
    assert "not found" in str(excinfo.value.code)


def test_failed_thinking_exits_with_message(cli_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _route_models(monkeypatch, ModelRouter("not json at all"))

    with pytest.raises(SystemExit) as excinfo:
        cli.main(["add", "anything"])
    assert "not valid JSON" in str(excinfo.value.code)


def test_available_then_import_stored_panel(cli_env: Path, capsys) -> None:
    PanelStore(cli_env.parent / "data").save_panel(make_panel("notes", title="Notes"))

    assert cli.main(["available"]) == 0
    listed = [json.loads(line) for line in capsys.readouterr().out.splitlines()]
    assert listed == [{"id": "notes", "name": "Notes", "description": "No description available", "type": "build"}]

    assert cli.main(["import", "notes"]) == 0
    imported = json.loads(capsys.readouterr().out)
    assert imported["applet"]["caption"] == "Notes"

    assert cli.main(["available"]) == 0
    assert capsys.readouterr().out == ""

    assert cli.main(["import", "notes"]) == 1
    assert json.loads(capsys.readouterr().out) == {"error": "Panel is already used in an applet"}
