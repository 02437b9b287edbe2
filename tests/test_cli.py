from __future__ import annotations

import json
import textwrap
from pathlib import Path

from typer.testing import CliRunner

from closure_capture import cli

runner = CliRunner()

ITEM = textwrap.dedent(
    """
    from closure_capture import closure, with_closure


    @with_closure
    def outer(a):
        return closure("clone a")(lambda: a)
    """
).lstrip("\n")

BROKEN = textwrap.dedent(
    """
    @with_closure
    def outer(a):
        return closure("copy a")(lambda: a)
    """
).lstrip("\n")


def _write(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


def test_explain_lists_directives() -> None:
    result = runner.invoke(cli.app, ["explain", "clone a, fail(0) b, ref mut c"])
    assert result.exit_code == 0
    assert "a: clone" in result.stdout
    assert "b: fail (fallback 0) [weak]" in result.stdout
    assert "c: ref mut [mut]" in result.stdout


def test_explain_json() -> None:
    result = runner.invoke(cli.app, ["explain", "weak owner", "--json"])
    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["directives"] == [
        {"mode": "weak", "name": "owner", "fallback": None, "weak": True, "mutable": False}
    ]
    assert payload["errors"] == []


def test_explain_reports_errors() -> None:
    result = runner.invoke(cli.app, ["explain", "clone a b", "--json"])
    assert result.exit_code == 1
    payload = json.loads(result.stdout)
    assert payload["errors"][0]["message"] == "expected `,`"
    assert payload["errors"][0]["span"]["column"] == 8


def test_rewrite_prints_single_file(tmp_path: Path) -> None:
    target = _write(tmp_path / "item.py", ITEM)
    result = runner.invoke(cli.app, ["rewrite", str(target), "--root", str(tmp_path)])
    assert result.exit_code == 0
    assert "import closure_capture as _closure_capture" in result.stdout
    assert target.read_text(encoding="utf-8") == ITEM


def test_rewrite_write_updates_files(tmp_path: Path) -> None:
    target = _write(tmp_path / "item.py", ITEM)
    result = runner.invoke(
        cli.app, ["rewrite", str(tmp_path), "--write", "--json", "--root", str(tmp_path)]
    )
    assert result.exit_code == 0
    report = json.loads(result.stdout)
    assert report["changed"] == 1
    assert report["files"][0]["written"] is True
    assert "@with_closure" not in target.read_text(encoding="utf-8")


def test_rewrite_check_fails_on_pending_changes(tmp_path: Path) -> None:
    _write(tmp_path / "item.py", ITEM)
    result = runner.invoke(
        cli.app, ["rewrite", str(tmp_path), "--check", "--json", "--root", str(tmp_path)]
    )
    assert result.exit_code == 1
    report = json.loads(result.stdout)
    assert report["exit_code"] == 1
    assert report["files"][0]["written"] is False


def test_rewrite_reports_diagnostics(tmp_path: Path) -> None:
    target = _write(tmp_path / "broken.py", BROKEN)
    result = runner.invoke(
        cli.app, ["rewrite", str(target), "--json", "--root", str(tmp_path)]
    )
    assert result.exit_code == 1
    report = json.loads(result.stdout)
    (diagnostic,) = report["files"][0]["diagnostics"]
    assert diagnostic["message"].endswith("(2)")
    assert diagnostic["span"]["line"] == 3


def test_rewrite_honours_config_and_exclude(tmp_path: Path) -> None:
    _write(tmp_path / "closure_capture.toml", "[rewrite]\nruntime_alias = \"_cc\"\nexclude = [\"skip_*.py\"]\n")
    target = _write(tmp_path / "item.py", ITEM)
    _write(tmp_path / "skip_me.py", BROKEN)
    result = runner.invoke(
        cli.app, ["rewrite", str(tmp_path), "--write", "--json", "--root", str(tmp_path)]
    )
    assert result.exit_code == 0
    report = json.loads(result.stdout)
    assert [Path(entry["path"]).name for entry in report["files"]] == ["item.py"]
    assert "import closure_capture as _cc" in target.read_text(encoding="utf-8")


def test_cli_options_override_config(tmp_path: Path) -> None:
    _write(tmp_path / "closure_capture.toml", "[rewrite]\nruntime_alias = \"_cc\"\n")
    target = _write(tmp_path / "item.py", ITEM)
    result = runner.invoke(
        cli.app,
        ["rewrite", str(target), "--root", str(tmp_path), "--runtime-alias", "_rt"],
    )
    assert result.exit_code == 0
    assert "import closure_capture as _rt" in result.stdout
