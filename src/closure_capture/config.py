from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time
from pathlib import Path
from typing import TypeAlias
import tomllib

DEFAULT_CONFIG_NAME = "closure_capture.toml"
PYPROJECT_NAME = "pyproject.toml"
PYPROJECT_TOOL = "closure-capture"
DEFAULT_RUNTIME_ALIAS = "_closure_capture"

TomlScalar: TypeAlias = str | int | float | bool | None | date | datetime | time
TomlValue: TypeAlias = TomlScalar | list["TomlValue"] | dict[str, "TomlValue"]
TomlTable: TypeAlias = dict[str, TomlValue]


@dataclass
class RewriteConfig:
    runtime_alias: str = DEFAULT_RUNTIME_ALIAS
    require_marker: bool = True
    exclude: list[str] = field(default_factory=list)


def _load_toml(path: Path) -> TomlTable:
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError:
        return {}
    try:
        data = tomllib.loads(raw)
    except tomllib.TOMLDecodeError:
        return {}
    return data if isinstance(data, dict) else {}


def load_config(root: Path | None = None, config_path: Path | None = None) -> TomlTable:
    if config_path is not None:
        return _load_toml(config_path)
    base = root if root is not None else Path.cwd()
    dedicated = base / DEFAULT_CONFIG_NAME
    if dedicated.exists():
        return _load_toml(dedicated)
    tool = _load_toml(base / PYPROJECT_NAME).get("tool", {})
    if not isinstance(tool, dict):
        return {}
    section = tool.get(PYPROJECT_TOOL, {})
    return section if isinstance(section, dict) else {}


def rewrite_defaults(
    root: Path | None = None, config_path: Path | None = None
) -> TomlTable:
    data = load_config(root=root, config_path=config_path)
    section = data.get("rewrite", {})
    return section if isinstance(section, dict) else {}


def _normalize_name_list(value: TomlValue) -> list[str]:
    items: list[str] = []
    if value is None:
        return items
    if isinstance(value, str):
        items = [part.strip() for part in value.split(",") if part.strip()]
    elif isinstance(value, (list, tuple, set)):
        for item in value:
            if isinstance(item, str):
                items.extend([part.strip() for part in item.split(",") if part.strip()])
    return [item for item in items if item]


def _as_bool(value: TomlValue, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return default


def _as_identifier(value: TomlValue, default: str) -> str:
    if isinstance(value, str) and value.isidentifier():
        return value
    return default


def merge_payload(payload: TomlTable, defaults: TomlTable) -> TomlTable:
    merged = dict(defaults)
    for key, value in payload.items():
        if value is None:
            continue
        merged[key] = value
    return merged


def rewrite_config(section: TomlTable | None) -> RewriteConfig:
    if not isinstance(section, dict):
        return RewriteConfig()
    return RewriteConfig(
        runtime_alias=_as_identifier(section.get("runtime_alias"), DEFAULT_RUNTIME_ALIAS),
        require_marker=_as_bool(section.get("require_marker"), default=True),
        exclude=_normalize_name_list(section.get("exclude")),
    )
