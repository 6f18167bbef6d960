from __future__ import annotations

from pathlib import Path

import pytest

from primcorresp.cli import HARDCODED_DEFAULTS, _load_config_with_defaults, _parse_cli_override
from primcorresp.config import load_config

ROOT = Path(__file__).resolve().parents[1]


def test_default_config_matches_hardcoded_defaults() -> None:
    cfg = load_config(str(ROOT / "configs" / "default.yaml"))
    assert cfg == HARDCODED_DEFAULTS


def test_missing_config_raises(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError, match="Konfiguration nicht gefunden"):
        load_config(str(tmp_path / "nope.yaml"))


def test_empty_config_is_empty_mapping(tmp_path: Path) -> None:
    path = tmp_path / "empty.yaml"
    path.write_text("", encoding="utf-8")
    assert load_config(str(path)) == {}


def test_config_root_must_be_mapping(tmp_path: Path) -> None:
    path = tmp_path / "list.yaml"
    path.write_text("- 1\n- 2\n", encoding="utf-8")
    with pytest.raises(ValueError, match="Mapping"):
        load_config(str(path))


def test_file_values_and_overrides_are_merged(tmp_path: Path) -> None:
    path = tmp_path / "cfg.yaml"
    path.write_text("correspondence:\n  cost: angle\nextent:\n  threshold: 0.2\n", encoding="utf-8")

    cfg = _load_config_with_defaults(path, ["extent.stretch=1.5", "correspondence.backup=false"])

    assert cfg["correspondence"]["cost"] == "angle"
    assert cfg["correspondence"]["method"] == "greedy"
    assert cfg["correspondence"]["backup"] is False
    assert cfg["extent"] == {"threshold": 0.2, "max_iters": 10, "stretch": 1.5}
    assert HARDCODED_DEFAULTS["extent"]["threshold"] == 0.01


def test_parse_cli_override() -> None:
    assert _parse_cli_override("extent.max_iters=4") == (("extent", "max_iters"), 4)
    assert _parse_cli_override("io.primitive_kind = plane") == (("io", "primitive_kind"), "plane")
    with pytest.raises(ValueError):
        _parse_cli_override("extent.threshold")
    with pytest.raises(ValueError):
        _parse_cli_override("=3")
