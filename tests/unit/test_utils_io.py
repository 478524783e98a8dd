from datetime import date
from pathlib import Path

from goalsim.engine.utils import read_yaml, write_json
from goalsim.engine.utils.io import ensure_dir, safe_path_segment


def test_read_yaml_parses_mapping(tmp_path: Path) -> None:
    target = tmp_path / "cfg.yml"
    target.write_text("b: 2\na: [1, 2]\n", encoding="utf-8")
    assert read_yaml(target) == {"a": [1, 2], "b": 2}


def test_write_json_serialises_dates(tmp_path: Path) -> None:
    target = write_json({"when": date(2026, 10, 18)}, tmp_path / "out.json")
    assert '"when": "2026-10-18"' in target.read_text(encoding="utf-8")


def test_safe_path_segment_replaces_invalid_characters(tmp_path: Path) -> None:
    unsafe = "goal:42/retire"
    safe = safe_path_segment(unsafe)
    assert ":" not in safe and "/" not in safe
    assert safe == "goal-42-retire"

    created = ensure_dir(tmp_path / safe)
    assert created.exists()
    assert created.name == safe
