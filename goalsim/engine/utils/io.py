"""Helper di I/O per configurazioni YAML ed export degli artefatti.

Le funzioni restano minimali: creano le directory mancanti, ripuliscono i
nomi di file derivati dagli identificativi degli obiettivi, leggono YAML e
serializzano JSON in modo deterministico.
"""

from __future__ import annotations

import json
import re
from pathlib import Path

import yaml

__all__ = [
    "ensure_dir",
    "safe_path_segment",
    "read_yaml",
    "write_json",
]

# Caratteri non ammessi nei nomi di file sui principali filesystem.
INVALID_FS_CHARS = r'[<>:"/\\|?*\x00-\x1F]'


def ensure_dir(path: Path | str) -> Path:
    """Garantisce l'esistenza del percorso e lo restituisce come :class:`Path`."""

    path_obj = Path(path)
    path_obj.mkdir(parents=True, exist_ok=True)
    return path_obj


def safe_path_segment(name: str) -> str:
    """Restituisce ``name`` ripulito dai caratteri non ammessi dal filesystem."""

    safe = re.sub(INVALID_FS_CHARS, "-", str(name))
    return safe.rstrip(" .")


def read_yaml(path: Path | str) -> object:
    """Legge un file YAML e restituisce l'oggetto Python corrispondente."""

    with Path(path).open("r", encoding="utf-8") as handle:
        return yaml.safe_load(handle)


def write_json(data: object, path: Path | str, *, indent: int = 2) -> Path:
    """Serializza ``data`` in JSON terminando il file con un newline."""

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    with target.open("w", encoding="utf-8") as handle:
        json.dump(data, handle, indent=indent, sort_keys=True, default=str)
        handle.write("\n")
    return target
