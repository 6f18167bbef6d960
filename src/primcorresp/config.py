from __future__ import annotations

from pathlib import Path
from typing import Any, Dict

import yaml


def load_config(path: str) -> Dict[str, Any]:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Konfiguration nicht gefunden: {p}")
    loaded = yaml.safe_load(p.read_text(encoding="utf-8"))
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ValueError(f"Konfiguration {p}: Wurzel muss ein Mapping sein")
    return loaded
