from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel


def compact_json(obj: Any) -> str:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)


def model_to_line(model: BaseModel) -> str:
    """Serialize a model as one JSON line using its wire aliases."""
    payload = model.model_dump(mode="json", by_alias=True, exclude_none=True)
    return compact_json(payload) + "\n"


def write_json_atomic(path: Path, data: Any) -> None:
    """Write JSON to a sibling temp file, then rename it over ``path``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
    os.replace(tmp_path, path)


def count_lines(path: Path) -> int:
    """Count newline-terminated lines; unreadable files count as empty."""
    count = 0
    try:
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(65536), b""):
                count += chunk.count(b"\n")
    except OSError:
        return 0
    return count
