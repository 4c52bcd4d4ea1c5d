from __future__ import annotations
import json
from pathlib import Path
from typing import Any, Union

from scraper.config import OUTPUT_ROOT
from scraper.utils import slugify


def ensure_session_dirs(session_id: str, root: Path | None = None) -> dict[str, Path]:
    """
    Ensure output folders exist for a given scraping session.
    Returns a mapping for the base, towns, logs and checkpoints subfolders.
    """
    base = (root or OUTPUT_ROOT) / str(session_id)
    dirs = {
        "base": base,
        "towns": base / "towns",
        "logs": base / "logs",
        "checkpoints": base / "checkpoints",
    }
    for d in dirs.values():
        d.mkdir(parents=True, exist_ok=True)
    return dirs


def town_filename(town: str, ext: str = ".csv") -> str:
    return f"{slugify(town)}{ext}"


def save_session_output(
    session_id: str,
    name: str,
    data: Union[str, dict[str, Any], list[Any]],
    *,
    root: Path | None = None,
    encoding: str = "utf-8",
) -> Path:
    """
    Save a text or JSON artifact into outputs/{session_id}/{name}.
    Dicts and lists are written as indented JSON.
    """
    dirs = ensure_session_dirs(session_id, root)
    out_path = dirs["base"] / name
    with open(out_path, "w", encoding=encoding) as f:
        if isinstance(data, (dict, list)):
            json.dump(data, f, ensure_ascii=False, indent=2)
        else:
            f.write(str(data))
    return out_path
