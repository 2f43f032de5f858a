"""Text and JSON file I/O with consistent encoding (UTF-8)."""

from __future__ import annotations

import json
from io import TextIOWrapper
from pathlib import Path
from typing import Any

PathLike = Path | str


def read_text(path: PathLike, errors: str = "strict", **kwargs: Any) -> str:
    """Read path as text with UTF-8 encoding."""
    p = path if isinstance(path, Path) else Path(path)
    return p.read_text(encoding="utf-8", errors=errors, **kwargs)


def write_text(path: PathLike, text: str, **kwargs: Any) -> None:
    """Write text to path with UTF-8 encoding."""
    p = path if isinstance(path, Path) else Path(path)
    p.write_text(text, encoding="utf-8", **kwargs)


def open_text(
    path: PathLike,
    mode: str = "r",
    *,
    encoding: str = "utf-8",
    errors: str = "strict",
    **kwargs: Any,
) -> TextIOWrapper:
    """Open path for text I/O with UTF-8 by default. Use for append/write (e.g. log files)."""
    return open(path, mode, encoding=encoding, errors=errors, **kwargs)


def read_json(path: PathLike) -> Any:
    return json.loads(read_text(path))


def write_json_exclusive(path: Path, data: Any) -> None:
    """Write *data* as JSON to *path*, failing with ``FileExistsError`` if it exists."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open_text(path, "x") as f:
        json.dump(data, f, indent=2)
        f.write("\n")


def write_json(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    write_text(path, json.dumps(data, indent=2) + "\n")
