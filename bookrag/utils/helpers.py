"""Small text and file helpers shared by the loader, the index and the CLI."""
from __future__ import annotations

import os
import re
import tempfile
from pathlib import Path
from typing import Any

import orjson

_NON_SLUG = re.compile(r"[^a-z0-9]+")
_WHITESPACE = re.compile(r"\s+")


def slugify(value: str) -> str:
    """'Intro to ROS 2' -> 'intro-to-ros-2'. Underscores count as separators."""
    return _NON_SLUG.sub("-", value.lower()).strip("-")


def truncate_text(text: str, max_chars: int = 300) -> str:
    """Single-line preview of `text`, cut on a word boundary where one exists."""
    text = _WHITESPACE.sub(" ", text).strip()
    if len(text) <= max_chars:
        return text
    cut = text[: max_chars - 1]
    if " " in cut:
        cut = cut.rsplit(" ", 1)[0]
    return cut.rstrip() + "…"


def save_json(data: Any, path: str | Path) -> None:
    """
    Write `data` as indented JSON, replacing `path` atomically.

    The temporary file lives in the target directory so `os.replace` never
    crosses a filesystem; a crash mid-write leaves the previous file intact.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(orjson.dumps(data, option=orjson.OPT_INDENT_2 | orjson.OPT_NON_STR_KEYS))
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def load_json(path: str | Path) -> Any:
    with open(path, "rb") as f:
        return orjson.loads(f.read())
