"""
Markdown Directory Loader
--------------------------
Walks a docs tree of .md / .mdx chapters and yields one record per file.

  - Optional YAML front matter supplies the title (``title`` or
    ``sidebar_label``); all other keys pass through as extra metadata.
  - Without front matter the first ``# `` heading is the title.
  - The section hierarchy is the relative path, e.g.
    ``module-1/intro-to-ros.md`` -> ``("module-1", "intro-to-ros")``.
"""
from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Iterator, Mapping

import yaml
from loguru import logger

from bookrag.loading.base_loader import DocumentLoader

_FRONT_MATTER_RE = re.compile(r"\A---[ \t]*\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n|\Z)", re.DOTALL)
_H1_RE = re.compile(r"^#[ \t]+(.+?)[ \t#]*$", re.MULTILINE)

DEFAULT_PATTERNS = ("**/*.md", "**/*.mdx")


def split_front_matter(text: str) -> tuple[dict[str, Any], str]:
    """Return (front_matter, body).  Malformed front matter is left in the body."""
    match = _FRONT_MATTER_RE.match(text)
    if not match:
        return {}, text
    try:
        data = yaml.safe_load(match.group(1)) or {}
    except yaml.YAMLError as exc:
        logger.warning(f"[MarkdownLoader] Ignoring malformed front matter: {exc}")
        return {}, text
    if not isinstance(data, dict):
        return {}, text
    return data, text[match.end():]


class MarkdownDirectoryLoader(DocumentLoader):
    """Loads every Markdown chapter under ``root``, in sorted path order."""

    def __init__(self, root: str | Path, patterns: tuple[str, ...] | list[str] = DEFAULT_PATTERNS) -> None:
        super().__init__()
        self.root = Path(root)
        if not self.root.is_dir():
            raise FileNotFoundError(f"Docs directory not found: {self.root}")
        self.patterns = tuple(patterns)

    def iter_records(self) -> Iterator[Mapping[str, Any]]:
        paths = sorted({p for pattern in self.patterns for p in self.root.glob(pattern) if p.is_file()})
        logger.info(f"[MarkdownLoader] {len(paths)} file(s) under {self.root}")

        for path in paths:
            try:
                text = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                self.error_count += 1
                logger.warning(f"[MarkdownLoader] Cannot read {path}: {exc}")
                continue
            yield self._to_record(path, text)

    def _to_record(self, path: Path, text: str) -> dict[str, Any]:
        front_matter, body = split_front_matter(text)
        title = front_matter.pop("title", None) or front_matter.pop("sidebar_label", None)
        if not title:
            h1 = _H1_RE.search(body)
            title = h1.group(1).strip() if h1 else None

        rel = path.relative_to(self.root)
        return {
            "raw_text": body,
            "title": title,
            "source_path": rel.as_posix(),
            "section_hierarchy": [*rel.parent.parts, rel.stem],
            "extra_metadata": {k: v for k, v in front_matter.items() if isinstance(v, (str, int, float, bool))},
        }
