"""Local file paths mentioned in an agent reply.

Grammar, applied per token::

    token     := run of characters other than whitespace, '`', "'" and '"'
    candidate := ROOT CHAR+ "." EXT    (longest such prefix of the token,
                                        starting at the earliest ROOT)
    ROOT      := one of the configured roots, "/Users/", "/tmp/", "~/" by default
    EXT       := a known extension, matched case-insensitively

A candidate counts only if the path it names exists on disk after ``~``
expansion.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from pathlib import Path

from pydantic import BaseModel, ConfigDict

DEFAULT_ROOTS = ("/Users/", "/tmp/", "~/")
IMAGE_EXTENSIONS = ("jpg", "jpeg", "png", "gif", "webp")
FILE_EXTENSIONS = (
    "pdf", "docx", "doc", "xlsx", "xls", "pptx", "ppt",
    "zip", "rar", "7z", "tar", "gz", "txt", "csv",
    "mp3", "mp4", "mov", "avi", "mkv", "wav", "flac", "aac",
)  # fmt: skip

_QUOTES = frozenset("`'\"")


class ReplyPath(BaseModel):
    model_config = ConfigDict(frozen=True)

    raw: str
    resolved: str


def tokenize(text: str) -> list[str]:
    tokens: list[str] = []
    current: list[str] = []
    for ch in text:
        if ch.isspace() or ch in _QUOTES:
            if current:
                tokens.append("".join(current))
                current = []
        else:
            current.append(ch)
    if current:
        tokens.append("".join(current))
    return tokens


def match_candidate(
    token: str, roots: Iterable[str], extensions: Iterable[str]
) -> str | None:
    """Return the path-shaped prefix of ``token``, or None."""
    start = -1
    root_len = 0
    for root in roots:
        pos = token.find(root)
        if pos >= 0 and (start < 0 or pos < start):
            start, root_len = pos, len(root)
    if start < 0:
        return None

    tail = token[start:]
    lowered = tail.lower()
    by_length = sorted(extensions, key=len, reverse=True)
    dot = lowered.rfind(".")
    # At least one character must sit between the root and the dot.
    while dot > root_len:
        after = lowered[dot + 1 :]
        for ext in by_length:
            if after.startswith(ext):
                return tail[: dot + 1 + len(ext)]
        dot = lowered.rfind(".", 0, dot)
    return None


class ReplyPathExtractor:
    def __init__(self, roots: Sequence[str] = DEFAULT_ROOTS) -> None:
        self.roots = tuple(roots)

    def extract(self, text: str, extensions: Sequence[str]) -> list[ReplyPath]:
        found: list[ReplyPath] = []
        seen: set[str] = set()
        for token in tokenize(text):
            raw = match_candidate(token, self.roots, extensions)
            if raw is None:
                continue
            resolved = str(Path(raw).expanduser())
            if resolved in seen or not Path(resolved).exists():
                continue
            seen.add(resolved)
            found.append(ReplyPath(raw=raw, resolved=resolved))
        return found

    def image_paths(self, text: str) -> list[ReplyPath]:
        return self.extract(text, IMAGE_EXTENSIONS)

    def file_paths(self, text: str) -> list[ReplyPath]:
        return self.extract(text, FILE_EXTENSIONS)


def replace_paths(text: str, paths: Iterable[ReplyPath], placeholder: str) -> str:
    """Swap each mentioned path for ``placeholder`` and unwrap backticked placeholders."""
    for path in paths:
        text = text.replace(path.raw, placeholder)
    return text.replace(f"`{placeholder}`", placeholder).strip()
