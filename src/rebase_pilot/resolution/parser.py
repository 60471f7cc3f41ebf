"""Parse version-control conflict markers into structured regions."""

from __future__ import annotations

import re

from rebase_pilot.resolution.languages import classify_language
from rebase_pilot.resolution.models import Conflict, ConflictDocument

_START = re.compile(r"^<{7}(?:[ \t]+(?P<label>.*?))?\s*$")
_BASE = re.compile(r"^\|{7}(?:[ \t]+.*)?\s*$")
_SEPARATOR = re.compile(r"^={7}\s*$")
_END = re.compile(r"^>{7}(?:[ \t]+(?P<label>.*?))?\s*$")

_BINARY_NOTICE = re.compile(r"^Binary files .* differ$", re.MULTILINE)


class ConflictParseError(ValueError):
    """Conflict markers are malformed (unterminated or nested)."""


class ConflictParser:
    """Extract conflict regions from a text buffer containing conflict markers.

    Both the two-way (``<<<<<<< / ======= / >>>>>>>``) and the diff3 layout with a
    ``|||||||`` base section are understood. Binary content yields a single
    binary-flagged region that downstream code must never resolve textually.
    """

    def __init__(self, *, context_lines: int = 10) -> None:
        self.context_lines = max(0, context_lines)

    def parse(self, path: str, content: str | bytes) -> ConflictDocument:
        text = _decode(content)
        if text is None or _looks_binary(text):
            return binary_document(path)
        return self._parse_text(path, text)

    def parse_conflicts(self, path: str, content: str | bytes) -> list[Conflict]:
        return list(self.parse(path, content).conflicts)

    def _parse_text(self, path: str, text: str) -> ConflictDocument:  # noqa: C901
        language = classify_language(path)
        lines = text.splitlines(keepends=True)
        chunks: list[str] = []
        conflicts: list[Conflict] = []
        plain: list[str] = []

        index = 0
        while index < len(lines):
            start_match = _START.match(lines[index].rstrip("\r\n"))
            if start_match is None:
                plain.append(lines[index])
                index += 1
                continue

            start = index
            ours: list[str] = []
            base: list[str] | None = None
            theirs: list[str] = []
            section = "ours"
            end_label = ""
            index += 1
            while True:
                if index >= len(lines):
                    raise ConflictParseError(
                        f"{path}:{start + 1}: conflict region is not terminated",
                    )
                stripped = lines[index].rstrip("\r\n")
                if _START.match(stripped):
                    raise ConflictParseError(
                        f"{path}:{index + 1}: nested conflict marker inside region "
                        f"started at line {start + 1}",
                    )
                if section == "ours" and _BASE.match(stripped):
                    section = "base"
                    base = []
                elif section in {"ours", "base"} and _SEPARATOR.match(stripped):
                    section = "theirs"
                elif section == "theirs" and (end_match := _END.match(stripped)):
                    end_label = end_match.group("label") or ""
                    break
                elif section == "ours":
                    ours.append(lines[index])
                elif section == "base" and base is not None:
                    base.append(lines[index])
                elif section == "theirs":
                    theirs.append(lines[index])
                else:
                    raise ConflictParseError(
                        f"{path}:{index + 1}: unexpected conflict marker {stripped[:7]!r}",
                    )
                index += 1

            end = index
            chunks.append("".join(plain))
            plain = []
            conflicts.append(
                Conflict(
                    file_path=path,
                    index=len(conflicts),
                    ours="".join(ours),
                    theirs="".join(theirs),
                    base="".join(base) if base is not None else None,
                    language=language,
                    start_line=start + 1,
                    end_line=end + 1,
                    context_before=_context(lines[max(0, start - self.context_lines) : start]),
                    context_after=_context(lines[end + 1 : end + 1 + self.context_lines]),
                    ours_label=start_match.group("label") or "ours",
                    theirs_label=end_label or "theirs",
                ),
            )
            index = end + 1

        chunks.append("".join(plain))
        document = ConflictDocument(path=path, chunks=tuple(chunks), conflicts=tuple(conflicts))
        for conflict in conflicts:
            conflict.document = document
        return document


def binary_document(path: str) -> ConflictDocument:
    """Document holding one binary-flagged region for a binary conflicted file."""

    return _single_region(
        Conflict(
            file_path=path,
            index=0,
            ours="",
            theirs="",
            language="binary",
            start_line=0,
            end_line=0,
            binary=True,
        ),
    )


def manual_document(path: str, reason: str) -> ConflictDocument:
    """Document for an unmerged file without conflict markers to resolve.

    Modify/delete and rename conflicts leave such files behind; only a person
    can decide them.
    """

    return _single_region(
        Conflict(
            file_path=path,
            index=0,
            ours="",
            theirs="",
            language=classify_language(path),
            start_line=0,
            end_line=0,
            manual_reason=reason,
        ),
    )


def _single_region(conflict: Conflict) -> ConflictDocument:
    path = conflict.file_path
    document = ConflictDocument(path=path, chunks=("", ""), conflicts=(conflict,))
    conflict.document = document
    return document


def _decode(content: str | bytes) -> str | None:
    if isinstance(content, str):
        return content
    if b"\x00" in content:
        return None
    try:
        return content.decode("utf-8")
    except UnicodeDecodeError:
        return None


def _looks_binary(text: str) -> bool:
    return "\x00" in text or _BINARY_NOTICE.search(text) is not None and "<<<<<<<" not in text


def _context(lines: list[str]) -> tuple[str, ...]:
    return tuple(line.rstrip("\r\n") for line in lines)
