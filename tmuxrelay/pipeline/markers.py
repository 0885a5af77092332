"""Structured request markers embedded in assistant output.

A marker is a single bracketed line fragment::

    [SKILL_REQUEST: source="github:owner/repo" scope="project"]

Field values are double-quoted and cannot contain quotes, brackets or
newlines. Anything that does not follow that grammar is ignored.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

_FIELD = r'[A-Za-z_][A-Za-z0-9_]*="[^"\]\n]*"'
_MARKER_RE = re.compile(
    r"\[(?P<keyword>[A-Z][A-Z0-9_]*):(?P<fields>(?:[ \t]+" + _FIELD + r")+)[ \t]*\]"
)
_FIELD_RE = re.compile(r'([A-Za-z_][A-Za-z0-9_]*)="([^"\]\n]*)"')

_FILE_EDIT_RE = re.compile(r"(?:Edit|Write)\s*\(\s*[\"']?([^\"'\s,)]+)")


@dataclass
class SideChannelRequest:
    """A request marker found in a conversation's output."""

    keyword: str
    fields: Dict[str, str] = field(default_factory=dict)
    raw: str = ""
    conversation_id: str = ""

    @property
    def source(self) -> str:
        """Identity used to deduplicate prompts for the same request."""
        return self.fields.get("source") or self.raw


def find_requests(
    text: str,
    keywords: Optional[Iterable[str]] = None,
    conversation_id: str = "",
) -> List[SideChannelRequest]:
    """Return every well-formed marker in ``text``, in order of appearance.

    ``keywords`` limits the result to the given marker keywords; an empty or
    missing filter accepts all of them.
    """
    if not text:
        return []

    accepted = set(keywords) if keywords else None
    requests: List[SideChannelRequest] = []
    for match in _MARKER_RE.finditer(text):
        keyword = match.group("keyword")
        if accepted is not None and keyword not in accepted:
            continue
        requests.append(
            SideChannelRequest(
                keyword=keyword,
                fields=dict(_FIELD_RE.findall(match.group("fields"))),
                raw=match.group(0),
                conversation_id=conversation_id,
            )
        )
    return requests


def detect_file_edits(text: str) -> List[str]:
    """Return unique file paths touched by Edit/Write calls, first-seen order."""
    seen: List[str] = []
    for match in _FILE_EDIT_RE.finditer(text or ""):
        path = match.group(1)
        if path not in seen:
            seen.append(path)
    return seen
