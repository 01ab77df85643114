"""Hashtag extraction for entry titles and bodies."""

import re
import unicodedata
from typing import Iterable, Optional

MAX_TAG_LENGTH = 50

_TAG_PATTERN = re.compile(r"#[^\s#]+")


def normalize_tag(tag: str) -> str:
    return tag.strip().lower()


def _sanitize(tag: str) -> str:
    return "".join(c for c in tag.strip() if unicodedata.category(c) != "Cc")


def extract_tags(texts: Iterable[Optional[str]]) -> list[str]:
    """Return ``#tags`` found in ``texts`` in first-seen order.

    Duplicates are dropped case-insensitively, control characters removed,
    and tags longer than MAX_TAG_LENGTH ignored.
    """
    combined = "\n".join(t for t in texts if t)
    seen: set[str] = set()
    tags: list[str] = []
    for match in _TAG_PATTERN.finditer(combined):
        tag = _sanitize(match.group(0).replace("#", ""))
        key = normalize_tag(tag)
        if not tag or not key or len(tag) > MAX_TAG_LENGTH:
            continue
        if key not in seen:
            seen.add(key)
            tags.append(tag)
    return tags
