"""
Deterministic identities for tasks.

Both functions here are pure: the same logical input always yields the same
token, across restarts and across document schema versions. That property
is what lets legacy documents be retrofitted with uids without creating
duplicates.
"""

from __future__ import annotations

import hashlib
import re
from typing import Iterable, Optional

UID_PREFIX = "tsk_"
WISP_PREFIX = "wsp_"
HASH_LENGTH = 12

_WHITESPACE_RE = re.compile(r"\s+")


def normalize_text(value: str) -> str:
    """Lowercase, trim, and collapse internal whitespace runs to one space."""
    return _WHITESPACE_RE.sub(" ", value.strip().lower())


def _short_hash(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:HASH_LENGTH]


def task_uid(
    scope: str | int,
    title: str,
    parent_uid: Optional[str],
    ordinal: int,
) -> str:
    """
    Compute a task's content-derived uid.

    Args:
        scope: Root scope identifier (the issue number).
        title: Task title; case and whitespace insensitive.
        parent_uid: uid of the discovering task, or None for planned tasks.
        ordinal: 1-based position within the parent's children. Callers
            supply it; it disambiguates equal titles under one parent.

    Returns:
        "tsk_" followed by 12 hex characters.
    """
    if ordinal < 1:
        raise ValueError(f"ordinal must be >= 1, got {ordinal}")

    parent = parent_uid if parent_uid else "null"
    payload = f"{scope}|{normalize_text(title)}|{parent}|{ordinal}"
    return UID_PREFIX + _short_hash(payload)


def task_fingerprint(
    title: str,
    description: str,
    criteria: Iterable[str],
    parent_uid: Optional[str],
) -> str:
    """
    Compute the dedup key for a discovered task candidate.

    Unlike task_uid this covers the full content, so two candidates with the
    same title but different requirements stay distinct.
    """
    joined_criteria = ",".join(criteria)
    payload = "|".join([
        normalize_text(title),
        normalize_text(description),
        normalize_text(joined_criteria),
        parent_uid if parent_uid else "null",
    ])
    return _short_hash(payload)


def wisp_id(task_uid: str, note: str, expires_at: str) -> str:
    """Identity embedded in a wisp payload, used to find its document later."""
    return WISP_PREFIX + _short_hash(f"{task_uid}|{note}|{expires_at}")
