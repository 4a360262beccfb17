"""
Tests for task identities and fingerprints (issues_loop/identity.py).
"""

import hashlib
import re

import pytest

from issues_loop.identity import normalize_text, task_fingerprint, task_uid, wisp_id


class TestNormalizeText:
    """Tests for normalize_text."""

    def test_lowercases_trims_and_collapses(self):
        """Case, edges and inner whitespace runs are normalized."""
        assert normalize_text("  Add   Retry\tLogic \n") == "add retry logic"

    def test_empty_stays_empty(self):
        assert normalize_text("   ") == ""


class TestTaskUid:
    """Tests for task_uid."""

    def test_format(self):
        """uids are tsk_ followed by 12 lowercase hex characters."""
        uid = task_uid(42, "Add retry logic", None, 1)
        assert re.fullmatch(r"tsk_[0-9a-f]{12}", uid)

    def test_matches_documented_hash_input(self):
        """uid is the sha256 prefix of scope|title|parent|ordinal."""
        expected = hashlib.sha256(b"42|add retry logic|null|1").hexdigest()[:12]
        assert task_uid(42, "Add Retry  Logic", None, 1) == "tsk_" + expected

    def test_deterministic(self):
        """Same inputs yield the same uid."""
        assert task_uid(7, "Title", "tsk_aaa111", 2) == task_uid(7, "Title", "tsk_aaa111", 2)

    def test_normalization_insensitive(self):
        """Case and whitespace differences do not change the uid."""
        assert task_uid(7, "  Fix   THE bug ", None, 1) == task_uid(7, "fix the bug", None, 1)

    def test_ordinal_disambiguates(self):
        """Equal titles under one parent differ by ordinal."""
        assert task_uid(7, "Title", "tsk_p", 1) != task_uid(7, "Title", "tsk_p", 2)

    def test_parent_and_scope_matter(self):
        base = task_uid(7, "Title", None, 1)
        assert task_uid(8, "Title", None, 1) != base
        assert task_uid(7, "Title", "tsk_aaa111", 1) != base

    def test_empty_parent_treated_as_null(self):
        assert task_uid(7, "Title", "", 1) == task_uid(7, "Title", None, 1)

    def test_rejects_ordinal_below_one(self):
        with pytest.raises(ValueError):
            task_uid(7, "Title", None, 0)


class TestTaskFingerprint:
    """Tests for task_fingerprint."""

    def test_format(self):
        fp = task_fingerprint("Title", "Desc", ["a", "b"], "tsk_aaa111")
        assert re.fullmatch(r"[0-9a-f]{12}", fp)

    def test_matches_documented_hash_input(self):
        expected = hashlib.sha256(b"title|desc|a,b|tsk_aaa111").hexdigest()[:12]
        assert task_fingerprint(" Title ", "DESC", ["a", "b"], "tsk_aaa111") == expected

    def test_content_differences_change_fingerprint(self):
        """Same title with different criteria is a different task."""
        assert task_fingerprint("T", "d", ["x"], "p") != task_fingerprint("T", "d", ["y"], "p")
        assert task_fingerprint("T", "d1", [], "p") != task_fingerprint("T", "d2", [], "p")

    def test_parent_scoped(self):
        assert task_fingerprint("T", "d", [], "p1") != task_fingerprint("T", "d", [], "p2")

    def test_normalized(self):
        assert task_fingerprint("Add  Tests", " More ", ["A"], None) == \
            task_fingerprint("add tests", "more", ["a"], None)


class TestWispId:
    """Tests for wisp_id."""

    def test_format_and_determinism(self):
        first = wisp_id("tsk_aaa111", "note", "2026-01-01T00:00:00Z")
        assert re.fullmatch(r"wsp_[0-9a-f]{12}", first)
        assert first == wisp_id("tsk_aaa111", "note", "2026-01-01T00:00:00Z")
        assert first != wisp_id("tsk_aaa111", "note", "2026-01-01T00:00:01Z")
