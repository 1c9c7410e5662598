"""Tests for IncrementalPlanner decisions."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

from hybridrag.indexer.planner import IncrementalPlanner
from hybridrag.models import Ingest, Reingest, Skip, SourceRecord, SourceType

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _prior(content_hash: str = "abc", modified=T0, complete: bool = True) -> SourceRecord:
    return SourceRecord(origin="/a.md", source_type=SourceType.FILE, content_hash=content_hash,
                        file_modified_at=modified, complete=complete, document_count=2)


class TestIncrementalPlanner:
    """Tests for the ingest/skip/reingest decision."""

    def test_new_origin_is_ingested(self):
        assert IncrementalPlanner().plan("/a.md", None, content_hash="abc") == Ingest()

    def test_same_hash_is_skipped(self):
        d = IncrementalPlanner().plan("/a.md", _prior(), content_hash="abc", modified_at=T0 + timedelta(1))
        assert d == Skip("unchanged")

    def test_changed_hash_reingests_with_old_ids(self):
        d = IncrementalPlanner().plan(
            "/a.md", _prior(), content_hash="def", modified_at=T0 + timedelta(1), old_ids=("i0", "i1")
        )
        assert d == Reingest(("i0", "i1"))

    def test_force_reingests_even_if_unchanged(self):
        d = IncrementalPlanner().plan("/a.md", _prior(), content_hash="abc", modified_at=T0, force=True)
        assert isinstance(d, Reingest)

    def test_incomplete_prior_is_reingested(self):
        """A source with failed embeddings is retried on the next run."""
        d = IncrementalPlanner().plan("/a.md", _prior(complete=False), content_hash="abc", modified_at=T0)
        assert isinstance(d, Reingest)

    def test_equal_mtime_skips_without_hashing(self):
        hasher = Mock(return_value="abc")
        d = IncrementalPlanner().plan("/a.md", _prior(), content_hash=hasher, modified_at=T0)
        assert d == Skip("unchanged")
        hasher.assert_not_called()

    def test_newer_mtime_hashes_lazily(self):
        hasher = Mock(return_value="zzz")
        d = IncrementalPlanner().plan("/a.md", _prior(), content_hash=hasher, modified_at=T0 + timedelta(1))
        assert isinstance(d, Reingest)
        hasher.assert_called_once()

    def test_touched_but_identical_is_skipped(self):
        """Hash is authoritative: a newer mtime with the same bytes is still a skip."""
        hasher = Mock(return_value="abc")
        d = IncrementalPlanner().plan("/a.md", _prior(), content_hash=hasher, modified_at=T0 + timedelta(1))
        assert d == Skip("unchanged")

    def test_no_mtime_compares_hash(self):
        """URLs and free text have no mtime; only the hash decides."""
        planner = IncrementalPlanner()
        assert planner.plan("u", _prior(modified=None), content_hash="abc") == Skip("unchanged")
        assert isinstance(planner.plan("u", _prior(modified=None), content_hash="new"), Reingest)
