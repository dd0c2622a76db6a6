"""Tests for change-feed consumption."""

import pytest

from syncs.lib.delta import DeltaReconciler
from syncs.lib.errors import TokenExpiredError
from syncs.lib.models import ChangeRecord, ChangeTokenWatermark, FetchKind, Page


def upsert(entity_id):
    return ChangeRecord.upsert(entity_id, {"id": entity_id})


class TestDeltaReconciler:
    """Tests for DeltaReconciler.fetch_delta."""

    def test_single_page_feed(self, page_source, sleeps):
        """Changes are followed by a checkpoint carrying the new token."""
        page_source.add_pages("cal", Page(items=[upsert("a"), ChangeRecord.delete("b")], sync_token="T2"), kind=FetchKind.DELTA)
        items = list(DeltaReconciler(page_source, "cal", sleep=sleeps).fetch_delta("T1"))

        assert [i.record.entity_id for i in items if i.record] == ["a", "b"]
        assert items[1].record.is_tombstone
        assert items[-1].record is None
        assert items[-1].position == ChangeTokenWatermark("T2")

    def test_passes_token_in_delta_mode(self, page_source, sleeps):
        """Every page request carries the stored token."""
        page_source.add_pages("cal", Page(items=[], next_cursor="p2"), Page(items=[], sync_token="T2"))
        list(DeltaReconciler(page_source, "cal", sleep=sleeps).fetch_delta("T1"))
        assert [(c, m.kind, m.token) for _, c, m in page_source.calls] == [
            (None, FetchKind.DELTA, "T1"),
            ("p2", FetchKind.DELTA, "T1"),
        ]

    def test_positions_carry_page_cursor(self, page_source, sleeps):
        """Records resume from the cursor of the page they came from."""
        page_source.add_pages(
            "cal",
            Page(items=[upsert("a")], next_cursor="p2"),
            Page(items=[upsert("b")], sync_token="T2"),
        )
        items = list(DeltaReconciler(page_source, "cal", sleep=sleeps).fetch_delta("T1"))
        assert [i.position for i in items] == [
            ChangeTokenWatermark("T1", None),
            ChangeTokenWatermark("T1", "p2"),
            ChangeTokenWatermark("T2", None),
        ]

    def test_resume_cursor(self, page_source, sleeps):
        """A resume cursor re-reads from that page."""
        page_source.add_pages(
            "cal",
            Page(items=[upsert("a")], next_cursor="p2"),
            Page(items=[upsert("b")], sync_token="T2"),
        )
        items = list(DeltaReconciler(page_source, "cal", sleep=sleeps).fetch_delta("T1", resume_cursor="p2"))
        assert [i.record.entity_id for i in items if i.record] == ["b"]
        assert page_source.calls[0][1] == "p2"

    def test_missing_sync_token_keeps_current(self, page_source, sleeps):
        """A feed that ends without a new token keeps the old one."""
        page_source.add_pages("cal", Page(items=[upsert("a")]))
        items = list(DeltaReconciler(page_source, "cal", sleep=sleeps).fetch_delta("T1"))
        assert items[-1].position == ChangeTokenWatermark("T1")

    def test_empty_delta(self, page_source, sleeps):
        """No changes still yields the checkpoint."""
        page_source.add_pages("cal", Page(items=[], sync_token="T2"))
        items = list(DeltaReconciler(page_source, "cal", sleep=sleeps).fetch_delta("T1"))
        assert len(items) == 1
        assert items[0].position.token == "T2"

    def test_token_expired_propagates(self, page_source, sleeps):
        """An expired token is left for the caller to handle."""
        page_source.fail("cal", TokenExpiredError(), kind=FetchKind.DELTA)
        with pytest.raises(TokenExpiredError):
            list(DeltaReconciler(page_source, "cal", sleep=sleeps).fetch_delta("T1"))
        assert len(page_source.calls) == 1
