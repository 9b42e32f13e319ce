"""Tests for the local reservation store."""

from __future__ import annotations

from datetime import date

from roomcal.domain.models import ReservationStatus
from roomcal.domain.ranges import month_window
from roomcal.sync.store import ReservationStore

from helpers import make_reservation


class TestReservationStore:
    def test_replace_all_sets_window(self):
        store = ReservationStore()
        store.replace_all([make_reservation("r1"), make_reservation("r2")], month_window(2025, 6))
        assert len(store) == 2
        assert "r1" in store
        assert store.window == month_window(2025, 6)

    def test_apply_and_restore(self):
        store = ReservationStore()
        original = make_reservation("r1")
        store.replace_all([original], None)

        previous = store.apply(original.with_status(ReservationStatus.CONFIRMED))
        assert store.get("r1").is_occupying
        store.restore("r1", previous)
        assert store.get("r1") == original

    def test_restore_of_new_record_removes_it(self):
        store = ReservationStore()
        previous = store.apply(make_reservation("r9"))
        store.restore("r9", previous)
        assert "r9" not in store

    def test_version_tracks_changes(self):
        store = ReservationStore()
        start = store.version
        store.apply(make_reservation("r1"))
        store.remove("r1")
        store.remove("r1")
        assert store.version == start + 2

    def test_on_day(self):
        store = ReservationStore()
        store.replace_all([
            make_reservation("a", dates=[date(2025, 6, 10), date(2025, 6, 11)]),
            make_reservation("b", room="room 2", dates=[date(2025, 6, 10)]),
        ], None)
        assert [r.id for r in store.on_day("room 1", date(2025, 6, 11))] == ["a"]
        store.clear()
        assert store.all() == []
        assert store.window is None
