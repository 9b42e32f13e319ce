"""Tests for day-clear detection.

Covers:
- a slot freed under the viewer's pre-reservation notifies exactly once
- no notification when the viewer vacated the slot themselves
- overlapping sweeps share one notified-days set
- windowed passes keep history outside their window
"""

from __future__ import annotations

from datetime import date, datetime, timezone

from roomcal.domain.day_clear import DayClearDetector, format_clear_message
from roomcal.domain.ranges import DateWindow, month_window

from helpers import FakeWallClock, make_reservation

D10 = date(2025, 6, 10)
SLOT = "room 1|2025-06-10"


def _occupied_then_cleared():
    before = [
        make_reservation("p1", author="bob", status="pre"),
        make_reservation("c1", author="carol", status="confirmed"),
    ]
    after = [
        make_reservation("p1", author="bob", status="pre"),
        make_reservation("c1", author="carol", status="pre"),
    ]
    return before, after


class TestDetection:
    """Occupied -> free transitions under the viewer's pre-reservation."""

    def test_clearing_notifies_pre_holder(self):
        before, after = _occupied_then_cleared()
        clock = FakeWallClock(datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc))
        detector = DayClearDetector("bob", clock=clock)

        assert detector.process(before) == []
        [notification] = detector.process(after)

        assert notification.room == "room 1"
        assert notification.day_key == "2025-06-10"
        assert notification.date_iso == "2025-06-10T00:00:00.000Z"
        assert notification.id == f"{SLOT}|{int(clock.now.timestamp() * 1000)}"
        assert notification.message == "room 1: 10/06/2025 is now free"
        assert notification.source == "client"
        assert SLOT in detector.notified_days

    def test_username_match_is_case_insensitive(self):
        before, after = _occupied_then_cleared()
        detector = DayClearDetector("BOB")
        detector.process(before)
        assert len(detector.process(after)) == 1

    def test_first_pass_never_notifies(self):
        _, after = _occupied_then_cleared()
        assert DayClearDetector("bob").process(after) == []

    def test_other_users_are_not_notified(self):
        before, after = _occupied_then_cleared()
        detector = DayClearDetector("dave")
        detector.process(before)
        assert detector.process(after) == []

    def test_repeated_pass_is_idempotent(self):
        before, after = _occupied_then_cleared()
        detector = DayClearDetector("bob")
        detector.process(before)
        assert len(detector.process(after)) == 1
        assert detector.process(after) == []
        assert detector.process(after) == []

    def test_deleted_occupant_counts_as_cleared(self):
        before, _ = _occupied_then_cleared()
        detector = DayClearDetector("bob")
        detector.process(before)
        assert len(detector.process([make_reservation("p1", author="bob")])) == 1

    def test_blank_username_never_notifies(self):
        before, after = _occupied_then_cleared()
        detector = DayClearDetector("")
        detector.process(before)
        assert detector.process(after) == []


class TestSelfVacate:
    """The viewer's own confirmed record leaving the slot."""

    def test_own_confirmation_reverted_does_not_notify(self):
        before = [
            make_reservation("p1", author="bob", status="pre", dates=[D10]),
            make_reservation("c1", author="Bob", status="confirmed", dates=[D10]),
        ]
        after = [
            make_reservation("p1", author="bob", status="pre", dates=[D10]),
            make_reservation("c1", author="bob", status="pre", dates=[D10]),
        ]
        detector = DayClearDetector("bob")
        detector.process(before)
        assert detector.process(after) == []
        assert SLOT not in detector.notified_days

    def test_later_clearing_by_someone_else_still_notifies(self):
        mine = make_reservation("p1", author="bob", status="pre")
        detector = DayClearDetector("bob")
        detector.process([mine, make_reservation("c1", author="bob", status="confirmed")])
        detector.process([mine, make_reservation("c1", author="bob", status="pre")])

        detector.process([mine, make_reservation("c2", author="carol", status="confirmed")])
        assert len(detector.process([mine])) == 1


class TestSharedState:
    """Several fetch sources feeding one detector."""

    def test_overlapping_sweeps_notify_once(self):
        before, after = _occupied_then_cleared()
        detector = DayClearDetector("bob")
        month = month_window(2025, 6)
        wide = DateWindow(date(2025, 5, 1), date(2025, 7, 31))

        detector.process(before, month)
        detector.process(before, wide)
        first = detector.process(after, wide)
        second = detector.process(after, month)

        assert len(first) == 1
        assert second == []
        assert [n.slot for n in first] == [SLOT]

    def test_windowed_pass_keeps_outside_history(self):
        before, after = _occupied_then_cleared()
        detector = DayClearDetector("bob")
        detector.process(before, month_window(2025, 6))

        # A sweep over July sees nothing but must not erase June's state.
        detector.process([], month_window(2025, 7))
        assert SLOT in detector.previous_occupied

        assert len(detector.process(after, month_window(2025, 6))) == 1

    def test_narrow_pass_ignores_days_outside_its_window(self):
        # bob's pre spans June 30 and July 1; carol holds July 1.
        july_1 = "room 1|2025-07-01"
        bob_pre = make_reservation(
            "p1", author="bob", status="pre", dates=[date(2025, 6, 30), date(2025, 7, 1)]
        )
        carol = make_reservation("c1", author="carol", status="confirmed", dates=[date(2025, 7, 1)])
        carol_freed = make_reservation("c1", author="carol", status="pre", dates=[date(2025, 7, 1)])
        detector = DayClearDetector("bob")

        detector.process([bob_pre, carol], month_window(2025, 7))
        # A June fetch omits carol: July 1 is outside the window and unknown.
        assert detector.process([bob_pre], month_window(2025, 6)) == []
        assert july_1 in detector.previous_occupied
        assert july_1 not in detector.notified_days

        cleared = detector.process([bob_pre, carol_freed], month_window(2025, 7))
        assert [n.slot for n in cleared] == [july_1]

    def test_unwindowed_pass_replaces_everything(self):
        before, _ = _occupied_then_cleared()
        detector = DayClearDetector("bob")
        detector.process(before)
        detector.process([])
        assert detector.previous_occupied == frozenset()

    def test_seeded_keys_suppress_notification(self):
        before, after = _occupied_then_cleared()
        detector = DayClearDetector("bob", seen_keys=[SLOT])
        detector.process(before)
        assert detector.process(after) == []

    def test_mark_notified_reports_first_time_only(self):
        detector = DayClearDetector("bob")
        assert detector.mark_notified(SLOT)
        assert not detector.mark_notified(SLOT)

    def test_reset_clears_state_and_switches_user(self):
        before, after = _occupied_then_cleared()
        detector = DayClearDetector("bob")
        detector.process(before)
        detector.mark_notified("room 2|2025-06-10")

        detector.reset("carol")

        assert detector.username == "carol"
        assert detector.notified_days == frozenset()
        assert detector.previous_occupied == frozenset()


class TestMessageTemplate:
    def test_custom_template(self):
        assert format_clear_message("{room} {year}-{month}-{day}", "room 3", "2025-06-09") == "room 3 2025-6-9"

    def test_broken_template_falls_back(self):
        message = format_clear_message("{missing} is free", "room 3", "2025-06-09")
        assert message == "room 3: 09/06/2025 is now free"
