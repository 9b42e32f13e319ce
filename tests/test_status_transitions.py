"""Tests for optimistic status transitions and rollback."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from roomcal.domain.models import ReservationStatus
from roomcal.domain.occupancy import occupying_conflicts
from roomcal.domain.status_transitions import (
    CONFLICT_MESSAGE,
    FAILURE_MESSAGE,
    InvalidTransitionError,
    StatusTransitionEngine,
    TransitionOutcome,
    check_transition,
)
from roomcal.infra.repository_client import RepositoryError
from roomcal.sync.store import ReservationStore

from helpers import api_client, make_reservation, reservation_payload

PRE = ReservationStatus.PRE
CONFIRMED = ReservationStatus.CONFIRMED
FLAGGED = ReservationStatus.FLAGGED


def _store(*reservations):
    store = ReservationStore()
    store.replace_all(reservations, None)
    return store


class TestCheckTransition:
    @pytest.mark.parametrize("current,requested", [
        (PRE, CONFIRMED),
        (CONFIRMED, FLAGGED),
        (FLAGGED, CONFIRMED),
        (CONFIRMED, PRE),
        (FLAGGED, PRE),
        (PRE, PRE),
    ])
    def test_allowed(self, current, requested):
        check_transition(current, requested)

    def test_pre_cannot_jump_to_flagged(self):
        with pytest.raises(InvalidTransitionError):
            check_transition(PRE, FLAGGED)


class TestServerConflict:
    """pre -> confirmed rejected by the server with 409."""

    def test_conflict_rolls_back_and_reports(self, backend):
        # The server knows about c1; the local view does not.
        backend.add(reservation_payload("c1", author="carol", status="confirmed"))
        backend.add(reservation_payload("p1", author="bob", status="pre"))
        store = _store(make_reservation("p1", author="bob", status="pre"))
        resync = AsyncMock()

        async def scenario():
            async with api_client(backend.app) as client:
                engine = StatusTransitionEngine(client, store, resync)
                return await engine.change_status("p1", CONFIRMED)

        result = asyncio.run(scenario())

        assert result.outcome is TransitionOutcome.CONFLICT
        assert result.message == CONFLICT_MESSAGE
        assert not result.ok
        assert store.get("p1").is_pre
        assert backend.reservations["p1"]["reservationStatus"] == "pre"
        resync.assert_not_awaited()

    def test_no_double_occupancy_after_rollback(self, backend):
        backend.add(reservation_payload("c1", author="carol", status="confirmed"))
        backend.add(reservation_payload("p1", author="bob", status="pre"))
        store = _store(make_reservation("p1", author="bob", status="pre"))

        async def scenario():
            async with api_client(backend.app) as client:
                engine = StatusTransitionEngine(client, store, AsyncMock())
                await engine.change_status("p1", CONFIRMED)
                return await client.fetch_range(store.get("p1").dates[0], store.get("p1").dates[0])

        server_view = asyncio.run(scenario())
        assert occupying_conflicts(server_view) == {}
        assert occupying_conflicts(store.all()) == {}


class TestLocalConflict:
    def test_known_occupant_blocks_without_request(self, backend):
        store = _store(
            make_reservation("c1", author="carol", status="confirmed"),
            make_reservation("p1", author="bob", status="pre"),
        )

        async def scenario():
            async with api_client(backend.app) as client:
                engine = StatusTransitionEngine(client, store, AsyncMock())
                return await engine.change_status("p1", CONFIRMED)

        result = asyncio.run(scenario())
        assert result.outcome is TransitionOutcome.CONFLICT
        assert store.get("p1").is_pre
        assert backend.requests == []


class TestApplied:
    def test_success_resyncs_with_optimistic_record(self, backend):
        backend.add(reservation_payload("p1", author="bob", status="pre"))
        store = _store(make_reservation("p1", author="bob", status="pre"))
        resync = AsyncMock()

        async def scenario():
            async with api_client(backend.app) as client:
                engine = StatusTransitionEngine(client, store, resync)
                return await engine.change_status("p1", CONFIRMED)

        result = asyncio.run(scenario())
        assert result.outcome is TransitionOutcome.APPLIED
        assert result.ok
        assert store.get("p1").is_occupying
        assert backend.reservations["p1"]["reservationStatus"] == "confirmed"
        resync.assert_awaited_once()
        assert resync.await_args.args[0].reservation_status is CONFIRMED

    def test_resync_failure_does_not_undo_success(self, backend):
        backend.add(reservation_payload("c1", author="bob", status="confirmed"))
        store = _store(make_reservation("c1", author="bob", status="confirmed"))
        resync = AsyncMock(side_effect=RepositoryError("down", status_code=503))

        async def scenario():
            async with api_client(backend.app) as client:
                engine = StatusTransitionEngine(client, store, resync)
                return await engine.change_status("c1", PRE)

        result = asyncio.run(scenario())
        assert result.outcome is TransitionOutcome.APPLIED
        assert store.get("c1").is_pre

    def test_same_status_is_unchanged(self, backend):
        store = _store(make_reservation("c1", status="confirmed"))

        async def scenario():
            async with api_client(backend.app) as client:
                engine = StatusTransitionEngine(client, store, AsyncMock())
                return await engine.change_status("c1", CONFIRMED)

        result = asyncio.run(scenario())
        assert result.outcome is TransitionOutcome.UNCHANGED
        assert backend.requests == []

    def test_server_failure_rolls_back(self, backend):
        backend.add(reservation_payload("c1", status="confirmed"))
        backend.fail_next(500)
        store = _store(make_reservation("c1", status="confirmed"))

        async def scenario():
            async with api_client(backend.app) as client:
                engine = StatusTransitionEngine(client, store, AsyncMock())
                return await engine.change_status("c1", FLAGGED)

        result = asyncio.run(scenario())
        assert result.outcome is TransitionOutcome.FAILED
        assert result.message == FAILURE_MESSAGE
        assert store.get("c1").reservation_status is CONFIRMED

    def test_unknown_reservation(self, backend):
        async def scenario():
            async with api_client(backend.app) as client:
                engine = StatusTransitionEngine(client, ReservationStore(), AsyncMock())
                await engine.change_status("missing", CONFIRMED)

        with pytest.raises(KeyError):
            asyncio.run(scenario())


class TestToggleFlag:
    def test_flag_and_unflag(self, backend):
        backend.add(reservation_payload("c1", status="confirmed"))
        store = _store(make_reservation("c1", status="confirmed"))

        async def scenario():
            async with api_client(backend.app) as client:
                engine = StatusTransitionEngine(client, store, AsyncMock())
                flagged = await engine.toggle_flag("c1", True)
                unflagged = await engine.toggle_flag("c1", False)
                return flagged, unflagged

        flagged, unflagged = asyncio.run(scenario())
        assert flagged.reservation.reservation_status is FLAGGED
        assert unflagged.reservation.reservation_status is CONFIRMED

    def test_pre_cannot_be_flagged_or_unflagged(self, backend):
        store = _store(make_reservation("p1", status="pre"))

        async def scenario():
            async with api_client(backend.app) as client:
                engine = StatusTransitionEngine(client, store, AsyncMock())
                with pytest.raises(InvalidTransitionError):
                    await engine.toggle_flag("p1", True)
                with pytest.raises(InvalidTransitionError):
                    await engine.toggle_flag("p1", False)

        asyncio.run(scenario())
        assert backend.requests == []
