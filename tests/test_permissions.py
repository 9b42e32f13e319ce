"""Tests for edit/delete permission rules."""

from __future__ import annotations

import pytest

from roomcal.domain.models import SessionUser
from roomcal.domain.permissions import (
    PermissionDeniedError,
    can_delete,
    can_edit,
    require_delete,
    require_edit,
)

from helpers import make_reservation


class TestPermissions:
    def test_admin_acts_on_anything(self):
        admin = SessionUser("root", role="admin")
        res = make_reservation("r1", author="carol")
        assert can_edit(admin, res)
        assert can_delete(admin, res)
        require_edit(admin, res, admin_notes=True)

    def test_staff_only_own_case_insensitive(self):
        res = make_reservation("r1", author="Carol")
        assert can_edit(SessionUser("carol"), res)
        assert not can_edit(SessionUser("bob"), res)
        assert not can_delete(SessionUser("bob"), res)

    def test_require_delete_raises(self):
        with pytest.raises(PermissionDeniedError) as exc_info:
            require_delete(SessionUser("bob"), make_reservation("r1", author="carol"))
        assert exc_info.value.action == "delete"
        assert exc_info.value.reservation_id == "r1"

    def test_admin_notes_are_admin_only(self):
        res = make_reservation("r1", author="bob")
        require_edit(SessionUser("bob"), res)
        with pytest.raises(PermissionDeniedError):
            require_edit(SessionUser("bob"), res, admin_notes=True)
