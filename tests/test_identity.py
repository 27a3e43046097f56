"""
Tests for actor normalization and privilege checks
"""

import pytest

from credit_engine.exceptions import PrivilegeError
from credit_engine.identity import SYSTEM_ACTOR, Actor, Role


class TestFromClaims:
    """Role and user aliases"""

    def test_rol_id_numeric(self):
        actor = Actor.from_claims({"rol_id": 0, "usuario_id": 12})
        assert actor.role == Role.SUPERADMIN
        assert actor.user_id == "12"

    def test_nested_user(self):
        actor = Actor.from_claims({"user": {"roleId": "1", "id": 7}})
        assert actor.role == Role.ADMIN
        assert actor.user_id == "7"

    def test_role_names(self):
        assert Actor.from_claims({"rol": "cobrador"}).role == Role.COLLECTOR
        assert Actor.from_claims({"role": "Administrador"}).role == Role.ADMIN
        assert Actor.from_claims({"role": "super_admin"}).role == Role.SUPERADMIN

    def test_first_alias_wins(self):
        actor = Actor.from_claims({"rol_id": 2, "role": "superadmin"})
        assert actor.role == Role.COLLECTOR

    def test_unknown_role(self):
        assert Actor.from_claims({"role": 9}).role is None
        assert Actor.from_claims({"role": "guest"}).role is None

    def test_empty_claims(self):
        assert Actor.from_claims(None) == Actor()
        assert Actor.from_claims({}) == SYSTEM_ACTOR


class TestPrivileges:
    """Privilege checks"""

    def test_superadmin(self):
        actor = Actor("root", Role.SUPERADMIN)
        actor.require_superadmin("apply a discount")
        actor.require_privileged("discount a late fee")

    def test_admin(self):
        actor = Actor("adm", Role.ADMIN)
        actor.require_privileged("discount a late fee")
        with pytest.raises(PrivilegeError) as exc_info:
            actor.require_superadmin("apply a discount")
        assert exc_info.value.user_id == "adm"

    @pytest.mark.parametrize("actor", [Actor("u1", Role.COLLECTOR), SYSTEM_ACTOR])
    def test_unprivileged(self, actor):
        assert actor.is_privileged is False
        with pytest.raises(PrivilegeError):
            actor.require_privileged("refinance with a manual rate")
