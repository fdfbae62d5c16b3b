#!/usr/bin/env python3
"""Tests for provider authorisations and roles."""

import pytest

from oracle_router.errors import PreconditionViolation
from oracle_router.router.registry import (
    ADMIN_ROLE,
    AuthorizationRegistry,
    AuthorizationState,
    RoleRegistry,
    RoleState,
)

CONSUMER = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"
PROVIDER = "0xfB6916095ca1df60bB79Ce92cE3Ea74c37c5d359"


@pytest.fixture
def registry():
    return AuthorizationRegistry(AuthorizationState())


class TestAuthorizationRegistry:

    def test_grant_and_revoke(self, registry):
        assert not registry.is_authorized(CONSUMER, PROVIDER)
        registry.grant(CONSUMER, PROVIDER)
        assert registry.is_authorized(CONSUMER, PROVIDER)
        registry.revoke(CONSUMER, PROVIDER)
        assert not registry.is_authorized(CONSUMER, PROVIDER)

    def test_idempotent(self, registry):
        registry.grant(CONSUMER, PROVIDER)
        registry.grant(CONSUMER, PROVIDER)
        assert len(registry.state.authorised) == 1
        registry.revoke(CONSUMER, PROVIDER)
        registry.revoke(CONSUMER, PROVIDER)
        assert registry.state.authorised == set()

    def test_address_case_insensitive(self, registry):
        registry.grant(CONSUMER.lower(), PROVIDER.lower())
        assert registry.is_authorized(CONSUMER, PROVIDER)

    def test_authorisation_is_directional(self, registry):
        registry.grant(CONSUMER, PROVIDER)
        assert not registry.is_authorized(PROVIDER, CONSUMER)


class TestRoleRegistry:

    def test_require_role(self):
        roles = RoleRegistry(RoleState())
        roles.grant_role(ADMIN_ROLE, CONSUMER)

        roles.require_role(ADMIN_ROLE, CONSUMER, "not admin")
        with pytest.raises(PreconditionViolation, match="not admin"):
            roles.require_role(ADMIN_ROLE, PROVIDER, "not admin")

    def test_revoke_role(self):
        roles = RoleRegistry(RoleState())
        roles.grant_role(ADMIN_ROLE, CONSUMER)
        roles.revoke_role(ADMIN_ROLE, CONSUMER)
        assert not roles.has_role(ADMIN_ROLE, CONSUMER)
