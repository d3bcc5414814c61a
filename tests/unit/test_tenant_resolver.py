"""
Unit tests for reqflow/middleware/tenant.py
"""

import uuid

import pytest

from reqflow.errors import NoOrganizationSelected
from reqflow.middleware.tenant import resolve_org_id

ORG_A = "a0000000-0000-0000-0000-000000000001"
ORG_B = "b0000000-0000-0000-0000-000000000002"


def test_header_wins_over_token_claim():
    user = {"user_id": "u1", "org_id": ORG_A}
    assert resolve_org_id(user, ORG_B) == uuid.UUID(ORG_B)


def test_token_claim_used_without_header():
    assert resolve_org_id({"user_id": "u1", "org_id": ORG_A}) == uuid.UUID(ORG_A)


def test_blank_header_falls_back_to_claim():
    assert resolve_org_id({"user_id": "u1", "org_id": ORG_A}, "   ") == uuid.UUID(ORG_A)


def test_no_header_and_no_claim():
    with pytest.raises(NoOrganizationSelected) as exc_info:
        resolve_org_id({"user_id": "u1", "org_id": None})
    assert exc_info.value.http_status == 400
    assert exc_info.value.code == "NO_ORGANIZATION_SELECTED"


def test_malformed_org_id_is_not_selected():
    with pytest.raises(NoOrganizationSelected):
        resolve_org_id({"user_id": "u1"}, "not-a-uuid")
