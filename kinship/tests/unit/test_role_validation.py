from __future__ import annotations

import pytest

from kinship.core.errors import ValidationError
from kinship.domain.vocab import PRIVILEGE_TYPES, SPECIAL_PERMISSIONS
from kinship.services.roles import (
    validate_description,
    validate_entity_privileges,
    validate_name,
    validate_special_permissions,
)


def test_entity_privileges_fill_missing_privileges_with_none() -> None:
    # Partial entries are normalized to the full privilege vocabulary.
    normalized = validate_entity_privileges(
        [{"entity_type": "event", "privileges": {"read": "tenant", "write": "owner"}}]
    )
    assert len(normalized) == 1
    privileges = normalized[0]["privileges"]
    assert set(privileges) == set(PRIVILEGE_TYPES)
    assert privileges["read"] == "tenant"
    assert privileges["write"] == "owner"
    assert privileges["delete"] == "none"


def test_entity_privileges_none_means_empty() -> None:
    assert validate_entity_privileges(None) == []


@pytest.mark.parametrize(
    "entries",
    [
        [{"entity_type": "spaceship", "privileges": {}}],
        [{"privileges": {"read": "tenant"}}],
        [{"entity_type": "event", "privileges": {"teleport": "tenant"}}],
        [{"entity_type": "event", "privileges": {"read": "galaxy"}}],
        [{"entity_type": "event", "privileges": {}}, {"entity_type": "event", "privileges": {}}],
        ["event"],
    ],
)
def test_entity_privileges_rejects_values_outside_vocabulary(entries: list) -> None:
    with pytest.raises(ValidationError):
        validate_entity_privileges(entries)


def test_entity_privileges_rejects_non_list() -> None:
    with pytest.raises(ValidationError):
        validate_entity_privileges({"entity_type": "event"})


def test_special_permissions_normalized_to_full_map() -> None:
    normalized = validate_special_permissions({"approve_content": True})
    assert set(normalized) == set(SPECIAL_PERMISSIONS)
    assert normalized["approve_content"] is True
    assert normalized["manage_billing"] is False


def test_special_permissions_reject_unknown_and_non_bool() -> None:
    with pytest.raises(ValidationError):
        validate_special_permissions({"launch_rockets": True})
    with pytest.raises(ValidationError):
        validate_special_permissions({"approve_content": "yes"})


def test_name_and_description_limits() -> None:
    assert validate_name("  Editors  ") == "Editors"
    with pytest.raises(ValidationError):
        validate_name("   ")
    with pytest.raises(ValidationError):
        validate_name("x" * 101)
    assert validate_description(None) is None
    with pytest.raises(ValidationError):
        validate_description("d" * 501)
