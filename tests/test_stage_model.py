"""Tests for the stage pipeline schema and transition rules.

Coverage:
  1. Fixed key set and order
  2. Permissive transitions (reopen done work, done → blocked)
  3. Entering 'blocked' needs a non-empty reason
  4. Leaving 'blocked' clears the reason
  5. Unknown keys / statuses are rejected
"""

import itertools

import pytest

from delivery_tracker.core.exceptions import InvalidStageKey, ValidationError
from delivery_tracker.models.stage import (
    STAGE_KEYS,
    STAGE_STATUSES,
    is_valid_transition,
    resolve_blocking_reason,
    validate_stage_key,
)


def test_stage_keys_fixed_order():
    assert STAGE_KEYS == (
        "infra", "adherence", "environment", "conversion", "implementation", "post",
    )


@pytest.mark.parametrize("key", STAGE_KEYS)
def test_validate_stage_key_accepts_known(key):
    assert validate_stage_key(key) == key


@pytest.mark.parametrize("key", ["", "INFRA", "billing", "post "])
def test_validate_stage_key_rejects_unknown(key):
    with pytest.raises(InvalidStageKey) as exc:
        validate_stage_key(key)
    assert isinstance(exc.value, ValidationError)
    assert "stage_key" in exc.value.details


def test_every_non_blocked_pair_is_allowed():
    targets = STAGE_STATUSES - {"blocked"}
    for old, new in itertools.product(STAGE_STATUSES, targets):
        assert is_valid_transition(old, new), f"{old} → {new} should be allowed"


def test_reopen_done_stage_allowed():
    assert is_valid_transition("done", "in-progress")
    assert is_valid_transition("done", "todo")


def test_blocked_requires_reason():
    assert not is_valid_transition("in-progress", "blocked")
    assert not is_valid_transition("in-progress", "blocked", "   ")
    assert is_valid_transition("done", "blocked", "server down")


def test_unknown_status_rejected():
    assert not is_valid_transition("todo", "paused")
    assert not is_valid_transition("paused", "todo")


class TestResolveBlockingReason:
    def test_leaving_blocked_clears_reason(self):
        assert resolve_blocking_reason("in-progress", None, "no server") is None

    def test_reason_ignored_when_not_blocked(self):
        assert resolve_blocking_reason("todo", "leftover", None) is None

    def test_new_reason_wins(self):
        assert resolve_blocking_reason("blocked", "vpn down", "no server") == "vpn down"

    def test_existing_reason_persists(self):
        assert resolve_blocking_reason("blocked", None, "no server") == "no server"
        assert resolve_blocking_reason("blocked", "  ", "no server") == "no server"

    def test_no_reason_at_all(self):
        assert resolve_blocking_reason("blocked", "", None) is None
