from __future__ import annotations

import pytest

from presence_client.state_manager import PresenceState
from presence_common.protocol import ProtocolError


def test_each_update_replaces_the_whole_set() -> None:
    state = PresenceState()

    state.apply_update(["alice", "bob"])
    state.apply_update(["carol"])

    assert state.online_users == frozenset({"carol"})
    assert state.count == 1
    assert state.is_online("carol")
    assert not state.is_online("alice")


def test_malformed_update_keeps_previous_set() -> None:
    state = PresenceState()
    state.apply_update(["alice"])

    with pytest.raises(ProtocolError):
        state.apply_update({"alice": True})

    assert state.online_users == frozenset({"alice"})


def test_clear_empties_the_mirror() -> None:
    state = PresenceState()
    state.apply_update(["alice"])

    state.clear()

    assert state.online_users == frozenset()
