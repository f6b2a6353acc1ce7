"""Tests for the pairing/connection state machine."""

import asyncio

import pytest

from chatrelay.core.metrics import metrics
from chatrelay.session.state import Session, SessionState


class TestTransitions:
    def test_initial_state(self):
        s = Session()
        assert s.state == SessionState.UNINITIALIZED
        assert not s.is_ready()
        assert s.current_code() is None

    def test_pairing_code_moves_to_pairing(self):
        s = Session()
        s.on_pairing_code_issued("2@abc")
        assert s.state == SessionState.PAIRING
        assert s.current_code() == "2@abc"

    def test_new_code_replaces_old(self):
        s = Session()
        s.on_pairing_code_issued("first")
        s.on_pairing_code_issued("second")
        assert s.current_code() == "second"

    def test_full_pairing_flow(self):
        s = Session()
        s.on_pairing_code_issued("code")
        s.on_authenticated()
        assert s.state == SessionState.AUTHENTICATED
        s.on_ready("15550000000@c.us")
        assert s.state == SessionState.READY
        assert s.is_ready()
        assert s.current_code() is None
        assert s.own_id == "15550000000@c.us"

    def test_code_ignored_once_ready(self):
        s = Session()
        s.on_ready()
        s.on_pairing_code_issued("late")
        assert s.state == SessionState.READY
        assert s.current_code() is None

    def test_disconnect_clears_readiness(self):
        s = Session()
        s.on_ready()
        s.on_disconnected("NAVIGATION")
        assert s.state == SessionState.DISCONNECTED
        assert not s.is_ready()
        assert s.snapshot()["last_disconnect_reason"] == "NAVIGATION"

    def test_reconnect_after_disconnect(self):
        s = Session()
        s.on_ready()
        s.on_disconnected("LOGOUT")
        s.on_pairing_code_issued("fresh")
        assert s.state == SessionState.PAIRING
        s.on_ready()
        assert s.is_ready()

    def test_auth_failure(self):
        s = Session()
        s.on_pairing_code_issued("code")
        s.on_auth_failure("bad credentials")
        assert s.state == SessionState.DISCONNECTED
        assert s.current_code() is None
        assert s.snapshot()["last_auth_failure"] == "bad credentials"

    def test_loading_progress_in_snapshot(self):
        s = Session()
        s.on_loading(45, "Syncing")
        assert s.snapshot()["loading"] == {"percent": 45, "message": "Syncing"}
        s.on_ready()
        assert s.snapshot()["loading"] is None

    def test_transitions_are_counted(self):
        s = Session()
        s.on_pairing_code_issued("code")
        s.on_ready()
        assert metrics.counter("relay.session.transitions", {"state": "pairing"}) == 1
        assert metrics.counter("relay.session.transitions", {"state": "ready"}) == 1


class TestWaitReady:
    @pytest.mark.asyncio
    async def test_wait_ready_returns_when_ready(self):
        s = Session()
        waiter = asyncio.create_task(s.wait_ready())
        await asyncio.sleep(0)
        assert not waiter.done()
        s.on_ready()
        await asyncio.wait_for(waiter, timeout=1.0)

    @pytest.mark.asyncio
    async def test_wait_ready_immediate_when_ready(self):
        s = Session()
        s.on_ready()
        await asyncio.wait_for(s.wait_ready(), timeout=0.1)

    @pytest.mark.asyncio
    async def test_wait_ready_blocks_after_disconnect(self):
        s = Session()
        s.on_ready()
        s.on_disconnected("CONFLICT")
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(s.wait_ready(), timeout=0.05)
