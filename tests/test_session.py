"""Tests for session module."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import pytest

from mcp_proxy.errors import SessionNotFound, TransportCloseError
from mcp_proxy.session import SessionRegistry, SessionState


class RecordingTransport:
    """Transport that records what happens to it."""

    def __init__(self, fail_close: bool = False, close_delay: float = 0.0) -> None:
        self.messages: list[Any] = []
        self.close_count = 0
        self.fail_close = fail_close
        self.close_delay = close_delay

    async def handle_message(self, message: Any) -> None:
        self.messages.append(message)

    async def close(self) -> None:
        self.close_count += 1
        if self.close_delay:
            await asyncio.sleep(self.close_delay)
        if self.fail_close:
            raise RuntimeError("socket already gone")


class TestOpenSession:
    """Tests for session creation."""

    def test_ids_are_unique(self):
        """Test every session gets its own id."""
        registry = SessionRegistry()
        ids = {registry.open_session(RecordingTransport()) for _ in range(50)}

        assert len(ids) == 50
        assert len(registry) == 50

    def test_new_session_is_open(self):
        """Test sessions start in the OPEN state."""
        registry = SessionRegistry()
        session_id = registry.open_session(RecordingTransport())

        session = registry.get(session_id)
        assert session is not None
        assert session.state is SessionState.OPEN
        assert session_id in registry


class TestRoute:
    """Tests for message routing."""

    @pytest.mark.asyncio
    async def test_routes_to_bound_transport(self):
        """Test messages reach only their own session."""
        registry = SessionRegistry()
        first, second = RecordingTransport(), RecordingTransport()
        first_id = registry.open_session(first)
        registry.open_session(second)

        await registry.route(first_id, {"method": "ping", "id": 1})

        assert first.messages == [{"method": "ping", "id": 1}]
        assert second.messages == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("session_id", ["unknown", "", None])
    async def test_unknown_session_rejected(self, session_id):
        """Test stale or missing ids never match a session."""
        registry = SessionRegistry()
        transport = RecordingTransport()
        registry.open_session(transport)

        with pytest.raises(SessionNotFound):
            await registry.route(session_id, {"method": "ping"})
        assert transport.messages == []

    @pytest.mark.asyncio
    async def test_closed_session_rejected(self):
        """Test routing to a closed session fails."""
        registry = SessionRegistry()
        session_id = registry.open_session(RecordingTransport())
        await registry.close_session(session_id)

        with pytest.raises(SessionNotFound):
            await registry.route(session_id, {})


class TestCloseSession:
    """Tests for session teardown."""

    @pytest.mark.asyncio
    async def test_close_twice_closes_once(self):
        """Test the second close is a no-op."""
        registry = SessionRegistry()
        transport = RecordingTransport()
        session_id = registry.open_session(transport)
        session = registry.get(session_id)

        assert await registry.close_session(session_id) is True
        assert await registry.close_session(session_id) is False

        assert transport.close_count == 1
        assert session is not None and session.state is SessionState.CLOSED
        assert session_id not in registry

    @pytest.mark.asyncio
    async def test_concurrent_close_triggers(self):
        """Test racing close triggers produce one close."""
        registry = SessionRegistry()
        transport = RecordingTransport(close_delay=0.01)
        session_id = registry.open_session(transport)

        results = await asyncio.gather(
            registry.close_session(session_id, "disconnected"),
            registry.close_session(session_id, "failed"),
            registry.close_session(session_id, "shut down"),
        )

        assert sorted(results) == [False, False, True]
        assert transport.close_count == 1

    @pytest.mark.asyncio
    async def test_close_error_is_swallowed(self):
        """Test a failing transport close still removes the session."""
        registry = SessionRegistry()
        session_id = registry.open_session(RecordingTransport(fail_close=True))

        assert await registry.close_session(session_id) is True
        assert session_id not in registry

    @pytest.mark.asyncio
    async def test_close_error_logged_as_transport_close_error(self, caplog):
        """Test a failing transport close is logged with its cause."""
        registry = SessionRegistry()
        session_id = registry.open_session(RecordingTransport(fail_close=True))

        with caplog.at_level(logging.ERROR, logger="mcp_proxy.session"):
            await registry.close_session(session_id)

        record = next(r for r in caplog.records if r.levelno == logging.ERROR)
        assert session_id in record.getMessage()
        assert record.exc_info is not None
        assert isinstance(record.exc_info[1], TransportCloseError)
        assert isinstance(record.exc_info[1].__cause__, RuntimeError)

    @pytest.mark.asyncio
    async def test_close_all(self):
        """Test shutdown closes every session despite individual failures."""
        registry = SessionRegistry()
        transports = [
            RecordingTransport(),
            RecordingTransport(fail_close=True),
            RecordingTransport(),
        ]
        for transport in transports:
            registry.open_session(transport)

        await registry.close_all()

        assert len(registry) == 0
        assert [t.close_count for t in transports] == [1, 1, 1]
