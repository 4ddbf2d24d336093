"""Shared fixtures for bridge connection tests."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from bridge_connection import CasetaBridgeConnection
from fake_server import FakeBridgeServer


@pytest.fixture
def mock_logger() -> MagicMock:
    """A stand-in for the injected logging collaborator."""
    return MagicMock(spec=logging.Logger)


@pytest.fixture
def mock_writer() -> MagicMock:
    """A stream writer that records what the session sends."""
    writer = MagicMock(spec=asyncio.StreamWriter)
    writer.is_closing.return_value = False
    writer.drain = AsyncMock()
    writer.wait_closed = AsyncMock()
    return writer


@pytest.fixture
async def idle_connection(
    mock_logger: MagicMock, mock_writer: MagicMock
) -> AsyncGenerator[CasetaBridgeConnection, None]:
    """A session whose connect attempt never completes.

    The writer is swapped for a mock so tests can drive ``receive_data``
    directly and inspect the replies.
    """
    loop = asyncio.get_running_loop()
    pending_connect = MagicMock(side_effect=lambda host, port: loop.create_future())

    with patch("bridge_connection.asyncio.open_connection", new=pending_connect):
        connection = CasetaBridgeConnection(
            logger=mock_logger, connect_timeout=None, fragment_timeout=None
        )
        connection.writer = mock_writer
        yield connection
        connection.close()
        await connection.wait_closed()


@pytest.fixture
async def fake_bridge() -> AsyncGenerator[FakeBridgeServer, None]:
    """A started fake bridge listening on loopback."""
    server = FakeBridgeServer()
    await server.start()
    yield server
    await server.close()
