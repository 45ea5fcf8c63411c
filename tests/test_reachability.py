from __future__ import annotations

import asyncio
import socket
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from logsource_retire.collaborators.reachability import TcpReachabilityProbe
from logsource_retire.domain.models import Reachability

_OPEN = "logsource_retire.collaborators.reachability.asyncio.open_connection"


def _writer() -> MagicMock:
    writer = MagicMock()
    writer.wait_closed = AsyncMock()
    return writer


@pytest.mark.asyncio
async def test_first_open_port_wins() -> None:
    writer = _writer()
    opener = AsyncMock(side_effect=[ConnectionRefusedError(), (MagicMock(), writer)])
    with patch(_OPEN, opener) as mock_open:
        result = await TcpReachabilityProbe(ports=(443, 22, 80)).probe("web-01")

    assert result is Reachability.SUCCESS
    assert [c.args for c in mock_open.call_args_list] == [("web-01", 443), ("web-01", 22)]
    writer.close.assert_called_once()


@pytest.mark.asyncio
async def test_all_ports_closed_is_failure() -> None:
    with patch(_OPEN, AsyncMock(side_effect=[ConnectionRefusedError(), asyncio.TimeoutError()])):
        result = await TcpReachabilityProbe(ports=(443, 22)).probe("web-01")

    assert result is Reachability.FAILURE


@pytest.mark.asyncio
async def test_unresolvable_name_is_unknown() -> None:
    with patch(_OPEN, AsyncMock(side_effect=socket.gaierror("Name or service not known"))):
        result = await TcpReachabilityProbe(ports=(443, 22)).probe("ghost.invalid")

    assert result is Reachability.UNKNOWN


@pytest.mark.asyncio
async def test_blank_name_is_unknown() -> None:
    assert await TcpReachabilityProbe().probe("  ") is Reachability.UNKNOWN


@pytest.mark.asyncio
async def test_unencodable_name_is_unknown() -> None:
    error = UnicodeError("encoding with 'idna' codec failed (label empty or too long)")
    with patch(_OPEN, AsyncMock(side_effect=error)) as mock_open:
        result = await TcpReachabilityProbe(ports=(443, 22)).probe("srv..corp.local")

    assert result is Reachability.UNKNOWN
    mock_open.assert_awaited_once()


@pytest.mark.asyncio
@pytest.mark.parametrize("name", ["srv..corp.local", "a" * 64 + ".corp.local"])
async def test_malformed_names_never_raise(name) -> None:
    assert await TcpReachabilityProbe(ports=(443,), timeout=2).probe(name) is Reachability.UNKNOWN
