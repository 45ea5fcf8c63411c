"""TCP reachability probe used in place of ICMP ping."""

from __future__ import annotations

import asyncio
import logging
import socket
from typing import Sequence

from logsource_retire.domain.models import Reachability

logger = logging.getLogger(__name__)

DEFAULT_PORTS: tuple[int, ...] = (443, 80, 22, 3389)


class TcpReachabilityProbe:
    """Try a TCP connect on common service ports, first success wins.

    Host names that cannot be resolved, or cannot even be encoded for a
    lookup, are reported as Unknown rather than Failure.
    """

    def __init__(self, ports: Sequence[int] = DEFAULT_PORTS, timeout: float = 0.5) -> None:
        self._ports = tuple(ports)
        self._timeout = timeout

    async def probe(self, host_name: str) -> Reachability:
        name = host_name.strip()
        if not name:
            return Reachability.UNKNOWN

        resolved = False
        for port in self._ports:
            try:
                _, writer = await asyncio.wait_for(
                    asyncio.open_connection(name, port), timeout=self._timeout
                )
            except OSError as exc:
                if not _is_resolution_error(exc):
                    resolved = True
                continue
            except ValueError as exc:
                # Includes UnicodeError from idna: empty or over-long labels.
                logger.warning("Cannot probe malformed host name %r: %s", name, exc)
                return Reachability.UNKNOWN
            except asyncio.TimeoutError:
                resolved = True
                continue
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                logger.debug("Error closing probe connection to %s:%s", name, port)
            return Reachability.SUCCESS

        return Reachability.FAILURE if resolved else Reachability.UNKNOWN


def _is_resolution_error(exc: OSError) -> bool:
    return isinstance(exc, socket.gaierror)
