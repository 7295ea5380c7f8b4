"""Local socket scanner.

psutil's connection table is the primary source. When it is unavailable
(AccessDenied on macOS without root) or comes back empty, the scanner falls
back to ss, lsof and netstat, in that order.
"""

import logging
import socket
import subprocess
from collections.abc import Callable

import psutil

from lsport.errors import ScanError
from lsport.models import Protocol, RawSocket
from lsport.parsers import parse_lsof, parse_netstat, parse_ss

logger = logging.getLogger("lsport.local_scanner")

# (command, parser) pairs tried in order when psutil yields nothing
FALLBACK_TOOLS: list[tuple[list[str], Callable[[str], list[RawSocket]]]] = [
    (["ss", "-tulnp"], parse_ss),
    (["lsof", "-nP", "-iTCP", "-sTCP:LISTEN", "-iUDP"], parse_lsof),
    (["netstat", "-an"], parse_netstat),
]


class LocalSocketScanner:
    """Enumerates listening TCP and UDP sockets on this machine."""

    def __init__(self, tool_timeout: float = 5.0, runner: Callable[..., subprocess.CompletedProcess] | None = None) -> None:
        """
        Initialize the LocalSocketScanner.

        Args:
            tool_timeout: Timeout for each fallback tool invocation (seconds).
            runner: subprocess.run compatible callable, replaceable in tests.
        """
        self._tool_timeout = tool_timeout
        self._run = runner or subprocess.run

    def scan(self) -> list[RawSocket]:
        """
        Return every listening socket, with pid=None where ownership is unknown.

        Raises:
            ScanError: if psutil failed and no fallback tool could be run.
        """
        primary_error: Exception | None = None
        try:
            sockets = self._scan_psutil()
        except (psutil.Error, OSError) as e:
            logger.info("psutil connection table unavailable: %s", e)
            primary_error = e
            sockets = []

        if sockets:
            return sockets

        fallback = self._scan_fallback()
        if fallback is not None:
            return fallback
        if primary_error is not None:
            raise ScanError(f"Cannot enumerate sockets: {primary_error}") from primary_error
        return []

    def _scan_psutil(self) -> list[RawSocket]:
        sockets: list[RawSocket] = []
        for conn in psutil.net_connections(kind="inet"):
            if not conn.laddr:
                continue
            if conn.type == socket.SOCK_STREAM:
                if conn.status != psutil.CONN_LISTEN:
                    continue
                protocol = Protocol.TCP
            elif conn.type == socket.SOCK_DGRAM:
                if conn.raddr:
                    continue
                protocol = Protocol.UDP
            else:
                continue
            sockets.append(RawSocket(conn.laddr.port, protocol, conn.pid or None))
        return sockets

    def _scan_fallback(self) -> list[RawSocket] | None:
        """
        Try each external tool until one produces rows.

        Returns None when no tool could be executed at all, and an empty
        list when tools ran but found nothing.
        """
        ran_any = False
        for command, parser in FALLBACK_TOOLS:
            try:
                result = self._run(command, capture_output=True, text=True, timeout=self._tool_timeout)
            except (OSError, subprocess.SubprocessError) as e:
                logger.debug("Fallback %s unavailable: %s", command[0], e)
                continue
            ran_any = True
            if result.returncode != 0 and not result.stdout:
                logger.debug("Fallback %s exited with %d", command[0], result.returncode)
                continue
            sockets = parser(result.stdout)
            if sockets:
                logger.debug("Fallback %s found %d sockets", command[0], len(sockets))
                return sockets
        return [] if ran_any else None
