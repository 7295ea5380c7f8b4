"""Remote socket scanner: runs diagnostic commands over SSH and parses them."""

import logging

from lsport.errors import ScanError
from lsport.models import ProcessInfo, Protocol, RawSocket
from lsport.parsers import parse_lsof, parse_netstat, parse_ps, parse_ss
from lsport.remote import RemoteSession

logger = logging.getLogger("lsport.remote_scanner")

UNAME_COMMAND = "uname -s"
PS_COMMAND = "ps -eo pid=,ppid=,pcpu=,rss=,comm= 2>/dev/null"
SS_COMMAND = "ss -tulnp 2>/dev/null"
NETSTAT_LINUX_COMMAND = "netstat -tulnp 2>/dev/null"
NETSTAT_GENERIC_COMMAND = "netstat -an 2>/dev/null"
LSOF_TCP_COMMAND = "lsof -nP -iTCP -sTCP:LISTEN 2>/dev/null"
LSOF_UDP_COMMAND = "lsof -nP -iUDP 2>/dev/null"


class RemoteSocketScanner:
    """
    Produces the same RawSocket/ProcessInfo shapes as the local path.

    The remote OS flavour is detected once per session with ``uname -s``.
    SessionLost from the session propagates unchanged; every other problem
    (missing tools, odd output) degrades to fewer fields or rows.
    """

    def __init__(self) -> None:
        self._flavour_cache: tuple[RemoteSession, str] | None = None

    def scan(self, session: RemoteSession) -> tuple[list[RawSocket], dict[int, ProcessInfo]]:
        """
        Scan listening sockets and processes on the session's host.

        Raises:
            SessionLost: the SSH transport failed.
            ScanError: no socket listing tool produced usable output.
        """
        flavour = self._flavour(session)
        if flavour == "Darwin":
            sockets, ran = self._scan_macos(session)
        elif flavour == "Linux":
            sockets, ran = self._scan_linux(session)
        else:
            sockets, ran = self._scan_generic(session)

        if not ran:
            raise ScanError(f"No socket listing tool available on {session.spec.host} ({flavour})")

        return sockets, self._processes(session)

    def _flavour(self, session: RemoteSession) -> str:
        if self._flavour_cache is None or self._flavour_cache[0] is not session:
            result = session.execute(UNAME_COMMAND)
            flavour = (result.stdout.strip() if result.ok else "") or "Linux"
            logger.info("Remote %s reports OS %r", session.spec.host, flavour)
            self._flavour_cache = (session, flavour)
        return self._flavour_cache[1]

    def _scan_linux(self, session: RemoteSession) -> tuple[list[RawSocket], bool]:
        result = session.execute(SS_COMMAND)
        if result.ok and result.stdout.strip():
            return parse_ss(result.stdout), True

        logger.debug("ss unavailable on %s, trying netstat", session.spec.host)
        result = session.execute(NETSTAT_LINUX_COMMAND)
        if result.ok or result.stdout.strip():
            return parse_netstat(result.stdout), True
        return [], False

    def _scan_macos(self, session: RemoteSession) -> tuple[list[RawSocket], bool]:
        tcp = session.execute(LSOF_TCP_COMMAND)
        udp = session.execute(LSOF_UDP_COMMAND)
        sockets = parse_lsof(tcp.stdout, Protocol.TCP) + parse_lsof(udp.stdout, Protocol.UDP)
        # lsof exits 1 when nothing matches, so only empty output on both counts as failure
        ran = bool(sockets) or tcp.ok or udp.ok
        if not ran:
            return self._scan_generic(session)
        return sockets, ran

    def _scan_generic(self, session: RemoteSession) -> tuple[list[RawSocket], bool]:
        result = session.execute(NETSTAT_GENERIC_COMMAND)
        if not result.ok and not result.stdout.strip():
            return [], False
        return parse_netstat(result.stdout), True

    def _processes(self, session: RemoteSession) -> dict[int, ProcessInfo]:
        result = session.execute(PS_COMMAND)
        if not result.ok and not result.stdout.strip():
            logger.info("ps failed on %s (exit %d); metrics unavailable", session.spec.host, result.exit_code)
            return {}
        return parse_ps(result.stdout)
