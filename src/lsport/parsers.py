"""Parsers for the text output of ss, netstat, lsof and ps.

Used by the remote scanner and by the local scanner's fallback path. Every
parser skips rows it cannot understand and degrades missing columns to None
instead of raising, since column layouts differ between tool versions and
operating systems.
"""

import re

from lsport.models import ProcessInfo, Protocol, RawSocket

# users:(("nginx",pid=1234,fd=6),("nginx",pid=1235,fd=6))
_SS_USER_RE = re.compile(r'\("(?P<name>[^"]*)",pid=(?P<pid>\d+)')
_NETSTAT_PID_RE = re.compile(r"^(?P<pid>\d+)/(?P<name>.*)$")
_UNCONNECTED_PEERS = {"*:*", "*.*", "0.0.0.0:*", ":::*", "[::]:*", "*"}


def extract_port(addr: str) -> int | None:
    """
    Extract the port from an address column.

    Handles ``0.0.0.0:8080``, ``*:22``, ``[::]:443``, ``127.0.0.53%lo:53``
    and the BSD dotted form ``*.5353`` / ``127.0.0.1.631``.
    """
    addr = addr.strip()
    if "]:" in addr:
        port_str = addr.rsplit("]:", 1)[1]
    elif ":" in addr:
        port_str = addr.rsplit(":", 1)[1]
    elif "." in addr:
        port_str = addr.rsplit(".", 1)[1]
    else:
        return None

    if not port_str.isdigit() and "." in addr:
        # BSD IPv6: fe80::1%lo0.631
        port_str = addr.rsplit(".", 1)[1]
    if not port_str.isdigit():
        return None
    port = int(port_str)
    return port if 0 <= port <= 65535 else None


def protocol_from_token(token: str) -> Protocol | None:
    """Map tcp/tcp4/tcp6/udp/udp6 (any case) to a Protocol."""
    token = token.lower()
    if token.startswith("tcp"):
        return Protocol.TCP
    if token.startswith("udp"):
        return Protocol.UDP
    return None


def parse_ss_users(field: str) -> list[tuple[int, str]]:
    """Return (pid, name) pairs from an ss ``users:((...))`` column."""
    return [(int(m.group("pid")), m.group("name")) for m in _SS_USER_RE.finditer(field)]


def parse_ss(output: str, default_protocol: Protocol = Protocol.TCP) -> list[RawSocket]:
    """
    Parse ``ss -tulnp`` (or ``ss -tlnp`` / ``ss -ulnp``) output.

    A row owned by several processes yields one RawSocket per PID. Rows
    without a users column (insufficient privilege) keep ``pid=None``.
    """
    sockets: list[RawSocket] = []

    for line in output.splitlines():
        parts = line.split()
        if len(parts) < 4 or parts[0] in ("Netid", "State"):
            continue

        protocol = protocol_from_token(parts[0])
        if protocol is not None:
            # Netid State Recv-Q Send-Q Local Peer [Process]
            if len(parts) < 5:
                continue
            state, local = parts[1], parts[4]
        else:
            # State Recv-Q Send-Q Local Peer [Process]
            protocol = default_protocol
            state, local = parts[0], parts[3]

        if protocol is Protocol.TCP and state != "LISTEN":
            continue

        port = extract_port(local)
        if port is None:
            continue

        users = parse_ss_users(line)
        if not users:
            sockets.append(RawSocket(port, protocol, None))
            continue
        for pid, name in users:
            sockets.append(RawSocket(port, protocol, pid, name or None))

    return sockets


def parse_netstat(output: str) -> list[RawSocket]:
    """
    Parse Linux ``netstat -tulnp`` and BSD/macOS ``netstat -an`` output.

    The trailing ``PID/Program name`` column is optional; without it (or
    when it reads ``-``) the PID is None.
    """
    sockets: list[RawSocket] = []

    for line in output.splitlines():
        parts = line.split()
        if len(parts) < 5:
            continue
        protocol = protocol_from_token(parts[0])
        if protocol is None:
            continue

        local, peer = parts[3], parts[4]
        if protocol is Protocol.TCP and "LISTEN" not in parts[5:]:
            continue
        if protocol is Protocol.UDP and peer not in _UNCONNECTED_PEERS:
            continue

        port = extract_port(local)
        if port is None:
            continue

        pid: int | None = None
        name: str | None = None
        for token in parts[5:]:
            match = _NETSTAT_PID_RE.match(token)
            if match:
                pid = int(match.group("pid"))
                name = match.group("name") or None
                break

        sockets.append(RawSocket(port, protocol, pid, name))

    return sockets


def parse_lsof(output: str, default_protocol: Protocol = Protocol.TCP) -> list[RawSocket]:
    """
    Parse ``lsof -nP -i...`` output.

    Columns: COMMAND PID USER FD TYPE DEVICE SIZE/OFF NODE NAME. The NODE
    column carries TCP/UDP; connected UDP sockets (``a->b``) are skipped.
    """
    sockets: list[RawSocket] = []

    for line in output.splitlines()[1:]:
        parts = line.split()
        if len(parts) < 9 or not parts[1].isdigit():
            continue

        protocol = protocol_from_token(parts[7]) or default_protocol
        name_col = parts[8]
        if "->" in name_col:
            continue
        if protocol is Protocol.TCP and "(LISTEN)" not in parts[9:] and len(parts) > 9:
            continue

        port = extract_port(name_col)
        if port is None:
            continue
        sockets.append(RawSocket(port, protocol, int(parts[1]), parts[0]))

    return sockets


def parse_ps(output: str) -> dict[int, ProcessInfo]:
    """
    Parse ``ps -eo pid=,ppid=,pcpu=,rss=,comm=`` output.

    RSS is reported in KiB and converted to bytes. Missing or garbled
    trailing columns degrade to defaults; rows without a PID are skipped.
    """
    processes: dict[int, ProcessInfo] = {}

    for line in output.splitlines():
        parts = line.split(None, 4)
        if not parts or not parts[0].isdigit():
            continue

        pid = int(parts[0])
        parent_pid = int(parts[1]) if len(parts) > 1 and parts[1].isdigit() else None
        cpu = _to_float(parts[2]) if len(parts) > 2 else 0.0
        rss_kib = int(parts[3]) if len(parts) > 3 and parts[3].isdigit() else 0
        name = parts[4].strip() if len(parts) > 4 else None
        if name and name.startswith("/"):
            # comm is a full path on BSD/macOS
            name = name.rsplit("/", 1)[-1] or name

        processes[pid] = ProcessInfo(
            name=name or None,
            cpu_percent=cpu,
            memory_bytes=rss_kib * 1024,
            parent_pid=parent_pid,
        )

    return processes


def _to_float(value: str) -> float:
    try:
        return float(value.replace(",", "."))
    except ValueError:
        return 0.0
