"""Correlation of raw sockets with process metrics."""

from collections.abc import Iterable, Mapping

from lsport.models import PortEntry, ProcessInfo, RawSocket, Snapshot, Source

# PIDs that never count as a live parent: the kernel scheduler and init.
# A process re-parented to init has lost its original parent.
INIT_PIDS = frozenset({0, 1})


def has_live_parent(parent_pid: int | None, process_map: Mapping[int, ProcessInfo]) -> bool:
    return parent_pid is not None and parent_pid not in INIT_PIDS and parent_pid in process_map


def is_suspicious(cpu_percent: float, live_parent: bool, threshold: float) -> bool:
    """
    Zombie heuristic: high CPU usage by a process whose parent is gone.

    This is a classification hint, not proof that anything is wrong.
    """
    return cpu_percent > threshold and not live_parent


def correlate(raw: RawSocket, process_map: Mapping[int, ProcessInfo], threshold: float) -> PortEntry:
    """Build one PortEntry from a raw socket and the process map."""
    if raw.pid is None:
        return PortEntry(port=raw.port, protocol=raw.protocol, pid=None, process_name=raw.process_name)

    info = process_map.get(raw.pid)
    if info is None:
        # Process exited between the socket scan and the process snapshot
        return PortEntry(port=raw.port, protocol=raw.protocol, pid=raw.pid, process_name=raw.process_name)

    live_parent = has_live_parent(info.parent_pid, process_map)
    return PortEntry(
        port=raw.port,
        protocol=raw.protocol,
        pid=raw.pid,
        process_name=info.name or raw.process_name,
        cpu_percent=info.cpu_percent,
        memory_bytes=info.memory_bytes,
        parent_pid=info.parent_pid,
        has_live_parent=live_parent,
        is_suspicious=is_suspicious(info.cpu_percent, live_parent, threshold),
    )


def merge(
    raw_sockets: Iterable[RawSocket],
    process_map: Mapping[int, ProcessInfo],
    source: Source,
    threshold: float = 50.0,
) -> Snapshot:
    """
    Combine raw sockets with a process snapshot into an immutable Snapshot.

    Entries keep scan order; the view applies the user's sort. Identical
    (port, protocol, pid) triples, e.g. the IPv4 and IPv6 binds of one
    process, collapse into the first occurrence.
    """
    seen: set[tuple] = set()
    entries: list[PortEntry] = []

    for raw in raw_sockets:
        key = (raw.port, raw.protocol, raw.pid)
        if key in seen:
            continue
        seen.add(key)
        entries.append(correlate(raw, process_map, threshold))

    return Snapshot(entries=tuple(entries), source=source)
