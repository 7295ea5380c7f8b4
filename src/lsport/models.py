"""Data models for lsport."""

import time
from dataclasses import dataclass, field, replace
from enum import Enum


class Protocol(Enum):
    """Transport protocol of a listening socket."""

    TCP = "TCP"
    UDP = "UDP"

    def __str__(self) -> str:
        return self.value

    @property
    def rank(self) -> int:
        """Sort rank (TCP before UDP)."""
        return 0 if self is Protocol.TCP else 1


class SortKey(Enum):
    """Sort keys for the port table."""

    PORT = "port"
    PROTOCOL = "protocol"
    PID = "pid"
    NAME = "name"
    CPU = "cpu"
    MEMORY = "memory"

    def next(self) -> "SortKey":
        """Return the next key in cycling order."""
        keys = list(SortKey)
        return keys[(keys.index(self) + 1) % len(keys)]


@dataclass(slots=True, frozen=True)
class RawSocket:
    """A listening socket as reported by a scanner, before correlation."""

    port: int
    protocol: Protocol
    pid: int | None
    process_name: str | None = None  # Hint from ss/lsof, used when the PID is unknown


@dataclass(slots=True, frozen=True)
class ProcessInfo:
    """Resource metrics of one process."""

    name: str | None
    cpu_percent: float = 0.0
    memory_bytes: int = 0
    parent_pid: int | None = None


def format_memory(size: int) -> str:
    """Format bytes as a human-readable string."""
    if size <= 0:
        return "-"
    for unit in ["B", "KB", "MB", "GB"]:
        if size < 1024 or unit == "GB":
            return f"{size} B" if unit == "B" else f"{size:.1f} {unit}"
        size = size / 1024
    return f"{size:.1f} GB"


@dataclass(slots=True, frozen=True)
class PortEntry:
    """Immutable, correlated view of one listening socket."""

    port: int
    protocol: Protocol
    pid: int | None
    process_name: str | None = None
    cpu_percent: float = 0.0
    memory_bytes: int = 0
    parent_pid: int | None = None
    has_live_parent: bool = False
    is_suspicious: bool = False  # High CPU + orphaned, a heuristic only

    @property
    def key(self) -> tuple[int, Protocol, int | None]:
        """Identity used to re-anchor the selection across refreshes."""
        return (self.port, self.protocol, self.pid)

    @property
    def memory_display(self) -> str:
        return format_memory(self.memory_bytes)

    @property
    def display_name(self) -> str:
        return self.process_name or "?"


@dataclass(slots=True, frozen=True)
class Source:
    """Where a snapshot came from. ``host`` is None for the local machine."""

    host: str | None = None

    @classmethod
    def local(cls) -> "Source":
        return cls(None)

    @classmethod
    def remote(cls, display: str) -> "Source":
        return cls(display)

    @property
    def is_remote(self) -> bool:
        return self.host is not None

    @property
    def label(self) -> str:
        return f"remote {self.host}" if self.host else "local"


@dataclass(slots=True, frozen=True)
class Snapshot:
    """One complete, immutable result of a scan-and-merge cycle."""

    entries: tuple[PortEntry, ...]
    source: Source = field(default_factory=Source.local)
    timestamp: float = field(default_factory=time.time)
    error: str | None = None

    @classmethod
    def empty(cls, source: Source | None = None) -> "Snapshot":
        return cls(entries=(), source=source or Source.local())

    @property
    def ok(self) -> bool:
        return self.error is None

    def with_error(self, message: str) -> "Snapshot":
        """Copy of this snapshot that keeps the entries and flags an error."""
        return replace(self, error=message, timestamp=time.time())

    def pids(self) -> set[int]:
        return {entry.pid for entry in self.entries if entry.pid is not None}


@dataclass(slots=True, frozen=True)
class Notice:
    """One-shot status event published next to snapshots."""

    level: str  # 'info', 'success' or 'error'
    message: str
