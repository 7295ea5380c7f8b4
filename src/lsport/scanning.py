"""Scan sources and the collector that dispatches between them."""

import logging
from dataclasses import dataclass

from lsport.config import Settings
from lsport.correlator import merge as merge_snapshot
from lsport.local_scanner import LocalSocketScanner
from lsport.models import ProcessInfo, RawSocket, Snapshot, Source
from lsport.process_directory import ProcessDirectory
from lsport.remote import RemoteSession
from lsport.remote_scanner import RemoteSocketScanner

logger = logging.getLogger("lsport.scanning")


@dataclass(frozen=True)
class LocalMode:
    """Scan this machine."""

    @property
    def source(self) -> Source:
        return Source.local()


@dataclass(frozen=True, eq=False)
class RemoteMode:
    """Scan the host behind an authenticated session."""

    session: RemoteSession

    @property
    def source(self) -> Source:
        return Source.remote(self.session.spec.display)


ScanMode = LocalMode | RemoteMode


class Collector:
    """
    Runs one scan-and-merge cycle for the given mode.

    Holds the long-lived scanners and the process directory so CPU deltas
    stay meaningful between ticks.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        local_scanner: LocalSocketScanner | None = None,
        process_directory: ProcessDirectory | None = None,
        remote_scanner: RemoteSocketScanner | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.local_scanner = local_scanner or LocalSocketScanner(self.settings.tool_timeout)
        self.process_directory = process_directory or ProcessDirectory()
        self.remote_scanner = remote_scanner or RemoteSocketScanner()

    def scan(self, mode: ScanMode) -> tuple[list[RawSocket], dict[int, ProcessInfo]]:
        """
        Enumerate sockets and processes from the mode's source.

        Raises:
            ScanError: the socket table could not be enumerated.
            SessionLost: the remote session dropped during the scan.
        """
        if isinstance(mode, RemoteMode):
            return self.remote_scanner.scan(mode.session)
        sockets = self.local_scanner.scan()
        return sockets, self.process_directory.snapshot()

    def merge(self, sockets: list[RawSocket], processes: dict[int, ProcessInfo], mode: ScanMode) -> Snapshot:
        snapshot = merge_snapshot(sockets, processes, mode.source, self.settings.suspicious_cpu_threshold)
        logger.debug("Collected %d entries from %s", len(snapshot.entries), mode.source.label)
        return snapshot

    def collect(self, mode: ScanMode) -> Snapshot:
        """Scan and merge in one step."""
        sockets, processes = self.scan(mode)
        return self.merge(sockets, processes, mode)
