"""Control-path facade over the refresh loop, view state and kill dispatcher."""

import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from queue import Empty, Queue

from lsport.config import Settings
from lsport.errors import SignalFailed
from lsport.kill import KillDispatcher, KillOutcome, KillTarget
from lsport.models import Notice, PortEntry, Snapshot, SortKey
from lsport.refresh import Connector, RefreshLoop
from lsport.remote import HostSpec, RemoteSession
from lsport.scanning import Collector, LocalMode, RemoteMode, ScanMode
from lsport.view import ViewState

logger = logging.getLogger("lsport.engine")

# Gap between the two process samples of a one-shot local scan
CPU_SAMPLE_SECONDS = 0.5


def describe_entries(snapshot: Snapshot, target: str | int) -> list[PortEntry]:
    """
    Entries matching a port, else a PID, else a process name substring.

    A numeric target is tried as a port first, then as a PID.
    """
    text = str(target).strip()
    if text.isdigit():
        number = int(text)
        by_port = [e for e in snapshot.entries if e.port == number]
        if by_port:
            return by_port
        return [e for e in snapshot.entries if e.pid == number]
    needle = text.lower()
    return [e for e in snapshot.entries if needle and needle in (e.process_name or "").lower()]


def _parse_host(host_spec: str | HostSpec) -> HostSpec:
    return host_spec if isinstance(host_spec, HostSpec) else HostSpec.parse(host_spec)


class Engine:
    """
    Everything the presentation layer needs from the core.

    The refresh loop publishes to ``updates``; poll() drains it on the
    caller's thread and re-applies the view. Kill actions run on the
    caller's thread and then request an immediate refresh.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        collector: Collector | None = None,
        connector: Connector | None = None,
        dispatcher: KillDispatcher | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.updates: Queue[Snapshot | Notice] = Queue()
        self.collector = collector or Collector(self.settings)
        self.loop = RefreshLoop(self.updates, self.collector, self.settings.scan_interval, connector)
        self.view = ViewState()
        self.dispatcher = dispatcher or KillDispatcher()

    def start(self) -> None:
        self.loop.start()

    def stop(self) -> None:
        self.loop.stop()

    def latest_snapshot(self) -> Snapshot:
        return self.loop.latest

    def poll(self) -> list[Notice]:
        """
        Drain pending updates, apply the newest snapshot to the view and
        return the notices that arrived since the last call.
        """
        newest: Snapshot | None = None
        notices: list[Notice] = []
        while True:
            try:
                item = self.updates.get_nowait()
            except Empty:
                break
            if isinstance(item, Snapshot):
                newest = item
            else:
                notices.append(item)
        if newest is not None:
            self.view.apply(newest)
        return notices

    def connect(self, host_spec: str | HostSpec, identity: Path | None = None) -> HostSpec:
        """
        Queue a connection; the result arrives as a Notice.

        Raises:
            ValueError: the host spec cannot be parsed.
        """
        spec = _parse_host(host_spec)
        self.loop.connect(spec, identity)
        return spec

    def disconnect(self) -> None:
        self.loop.disconnect()

    def set_interval(self, seconds: float) -> None:
        self.loop.set_interval(seconds)

    def set_filter(self, pattern: str) -> list[PortEntry]:
        return self.view.set_filter(pattern)

    def set_sort(self, key: SortKey) -> list[PortEntry]:
        return self.view.set_sort(key)

    def kill(self, target: KillTarget, force: bool = False) -> KillOutcome:
        """
        Kill a target from the latest snapshot, then request a refresh.

        Raises:
            KillError: the target is ambiguous, missing, or the signal failed.
        """
        snapshot = self.loop.latest
        session: RemoteSession | None = None
        if snapshot.source.is_remote:
            session = self.loop.session
            if session is None or session.spec.display != snapshot.source.host:
                raise SignalFailed(f"No longer connected to {snapshot.source.host}")
        outcome = self.dispatcher.kill(target, force, snapshot, session)
        self.loop.request_refresh()
        return outcome

    def describe(self, target: str | int) -> list[PortEntry]:
        return describe_entries(self.loop.latest, target)


class OneShot:
    """A single scan used by the non-interactive describe and kill commands."""

    def __init__(self, snapshot: Snapshot, session: RemoteSession | None = None) -> None:
        self.snapshot = snapshot
        self.session = session
        self._dispatcher = KillDispatcher()

    def describe(self, target: str | int) -> list[PortEntry]:
        return describe_entries(self.snapshot, target)

    def kill(self, target: KillTarget, force: bool = False) -> KillOutcome:
        return self._dispatcher.kill(target, force, self.snapshot, self.session)


@contextmanager
def one_shot(
    host_spec: str | HostSpec | None = None,
    identity: Path | None = None,
    settings: Settings | None = None,
    collector: Collector | None = None,
) -> Iterator[OneShot]:
    """
    Scan once (locally or over SSH) and yield the result.

    Locally the process directory is sampled twice so CPU percentages are
    real. The remote session, if any, is closed on exit.

    Raises:
        ValueError: the host spec cannot be parsed.
        ConnectError: the remote host could not be reached or authenticated.
        ScanError: sockets could not be enumerated.
    """
    settings = settings or Settings()
    collector = collector or Collector(settings)
    session: RemoteSession | None = None
    mode: ScanMode = LocalMode()

    if host_spec is not None:
        session = RemoteSession.connect(_parse_host(host_spec), identity, settings)
        mode = RemoteMode(session)
    else:
        collector.process_directory.snapshot()
        time.sleep(CPU_SAMPLE_SECONDS)

    try:
        yield OneShot(collector.collect(mode), session)
    finally:
        if session is not None:
            session.close()
