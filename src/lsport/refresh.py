"""Background refresh loop for lsport."""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from queue import Empty, Queue

from lsport.errors import ConnectError, ScanError, SessionLost
from lsport.models import Notice, Snapshot
from lsport.remote import HostSpec, RemoteSession
from lsport.scanning import Collector, LocalMode, RemoteMode, ScanMode

logger = logging.getLogger("lsport.refresh")

MIN_POLL_RATE = 0.1


class LoopState(Enum):
    """Where the refresh loop is in its cycle."""

    IDLE = "idle"
    SCANNING = "scanning"
    MERGING = "merging"
    PUBLISHED = "published"


@dataclass(frozen=True)
class Connect:
    spec: HostSpec
    identity: Path | None = None


@dataclass(frozen=True)
class Disconnect:
    pass


@dataclass(frozen=True)
class SetInterval:
    seconds: float


@dataclass(frozen=True)
class Refresh:
    pass


@dataclass(frozen=True)
class _Stop:
    pass


Command = Connect | Disconnect | SetInterval | Refresh

Connector = Callable[[HostSpec, Path | None], RemoteSession]


class RefreshLoop:
    """
    Periodically scans the active source and publishes Snapshots.

    Runs in a separate daemon thread and pushes Snapshots and Notices to a
    thread-safe Queue. The control path talks to it only through commands
    (connect, disconnect, set_interval, request_refresh); mode changes are
    applied between scans, never during one.
    """

    def __init__(
        self,
        update_queue: "Queue[Snapshot | Notice]",
        collector: Collector,
        poll_rate: float = 2.0,
        connector: Connector | None = None,
    ) -> None:
        """
        Initialize the RefreshLoop.

        Args:
            update_queue: Thread-safe queue to push updates to.
            collector: Scans and merges one source per tick.
            poll_rate: Seconds between scans. Default 2.0s.
            connector: Opens a RemoteSession; defaults to RemoteSession.connect
                with the collector's settings.
        """
        self._queue = update_queue
        self._collector = collector
        self._poll_rate = max(MIN_POLL_RATE, poll_rate)
        self._connect = connector or self._default_connector
        self._commands: Queue[Command | _Stop] = Queue()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._mode: ScanMode = LocalMode()
        self._latest: Snapshot = Snapshot.empty()
        self._state = LoopState.IDLE
        self._generation = 0
        self._generation_lock = threading.Lock()

    @property
    def poll_rate(self) -> float:
        """Get the current poll rate."""
        return self._poll_rate

    @poll_rate.setter
    def poll_rate(self, value: float) -> None:
        """Set the poll rate; applies from the next wait."""
        self._poll_rate = max(MIN_POLL_RATE, value)

    @property
    def is_running(self) -> bool:
        """Check if the loop thread is running."""
        return self._thread is not None and self._thread.is_alive()

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def latest(self) -> Snapshot:
        """The most recently published snapshot."""
        return self._latest

    @property
    def session(self) -> RemoteSession | None:
        mode = self._mode
        return mode.session if isinstance(mode, RemoteMode) else None

    def start(self) -> None:
        """Start the refresh thread."""
        if self.is_running:
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._poll_loop,
            daemon=True,
            name="RefreshLoop",
        )
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """
        Stop the refresh thread and close any remote session.

        Args:
            timeout: How long to wait for thread to stop (seconds).
        """
        self._stop_event.set()
        self._commands.put(_Stop())
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        self._close_session()
        self._mode = LocalMode()

    # Commands from the control path

    def connect(self, spec: HostSpec, identity: Path | None = None) -> None:
        self._bump_generation()
        self._commands.put(Connect(spec, identity))

    def disconnect(self) -> None:
        self._bump_generation()
        self._commands.put(Disconnect())

    def set_interval(self, seconds: float) -> None:
        self._commands.put(SetInterval(seconds))

    def request_refresh(self) -> None:
        """Ask for an out-of-band scan; coalesces with pending requests."""
        self._commands.put(Refresh())

    # Loop internals

    def _poll_loop(self) -> None:
        """Main loop running in the background thread."""
        while not self._stop_event.is_set():
            self.tick()
            self._wait_for_next_tick()
        self._state = LoopState.IDLE

    def _wait_for_next_tick(self) -> None:
        """Wait for the interval, handling commands as they arrive."""
        deadline = time.monotonic() + self._poll_rate
        while not self._stop_event.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            try:
                command = self._commands.get(timeout=remaining)
            except Empty:
                return
            if self.handle(command):
                self._drain_commands()
                return

    def _drain_commands(self) -> None:
        """Handle everything already queued so repeated requests share one scan."""
        while True:
            try:
                command = self._commands.get_nowait()
            except Empty:
                return
            self.handle(command)

    def handle(self, command: "Command | _Stop") -> bool:
        """
        Apply one command. Returns True when a scan should run immediately.
        """
        if isinstance(command, _Stop):
            return True
        if isinstance(command, Refresh):
            return True
        if isinstance(command, SetInterval):
            self.poll_rate = command.seconds
            logger.info("Scan interval set to %.1fs", self._poll_rate)
            return False
        if isinstance(command, Disconnect):
            if isinstance(self._mode, RemoteMode):
                self._close_session()
                self._set_mode(LocalMode())
                self._publish(Notice("info", "Disconnected; scanning local ports"))
            return True
        if isinstance(command, Connect):
            return self._handle_connect(command)
        raise TypeError(f"Unknown command: {command!r}")

    def _handle_connect(self, command: Connect) -> bool:
        self._publish(Notice("info", f"Connecting to {command.spec.display}..."))
        try:
            session = self._connect(command.spec, command.identity)
        except ConnectError as e:
            logger.warning("Connect to %s failed: %s", command.spec.display, e)
            self._publish(Notice("error", f"Connection failed: {e}"))
            return False

        self._close_session()
        self._set_mode(RemoteMode(session))
        self._publish(Notice("success", f"Connected to {command.spec.display}"))
        return True

    def tick(self) -> Snapshot | None:
        """
        Run one scan-merge-publish cycle against the current mode.

        Returns the published snapshot, or None when the result was
        discarded because the mode changed while the scan was running.
        """
        mode = self._mode
        generation = self._generation
        error: str | None = None

        self._state = LoopState.SCANNING
        try:
            sockets, processes = self._collector.scan(mode)
            self._state = LoopState.MERGING
            snapshot = self._collector.merge(sockets, processes, mode)
        except SessionLost as e:
            if self._generation != generation:
                logger.debug("Discarding failed scan of a replaced session: %s", e)
                return None
            logger.warning("Session lost: %s", e)
            snapshot = self._error_snapshot(mode, f"Session lost: {e}")
            self._publish(snapshot)
            self._publish(Notice("error", f"{e}; falling back to local ports"))
            self._close_session()
            self._set_mode(LocalMode())
            return snapshot
        except ScanError as e:
            logger.warning("Scan failed: %s", e)
            error = str(e)
        except Exception as e:
            # Keep the loop alive on anything unexpected
            logger.exception("Unexpected error during scan")
            error = f"Unexpected error: {e}"

        if self._generation != generation:
            logger.debug("Discarding scan of %s: mode changed", mode.source.label)
            return None
        if error is not None:
            snapshot = self._error_snapshot(mode, error)

        self._publish(snapshot)
        return snapshot

    def _error_snapshot(self, mode: ScanMode, message: str) -> Snapshot:
        """Previous entries from the same source, flagged with an error."""
        previous = self._latest
        if previous.source != mode.source:
            previous = Snapshot.empty(mode.source)
        return previous.with_error(message)

    def _publish(self, item: "Snapshot | Notice") -> None:
        if isinstance(item, Snapshot):
            self._latest = item
            self._state = LoopState.PUBLISHED
        self._queue.put(item)

    def _set_mode(self, mode: ScanMode) -> None:
        self._bump_generation()
        self._mode = mode

    def _bump_generation(self) -> None:
        with self._generation_lock:
            self._generation += 1

    def _close_session(self) -> None:
        session = self.session
        if session is not None:
            session.close()

    def _default_connector(self, spec: HostSpec, identity: Path | None) -> RemoteSession:
        return RemoteSession.connect(spec, identity, self._collector.settings)
