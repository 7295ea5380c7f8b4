"""Shared fakes for lsport tests."""

from collections.abc import Callable

import pytest

from lsport.config import Settings
from lsport.errors import SessionLost
from lsport.kill import KillDispatcher
from lsport.models import PortEntry, ProcessInfo, Protocol, RawSocket, Snapshot, Source
from lsport.remote import ExecResult, HostSpec
from lsport.scanning import Collector, ScanMode


class FakeSession:
    """Stands in for RemoteSession: maps commands to canned results."""

    def __init__(self, responses: dict[str, ExecResult | Exception] | None = None, host: str = "remote.example") -> None:
        self.spec = HostSpec(user="tester", host=host, port=22)
        self.responses = dict(responses or {})
        self.commands: list[str] = []
        self.closed = False

    @property
    def is_connected(self) -> bool:
        return not self.closed

    def execute(self, command: str) -> ExecResult:
        self.commands.append(command)
        if self.closed:
            raise SessionLost("closed")
        response = self.responses.get(command, ExecResult("", "command not found", 127))
        if isinstance(response, Exception):
            raise response
        return response

    def kill(self, pid: int, force: bool = False) -> ExecResult:
        return self.execute(f"kill -{'KILL' if force else 'TERM'} {pid}")

    def close(self) -> None:
        self.closed = True


ScanStep = tuple[list[RawSocket], dict[int, ProcessInfo]] | Exception


class ScriptedCollector(Collector):
    """Collector whose scan() results come from a script instead of the OS."""

    def __init__(self, steps: list[ScanStep] | Callable[[ScanMode], ScanStep], settings: Settings | None = None) -> None:
        super().__init__(settings)
        self._steps = steps
        self.modes: list[ScanMode] = []

    def scan(self, mode: ScanMode):
        self.modes.append(mode)
        if callable(self._steps):
            step = self._steps(mode)
        elif len(self._steps) > 1:
            step = self._steps.pop(0)
        else:
            step = self._steps[0]
        if isinstance(step, Exception):
            raise step
        return step


class RecordingDispatcher(KillDispatcher):
    """Dispatcher that records local kills instead of signalling."""

    def __init__(self) -> None:
        self.killed: list[tuple[int, bool]] = []

    def _kill_local(self, pid: int, force: bool) -> None:
        self.killed.append((pid, force))


def ok(stdout: str) -> ExecResult:
    return ExecResult(stdout, "", 0)


def entry(port: int, pid: int | None, protocol: Protocol = Protocol.TCP, name: str | None = None, **kwargs) -> PortEntry:
    if name is None and pid is not None:
        name = f"process_{pid}"
    return PortEntry(port=port, protocol=protocol, pid=pid, process_name=name, **kwargs)


def snapshot_of(*entries: PortEntry, source: Source | None = None) -> Snapshot:
    return Snapshot(entries=tuple(entries), source=source or Source.local())


@pytest.fixture
def fake_session() -> FakeSession:
    return FakeSession()
