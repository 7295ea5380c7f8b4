"""Kill dispatcher: resolve a target against a snapshot and signal it."""

import logging
from dataclasses import dataclass

import psutil

from lsport.errors import Ambiguous, ExecError, NotFound, PermissionDenied, SignalFailed
from lsport.models import PortEntry, Protocol, Snapshot
from lsport.remote import RemoteSession

logger = logging.getLogger("lsport.kill")


@dataclass(frozen=True)
class PortRef:
    """Kill whatever owns this port (optionally only this protocol)."""

    port: int
    protocol: Protocol | None = None


@dataclass(frozen=True)
class PidRef:
    """Kill this exact process."""

    pid: int


KillTarget = PortRef | PidRef


@dataclass(frozen=True)
class KillOutcome:
    """Result of a delivered signal."""

    pid: int
    process_name: str | None
    ports: tuple[tuple[int, Protocol], ...]
    signal_name: str
    remote: bool

    def describe(self) -> str:
        name = self.process_name or "?"
        where = ", ".join(f"{port}/{protocol}" for port, protocol in self.ports)
        return f"Sent {self.signal_name} to '{name}' (PID {self.pid}) on {where}"


def signal_name(force: bool) -> str:
    return "SIGKILL" if force else "SIGTERM"


def resolve(target: KillTarget, snapshot: Snapshot) -> tuple[int, list[PortEntry]]:
    """
    Find the single PID a target refers to and the entries it owns.

    Raises:
        NotFound: nothing in the snapshot matches.
        Ambiguous: a port target is owned by more than one PID.
    """
    if isinstance(target, PidRef):
        owned = [e for e in snapshot.entries if e.pid == target.pid]
        if not owned:
            raise NotFound(f"No listening process with PID {target.pid}")
        return target.pid, owned

    on_port = [
        e
        for e in snapshot.entries
        if e.port == target.port and (target.protocol is None or e.protocol == target.protocol)
    ]
    pids = sorted({e.pid for e in on_port if e.pid is not None})
    if not pids:
        if on_port:
            raise NotFound(f"Port {target.port} is listening but its owner could not be determined")
        raise NotFound(f"No process found on port {target.port}")
    if len(pids) > 1:
        raise Ambiguous(target.port, pids)

    pid = pids[0]
    return pid, [e for e in snapshot.entries if e.pid == pid]


class KillDispatcher:
    """
    Sends termination signals locally (psutil) or through a RemoteSession.

    Targets are always resolved against the caller's snapshot first; a PID
    that is not in it is never signalled.
    """

    def kill(
        self,
        target: KillTarget,
        force: bool,
        snapshot: Snapshot,
        session: RemoteSession | None = None,
    ) -> KillOutcome:
        """
        Terminate the process a target resolves to.

        Args:
            target: PortRef or PidRef.
            force: SIGKILL instead of SIGTERM.
            snapshot: The snapshot the target is resolved against.
            session: Remote session; None kills on the local machine.

        Raises:
            KillError: Ambiguous, NotFound, PermissionDenied or SignalFailed.
        """
        pid, owned = resolve(target, snapshot)
        name = owned[0].process_name

        if session is not None:
            self._kill_remote(session, pid, force)
        else:
            self._kill_local(pid, force)

        outcome = KillOutcome(
            pid=pid,
            process_name=name,
            ports=tuple(dict.fromkeys((e.port, e.protocol) for e in owned)),
            signal_name=signal_name(force),
            remote=session is not None,
        )
        logger.info(outcome.describe())
        return outcome

    def _kill_local(self, pid: int, force: bool) -> None:
        try:
            proc = psutil.Process(pid)
            if force:
                proc.kill()
            else:
                proc.terminate()
        except psutil.NoSuchProcess as e:
            raise NotFound(f"Process with PID {pid} not found. It may have already exited.") from e
        except psutil.AccessDenied as e:
            raise PermissionDenied(f"Permission denied killing PID {pid} - try running with sudo.") from e
        except (psutil.Error, OSError) as e:
            raise SignalFailed(f"Failed to signal PID {pid}: {e}") from e

    def _kill_remote(self, session: RemoteSession, pid: int, force: bool) -> None:
        try:
            result = session.kill(pid, force)
        except ExecError as e:
            raise SignalFailed(f"Could not signal PID {pid} on {session.spec.host}: {e}") from e

        if result.ok:
            return
        output = f"{result.stderr}\n{result.stdout}"
        if "No such process" in output:
            raise NotFound(f"Process {pid} not found on {session.spec.host}")
        if "not permitted" in output or "Permission denied" in output:
            raise PermissionDenied(f"Permission denied killing PID {pid} on {session.spec.host}. Try sudo on the remote host.")
        detail = result.stderr.strip() or f"exit status {result.exit_code}"
        raise SignalFailed(f"kill {pid} on {session.spec.host} failed: {detail}")

