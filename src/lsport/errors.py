"""Exception hierarchy for lsport."""


class LsportError(Exception):
    """Base class for all lsport errors."""


class ScanError(LsportError):
    """Socket enumeration failed for one refresh tick."""


class ConnectError(LsportError):
    """The remote host could not be reached or the SSH handshake failed."""


class AuthExhausted(ConnectError):
    """Every authentication method was tried and none succeeded."""

    def __init__(self, user: str, host: str, tried: list[str]) -> None:
        self.user = user
        self.host = host
        self.tried = list(tried)
        methods = ", ".join(tried) if tried else "none available"
        super().__init__(f"Authentication failed for {user}@{host} (tried: {methods})")


class ExecError(LsportError):
    """A remote command could not be executed."""


class SessionLost(ExecError, ScanError):
    """The SSH transport dropped while a command was running."""


class KillError(LsportError):
    """Base class for kill failures."""


class Ambiguous(KillError):
    """A port target matched more than one process."""

    def __init__(self, port: int, pids: list[int]) -> None:
        self.port = port
        self.pids = sorted(pids)
        listed = ", ".join(str(pid) for pid in self.pids)
        super().__init__(f"Port {port} is owned by several processes ({listed}); use --pid")


class NotFound(KillError):
    """The target is not in the current snapshot or no longer exists."""


class PermissionDenied(KillError):
    """The signal was refused by the operating system."""


class SignalFailed(KillError):
    """The signal could not be delivered for another reason."""
