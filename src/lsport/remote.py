"""SSH session used to run diagnostic commands on a remote host."""

import getpass
import logging
import socket
import threading
from dataclasses import dataclass
from pathlib import Path

import paramiko

from lsport.config import Settings
from lsport.errors import AuthExhausted, ConnectError, SessionLost

logger = logging.getLogger("lsport.remote")

DEFAULT_SSH_PORT = 22
_KEY_CLASSES = (paramiko.Ed25519Key, paramiko.RSAKey, paramiko.ECDSAKey)


def _current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "root"


@dataclass(frozen=True)
class HostSpec:
    """A parsed ``[user@]host[:port]`` string."""

    user: str
    host: str
    port: int = DEFAULT_SSH_PORT

    @classmethod
    def parse(cls, spec: str) -> "HostSpec":
        """
        Parse ``[user@]host[:port]``.

        The user defaults to the invoking OS user and the port to 22.
        IPv6 hosts with a port must be bracketed: ``root@[::1]:2222``.

        Raises:
            ValueError: on an empty host or user, or an invalid port.
        """
        text = spec.strip()
        if not text:
            raise ValueError("Host cannot be empty")

        if "@" in text:
            user, _, rest = text.partition("@")
            if not user:
                raise ValueError(f"Empty user in {spec!r}")
        else:
            user, rest = _current_user(), text

        port_str: str | None = None
        if rest.startswith("["):
            end = rest.find("]")
            if end == -1:
                raise ValueError(f"Unterminated '[' in {spec!r}")
            host, after = rest[1:end], rest[end + 1 :]
            if after:
                if not after.startswith(":"):
                    raise ValueError(f"Unexpected text after host in {spec!r}")
                port_str = after[1:]
        elif rest.count(":") == 1:
            host, port_str = rest.split(":")
        else:
            # Plain host or an unbracketed IPv6 address
            host = rest

        if not host:
            raise ValueError("Host cannot be empty")

        port = DEFAULT_SSH_PORT
        if port_str is not None:
            if not port_str.isdigit() or not 0 < int(port_str) <= 65535:
                raise ValueError(f"Invalid port number: {port_str!r}")
            port = int(port_str)

        return cls(user=user, host=host, port=port)

    @property
    def display(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"{self.user}@{host}:{self.port}"


@dataclass(frozen=True)
class ExecResult:
    """Captured output of one remote command."""

    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def load_private_key(path: Path) -> paramiko.PKey:
    """
    Load an unencrypted private key of any supported type.

    Raises:
        paramiko.SSHException: if the file is not a usable key.
        OSError: if the file cannot be read.
    """
    last_error: Exception | None = None
    for key_class in _KEY_CLASSES:
        try:
            return key_class.from_private_key_file(str(path))
        except paramiko.PasswordRequiredException:
            raise
        except paramiko.SSHException as e:
            last_error = e
    raise paramiko.SSHException(f"Unsupported key format in {path}: {last_error}")


class RemoteSession:
    """
    One authenticated SSH connection to a single host.

    The only capability is running a command and capturing its output.
    Calls to execute() are serialised, so the refresh thread and the
    control path can share a session.
    """

    def __init__(
        self,
        spec: HostSpec,
        transport: paramiko.Transport,
        auth_method: str,
        identity_path: Path | None = None,
        command_timeout: float = 15.0,
    ) -> None:
        self.spec = spec
        self.auth_method = auth_method
        self.identity_path = identity_path
        self._transport: paramiko.Transport | None = transport
        self._command_timeout = command_timeout
        self._lock = threading.Lock()

    @classmethod
    def connect(
        cls,
        spec: HostSpec,
        identity_path: Path | None = None,
        settings: Settings | None = None,
    ) -> "RemoteSession":
        """
        Open and authenticate a session.

        Authentication order: the explicit identity file, then keys offered
        by a running SSH agent, then the default key files.

        Raises:
            ConnectError: the host is unreachable or the handshake failed.
            AuthExhausted: every authentication method was rejected.
        """
        settings = settings or Settings()
        logger.info("Connecting to %s", spec.display)

        try:
            sock = socket.create_connection((spec.host, spec.port), timeout=settings.connect_timeout)
        except OSError as e:
            raise ConnectError(f"Failed to connect to {spec.host}:{spec.port}: {e}") from e

        transport = paramiko.Transport(sock)
        try:
            transport.start_client(timeout=settings.connect_timeout)
            _check_host_key(spec, transport)
            method = _authenticate(transport, spec, identity_path, settings.default_key_paths)
        except ConnectError:
            transport.close()
            raise
        except (paramiko.SSHException, OSError, EOFError) as e:
            transport.close()
            raise ConnectError(f"SSH handshake with {spec.display} failed: {e}") from e

        logger.info("Connected to %s using %s", spec.display, method)
        return cls(spec, transport, method, identity_path, settings.command_timeout)

    @property
    def is_connected(self) -> bool:
        return self._transport is not None and self._transport.is_active()

    def execute(self, command: str) -> ExecResult:
        """
        Run a command and capture stdout, stderr and exit status.

        Raises:
            SessionLost: the transport is closed or failed mid-command.
        """
        with self._lock:
            if not self.is_connected:
                raise SessionLost(f"Not connected to {self.spec.display}")
            logger.debug("exec on %s: %s", self.spec.host, command)
            try:
                channel = self._transport.open_session(timeout=self._command_timeout)
                try:
                    channel.settimeout(self._command_timeout)
                    channel.exec_command(command)
                    stdout = channel.makefile("rb").read()
                    stderr = channel.makefile_stderr("rb").read()
                    exit_code = channel.recv_exit_status()
                finally:
                    channel.close()
            except (paramiko.SSHException, OSError, EOFError) as e:
                raise SessionLost(f"Lost connection to {self.spec.display}: {e}") from e

        return ExecResult(
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            exit_code=exit_code,
        )

    def kill(self, pid: int, force: bool = False) -> ExecResult:
        """Send SIGTERM (or SIGKILL when force) to a remote process."""
        signal_name = "KILL" if force else "TERM"
        return self.execute(f"kill -{signal_name} {int(pid)}")

    def close(self) -> None:
        with self._lock:
            if self._transport is not None:
                self._transport.close()
                logger.info("Disconnected from %s", self.spec.display)
                self._transport = None


def _check_host_key(spec: HostSpec, transport: paramiko.Transport) -> None:
    """Compare the server key with ~/.ssh/known_hosts when that file exists."""
    known_hosts = Path.home() / ".ssh" / "known_hosts"
    if not known_hosts.is_file():
        return
    try:
        host_keys = paramiko.HostKeys(str(known_hosts))
    except (OSError, paramiko.SSHException) as e:
        logger.warning("Could not read %s: %s", known_hosts, e)
        return

    lookup_name = spec.host if spec.port == DEFAULT_SSH_PORT else f"[{spec.host}]:{spec.port}"
    server_key = transport.get_remote_server_key()
    entry = host_keys.lookup(lookup_name)
    if entry is None or server_key.get_name() not in entry:
        logger.warning("Host %s is not in %s; accepting its key", lookup_name, known_hosts)
        return
    if entry[server_key.get_name()] != server_key:
        raise ConnectError(f"Host key for {lookup_name} does not match {known_hosts}")


def _authenticate(
    transport: paramiko.Transport,
    spec: HostSpec,
    identity_path: Path | None,
    default_keys: tuple[Path, ...],
) -> str:
    """Try each authentication method in order and return the one that worked."""
    user = spec.user
    tried: list[str] = []

    if identity_path is not None:
        path = Path(identity_path).expanduser()
        tried.append(f"identity {path}")
        key = _load_or_none(path)
        if key is not None and _try_key(transport, user, key):
            return f"identity {path}"

    agent = paramiko.Agent()
    try:
        agent_keys = agent.get_keys()
        if agent_keys:
            tried.append("ssh-agent")
        for key in agent_keys:
            if _try_key(transport, user, key):
                return "ssh-agent"
    finally:
        agent.close()

    for path in default_keys:
        if not path.exists():
            continue
        tried.append(str(path))
        key = _load_or_none(path)
        if key is not None and _try_key(transport, user, key):
            return f"key {path}"

    raise AuthExhausted(user, spec.host, tried)


def _load_or_none(path: Path) -> paramiko.PKey | None:
    try:
        return load_private_key(path)
    except paramiko.PasswordRequiredException:
        logger.info("Skipping %s: key is passphrase protected", path)
    except (paramiko.SSHException, OSError) as e:
        logger.info("Skipping %s: %s", path, e)
    return None


def _try_key(transport: paramiko.Transport, user: str, key: paramiko.PKey) -> bool:
    try:
        transport.auth_publickey(user, key)
    except paramiko.AuthenticationException:
        return False
    return transport.is_authenticated()
