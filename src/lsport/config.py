"""Runtime settings for lsport.

Settings come from built-in defaults, optionally overridden by ``LSPORT_*``
environment variables, and finally by command-line flags. Nothing is read
from or written to disk.
"""

import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path

logger = logging.getLogger("lsport.config")

DEFAULT_KEY_NAMES = ("id_ed25519", "id_rsa", "id_ecdsa")


def default_key_paths() -> tuple[Path, ...]:
    """Default private key locations, tried in order after the SSH agent."""
    ssh_dir = Path.home() / ".ssh"
    return tuple(ssh_dir / name for name in DEFAULT_KEY_NAMES)


@dataclass(frozen=True)
class Settings:
    """
    Tunables for scanning, remote sessions and the zombie heuristic.

    Attributes:
        scan_interval: Seconds between refresh ticks.
        suspicious_cpu_threshold: CPU% above which an orphaned process is
            flagged as suspicious.
        connect_timeout: Seconds allowed for TCP connect + SSH handshake.
        command_timeout: Seconds allowed for one remote command.
        tool_timeout: Seconds allowed for a local fallback tool (ss, lsof).
        default_key_paths: Private keys tried after the SSH agent.
    """

    scan_interval: float = 2.0
    suspicious_cpu_threshold: float = 50.0
    connect_timeout: float = 10.0
    command_timeout: float = 15.0
    tool_timeout: float = 5.0
    default_key_paths: tuple[Path, ...] = field(default_factory=default_key_paths)

    ENV_PREFIX = "LSPORT_"

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "Settings":
        """Build settings from ``LSPORT_*`` variables, ignoring invalid values."""
        environ = os.environ if environ is None else environ
        overrides: dict[str, object] = {}

        for f in fields(cls):
            raw = environ.get(cls.ENV_PREFIX + f.name.upper())
            if raw is None or raw.strip() == "":
                continue
            if f.name == "default_key_paths":
                overrides[f.name] = tuple(
                    Path(part).expanduser() for part in raw.split(os.pathsep) if part
                )
                continue
            try:
                value = float(raw)
            except ValueError:
                logger.warning("Ignoring %s%s=%r: not a number", cls.ENV_PREFIX, f.name.upper(), raw)
                continue
            if value <= 0 and f.name != "suspicious_cpu_threshold":
                logger.warning("Ignoring %s%s=%r: must be positive", cls.ENV_PREFIX, f.name.upper(), raw)
                continue
            overrides[f.name] = value

        return cls(**overrides)

    def with_overrides(self, **changes: object) -> "Settings":
        """Return a copy with the non-None keyword arguments applied."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})
