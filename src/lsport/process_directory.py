"""Local process directory backed by psutil."""

import logging

import psutil

from lsport.models import ProcessInfo

logger = logging.getLogger("lsport.process_directory")


class ProcessDirectory:
    """
    Snapshot provider for running processes and their resource metrics.

    CPU percentages are deltas between two calls, so the psutil.Process
    handles are kept alive between snapshots. Create one instance and keep
    it for the lifetime of the engine; a fresh instance reports 0.0 CPU for
    every process on its first call.
    """

    def __init__(self) -> None:
        """Initialize the ProcessDirectory."""
        self._handles: dict[int, psutil.Process] = {}

    def snapshot(self) -> dict[int, ProcessInfo]:
        """
        Return a mapping of PID to ProcessInfo for every visible process.

        Processes that die mid-iteration or are zombies are skipped.
        Fields that cannot be read due to AccessDenied degrade to defaults.
        """
        processes: dict[int, ProcessInfo] = {}
        alive: dict[int, psutil.Process] = {}

        for pid in psutil.pids():
            proc = self._handle(pid)
            if proc is None:
                continue
            try:
                with proc.oneshot():
                    processes[pid] = ProcessInfo(
                        name=_read(proc.name),
                        cpu_percent=_read(proc.cpu_percent, 0.0) or 0.0,
                        memory_bytes=_read_rss(proc),
                        parent_pid=_read(proc.ppid),
                    )
                alive[pid] = proc
            except (psutil.NoSuchProcess, psutil.ZombieProcess):
                # Process died mid-poll
                continue

        self._handles = alive
        return processes

    def _handle(self, pid: int) -> psutil.Process | None:
        """Return a cached handle for pid, replacing it if the PID was reused."""
        proc = self._handles.get(pid)
        if proc is not None:
            try:
                if proc.is_running():
                    return proc
            except psutil.Error:
                pass
        try:
            proc = psutil.Process(pid)
            # Prime the CPU counter; the first reading is always 0.0
            proc.cpu_percent(interval=None)
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            return None
        except psutil.AccessDenied:
            logger.debug("Access denied priming CPU counter for pid %d", pid)
        return proc


def _read(getter, default=None):
    """Call a psutil accessor, mapping AccessDenied to a default."""
    try:
        return getter()
    except psutil.AccessDenied:
        return default


def _read_rss(proc: psutil.Process) -> int:
    try:
        return proc.memory_info().rss
    except psutil.AccessDenied:
        return 0
