"""Tests for the psutil-backed process directory."""

import os

import psutil

from lsport.process_directory import ProcessDirectory


class TestProcessDirectory:
    """Tests for ProcessDirectory."""

    def test_contains_current_process(self):
        directory = ProcessDirectory()

        processes = directory.snapshot()

        me = processes[os.getpid()]
        assert me.name
        assert me.parent_pid == os.getppid()
        assert me.memory_bytes > 0

    def test_handles_are_reused(self):
        """CPU deltas need the same Process object between snapshots."""
        directory = ProcessDirectory()
        directory.snapshot()
        handle = directory._handles[os.getpid()]

        processes = directory.snapshot()

        assert directory._handles[os.getpid()] is handle
        assert processes[os.getpid()].cpu_percent >= 0.0

    def test_vanished_process_is_dropped(self, monkeypatch):
        real_pids = psutil.pids()
        monkeypatch.setattr(psutil, "pids", lambda: real_pids + [2**22 + 12345])

        processes = ProcessDirectory().snapshot()

        assert 2**22 + 12345 not in processes
        assert os.getpid() in processes

    def test_access_denied_degrades_fields(self, monkeypatch):
        def denied(self):
            raise psutil.AccessDenied(self.pid)

        monkeypatch.setattr(psutil, "pids", lambda: [os.getpid()])
        monkeypatch.setattr(psutil.Process, "memory_info", denied)
        monkeypatch.setattr(psutil.Process, "name", denied)

        info = ProcessDirectory().snapshot()[os.getpid()]

        assert info.name is None
        assert info.memory_bytes == 0
        assert info.parent_pid == os.getppid()
