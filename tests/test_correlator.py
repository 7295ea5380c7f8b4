"""Tests for socket/process correlation."""

from lsport.correlator import correlate, has_live_parent, is_suspicious, merge
from lsport.models import ProcessInfo, Protocol, RawSocket, Source


class RecordingMap(dict):
    """Process map that records every PID looked up."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.looked_up: set[int] = set()

    def get(self, key, default=None):
        self.looked_up.add(key)
        return super().get(key, default)


class TestZombieHeuristic:
    """Tests for the high-CPU orphan heuristic."""

    def test_orphan_above_threshold_is_suspicious(self):
        """80% CPU with a parent that is gone at threshold 50."""
        processes = {100: ProcessInfo(name="zombie", cpu_percent=80.0, parent_pid=999)}

        entry = correlate(RawSocket(8080, Protocol.TCP, 100), processes, threshold=50.0)

        assert entry.is_suspicious
        assert not entry.has_live_parent

    def test_live_parent_is_not_suspicious(self):
        processes = {
            100: ProcessInfo(name="worker", cpu_percent=80.0, parent_pid=10),
            10: ProcessInfo(name="master"),
        }

        entry = correlate(RawSocket(8080, Protocol.TCP, 100), processes, threshold=50.0)

        assert entry.has_live_parent
        assert not entry.is_suspicious

    def test_threshold_is_exclusive(self):
        assert not is_suspicious(50.0, live_parent=False, threshold=50.0)
        assert is_suspicious(50.1, live_parent=False, threshold=50.0)

    def test_reparented_to_init_has_no_live_parent(self):
        processes = {1: ProcessInfo(name="init"), 0: ProcessInfo(name="kernel")}

        assert not has_live_parent(1, processes)
        assert not has_live_parent(0, processes)
        assert not has_live_parent(None, processes)
        assert not has_live_parent(42, processes)


class TestCorrelate:
    """Tests for correlate."""

    def test_metrics_copied(self):
        processes = {100: ProcessInfo(name="nginx", cpu_percent=3.5, memory_bytes=4096, parent_pid=1)}

        entry = correlate(RawSocket(80, Protocol.TCP, 100, "ngx-hint"), processes, threshold=50.0)

        assert entry.process_name == "nginx"
        assert entry.cpu_percent == 3.5
        assert entry.memory_bytes == 4096
        assert entry.parent_pid == 1

    def test_unknown_owner(self):
        entry = correlate(RawSocket(53, Protocol.UDP, None, "resolved"), {}, threshold=50.0)

        assert entry.pid is None
        assert entry.process_name == "resolved"
        assert entry.cpu_percent == 0.0
        assert not entry.is_suspicious

    def test_process_exited_between_scans(self):
        """A PID missing from the process map keeps the name hint and no metrics."""
        entry = correlate(RawSocket(9000, Protocol.TCP, 4242, "gone"), {}, threshold=0.0)

        assert entry.pid == 4242
        assert entry.process_name == "gone"
        assert entry.memory_bytes == 0
        assert not entry.is_suspicious

    def test_unreadable_name_falls_back_to_hint(self):
        processes = {7: ProcessInfo(name=None, cpu_percent=1.0)}

        entry = correlate(RawSocket(22, Protocol.TCP, 7, "sshd"), processes, threshold=50.0)

        assert entry.process_name == "sshd"


class TestMerge:
    """Tests for merge."""

    def test_every_pid_is_looked_up(self):
        raw = [
            RawSocket(80, Protocol.TCP, 10),
            RawSocket(443, Protocol.TCP, 11),
            RawSocket(53, Protocol.UDP, None),
        ]
        processes = RecordingMap({10: ProcessInfo(name="a"), 11: ProcessInfo(name="b")})

        merge(raw, processes, Source.local())

        assert {10, 11} <= processes.looked_up

    def test_keeps_scan_order(self):
        raw = [RawSocket(443, Protocol.TCP, 2), RawSocket(22, Protocol.TCP, 1)]

        snapshot = merge(raw, {}, Source.local())

        assert [e.port for e in snapshot.entries] == [443, 22]

    def test_collapses_duplicate_triples(self):
        """IPv4 and IPv6 binds of one process show up once."""
        raw = [
            RawSocket(80, Protocol.TCP, 10),
            RawSocket(80, Protocol.TCP, 10),
            RawSocket(80, Protocol.UDP, 10),
            RawSocket(80, Protocol.TCP, 11),
        ]

        snapshot = merge(raw, {}, Source.local())

        assert [e.key for e in snapshot.entries] == [
            (80, Protocol.TCP, 10),
            (80, Protocol.UDP, 10),
            (80, Protocol.TCP, 11),
        ]

    def test_source_and_threshold(self):
        raw = [RawSocket(80, Protocol.TCP, 10)]
        processes = {10: ProcessInfo(name="busy", cpu_percent=30.0, parent_pid=1)}
        source = Source.remote("root@box:22")

        low = merge(raw, processes, source, threshold=20.0)
        high = merge(raw, processes, source, threshold=50.0)

        assert low.source == source
        assert low.ok
        assert low.entries[0].is_suspicious
        assert not high.entries[0].is_suspicious
