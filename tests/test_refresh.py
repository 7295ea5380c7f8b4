"""Tests for the background refresh loop."""

import threading
import time
from queue import Empty, Queue

import pytest

from conftest import FakeSession, ScriptedCollector
from lsport.errors import ConnectError, ScanError, SessionLost
from lsport.models import Notice, ProcessInfo, Protocol, RawSocket, Snapshot, Source
from lsport.refresh import Connect, Disconnect, LoopState, Refresh, RefreshLoop, SetInterval
from lsport.remote import HostSpec
from lsport.scanning import LocalMode, RemoteMode

SPEC = HostSpec("tester", "remote.example", 22)
NGINX = ([RawSocket(80, Protocol.TCP, 10)], {10: ProcessInfo(name="nginx", parent_pid=1)})
SSHD = ([RawSocket(22, Protocol.TCP, 20)], {20: ProcessInfo(name="sshd")})


def drain(queue):
    items = []
    while True:
        try:
            items.append(queue.get_nowait())
        except Empty:
            return items


def notices(items):
    return [item for item in items if isinstance(item, Notice)]


def make_loop(steps, connector=None, poll_rate=2.0):
    queue: Queue = Queue()
    collector = ScriptedCollector(steps)
    loop = RefreshLoop(queue, collector, poll_rate=poll_rate, connector=connector)
    return loop, queue, collector


class TestRefreshLoopBasics:
    """Tests for RefreshLoop construction and settings."""

    def test_creation(self):
        loop, _, _ = make_loop([NGINX])

        assert loop.poll_rate == 2.0
        assert not loop.is_running
        assert loop.state is LoopState.IDLE
        assert loop.latest.entries == ()
        assert loop.session is None

    def test_poll_rate_minimum(self):
        loop, _, _ = make_loop([NGINX], poll_rate=0.01)
        assert loop.poll_rate == 0.1

        loop.poll_rate = 5.0
        assert loop.poll_rate == 5.0

    def test_set_interval_command(self):
        loop, _, _ = make_loop([NGINX])

        assert not loop.handle(SetInterval(0.5))
        assert loop.poll_rate == 0.5

        loop.handle(SetInterval(0.0))
        assert loop.poll_rate == 0.1


class TestTick:
    """Tests for one scan-merge-publish cycle."""

    def test_publishes_snapshot(self):
        loop, queue, _ = make_loop([NGINX])

        snapshot = loop.tick()

        assert snapshot.ok
        assert snapshot.entries[0].process_name == "nginx"
        assert drain(queue) == [snapshot]
        assert loop.latest is snapshot
        assert loop.state is LoopState.PUBLISHED

    def test_scan_error_keeps_previous_entries(self):
        loop, queue, _ = make_loop([NGINX, ScanError("ss failed")])
        first = loop.tick()

        second = loop.tick()

        assert second.entries == first.entries
        assert second.error == "ss failed"
        assert drain(queue) == [first, second]

    def test_unexpected_error_does_not_stop_the_loop(self):
        loop, _, _ = make_loop([RuntimeError("bug"), NGINX])

        failed = loop.tick()
        recovered = loop.tick()

        assert "bug" in failed.error
        assert recovered.ok


class TestConnect:
    """Tests for switching to a remote source."""

    def test_connect_success(self):
        session = FakeSession()
        loop, queue, collector = make_loop([NGINX], connector=lambda spec, identity: session)

        assert loop.handle(Connect(SPEC))
        snapshot = loop.tick()

        assert loop.session is session
        assert isinstance(collector.modes[-1], RemoteMode)
        assert snapshot.source == Source.remote(SPEC.display)
        assert [n.level for n in notices(drain(queue))] == ["info", "success"]

    def test_connect_failure_keeps_mode(self):
        def refuse(spec, identity):
            raise ConnectError("Connection refused")

        loop, queue, collector = make_loop([NGINX], connector=refuse)

        assert not loop.handle(Connect(SPEC))
        loop.tick()

        assert loop.session is None
        assert isinstance(collector.modes[-1], LocalMode)
        levels = [n.level for n in notices(drain(queue))]
        assert levels == ["info", "error"]

    def test_reconnect_closes_previous_session(self):
        sessions = [FakeSession(), FakeSession(host="other")]
        loop, _, _ = make_loop([NGINX], connector=lambda spec, identity: sessions.pop(0))
        loop.handle(Connect(SPEC))
        first = loop.session

        loop.handle(Connect(HostSpec("tester", "other")))

        assert first.closed
        assert loop.session is not first

    def test_error_on_new_source_starts_empty(self):
        """Entries from the local scan never appear under the remote label."""
        loop, _, _ = make_loop([NGINX, ScanError("no tools")], connector=lambda spec, identity: FakeSession())
        loop.tick()
        loop.handle(Connect(SPEC))

        snapshot = loop.tick()

        assert snapshot.source.is_remote
        assert snapshot.entries == ()
        assert snapshot.error == "no tools"

    def test_disconnect(self):
        session = FakeSession()
        loop, queue, collector = make_loop([NGINX], connector=lambda spec, identity: session)
        loop.handle(Connect(SPEC))

        assert loop.handle(Disconnect())
        loop.tick()

        assert session.closed
        assert loop.session is None
        assert isinstance(collector.modes[-1], LocalMode)
        assert "Disconnected" in notices(drain(queue))[-1].message


class TestSessionLoss:
    """Tests for a remote session dropping mid-scan."""

    def test_falls_back_to_local(self):
        session = FakeSession()
        loop, queue, collector = make_loop(
            [NGINX, SessionLost("connection reset"), SSHD],
            connector=lambda spec, identity: session,
        )
        loop.handle(Connect(SPEC))
        good = loop.tick()
        drain(queue)

        lost = loop.tick()

        assert lost.entries == good.entries
        assert lost.source == good.source
        assert lost.error.startswith("Session lost")
        assert session.closed
        assert loop.session is None
        items = drain(queue)
        assert items[0] is lost
        assert notices(items)[0].level == "error"

        after = loop.tick()
        assert isinstance(collector.modes[-1], LocalMode)
        assert after.source == Source.local()
        assert after.ok


class TestGeneration:
    """Tests for discarding results of a replaced mode."""

    def test_result_discarded_when_mode_changes_mid_scan(self):
        holder = {}

        def scan_then_switch(mode):
            holder["loop"].disconnect()
            return NGINX

        queue: Queue = Queue()
        loop = RefreshLoop(queue, ScriptedCollector(scan_then_switch))
        holder["loop"] = loop

        assert loop.tick() is None
        assert drain(queue) == []
        assert loop.latest.entries == ()

    @pytest.mark.parametrize("failure", [ScanError("No socket listing tool available"), RuntimeError("boom")])
    def test_failed_remote_scan_discarded_after_disconnect(self, failure):
        holder = {}

        def disconnect_then_fail(mode):
            holder["loop"].disconnect()
            raise failure

        session = FakeSession()
        queue: Queue = Queue()
        loop = RefreshLoop(queue, ScriptedCollector(disconnect_then_fail), connector=lambda spec, identity: session)
        holder["loop"] = loop
        loop.handle(Connect(SPEC))
        drain(queue)

        assert loop.tick() is None
        assert drain(queue) == []
        assert loop.latest.source == Source.local()
        assert loop.latest.ok

    def test_result_kept_without_mode_change(self):
        loop, _, _ = make_loop([NGINX])
        loop.request_refresh()

        assert loop.tick() is not None


class TestCommands:
    """Tests for command handling between ticks."""

    def test_refresh_requests_coalesce(self):
        loop, _, _ = make_loop([NGINX], poll_rate=30.0)
        for _ in range(5):
            loop.request_refresh()

        started = time.monotonic()
        loop._wait_for_next_tick()

        assert time.monotonic() - started < 1.0
        assert loop._commands.empty()

    def test_refresh_returns_true(self):
        loop, _, _ = make_loop([NGINX])
        assert loop.handle(Refresh())

    def test_unknown_command(self):
        loop, _, _ = make_loop([NGINX])
        with pytest.raises(TypeError):
            loop.handle("nonsense")


class TestThreaded:
    """Tests that run the loop on its thread."""

    def test_start_stop(self):
        loop, queue, _ = make_loop([NGINX], poll_rate=0.1)

        loop.start()
        try:
            assert loop.is_running
            names = {t.name: t for t in threading.enumerate()}
            assert "RefreshLoop" in names
            assert names["RefreshLoop"].daemon
            assert isinstance(queue.get(timeout=2.0), Snapshot)
        finally:
            loop.stop()

        assert not loop.is_running

    def test_start_twice_is_noop(self):
        loop, _, _ = make_loop([NGINX], poll_rate=0.1)
        loop.start()
        thread = loop._thread
        try:
            loop.start()
            assert loop._thread is thread
        finally:
            loop.stop()

    def test_request_refresh_scans_immediately(self):
        loop, queue, _ = make_loop([NGINX], poll_rate=30.0)
        loop.start()
        try:
            queue.get(timeout=2.0)

            loop.request_refresh()

            assert isinstance(queue.get(timeout=2.0), Snapshot)
        finally:
            loop.stop()

    def test_connect_from_control_path(self):
        session = FakeSession()
        loop, queue, _ = make_loop([NGINX], connector=lambda spec, identity: session, poll_rate=30.0)
        loop.start()
        try:
            queue.get(timeout=2.0)

            loop.connect(SPEC)

            deadline = time.monotonic() + 5.0
            remote_snapshot = None
            while remote_snapshot is None and time.monotonic() < deadline:
                item = queue.get(timeout=1.0)
                if isinstance(item, Snapshot) and item.source.is_remote:
                    remote_snapshot = item
            assert remote_snapshot is not None
        finally:
            loop.stop()

        assert session.closed
