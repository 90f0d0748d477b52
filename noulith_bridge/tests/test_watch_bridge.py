"""Tests for glob matching and the file watch bridge."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, Mock

import pytest
from watchdog.events import (
    DirCreatedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
)

from noulith_bridge.path_utils import expand_braces, glob_match, relative_posix, uri_from_path
from noulith_bridge.watch_bridge import (
    DID_CHANGE_WATCHED_FILES,
    FileChangeType,
    WatchBridge,
    WatchSubscription,
    _EventHandler,
)

from .conftest import wait_until


def running_session(running: bool = True) -> Mock:
    session = Mock()
    session.is_running = running
    session.notify = AsyncMock(return_value=True)
    return session


class TestGlobMatch:
    """Test the glob dialect used for watch patterns."""

    @pytest.mark.parametrize("pattern,path", [
        ("**/*.noul", "a.noul"),
        ("**/*.noul", "src/deep/er/a.noul"),
        ("*.noul", "main.noul"),
        ("src/**", "src/x/y"),
        ("src/?.noul", "src/a.noul"),
        ("**/*.{noul,txt}", "lib/notes.txt"),
        ("[a-c]*.noul", "b1.noul"),
    ])
    def test_matches(self, pattern, path):
        assert glob_match(pattern, path)

    @pytest.mark.parametrize("pattern,path", [
        ("**/*.noul", "a.noulx"),
        ("*.noul", "src/main.noul"),
        ("src/?.noul", "src/ab.noul"),
        ("**/*.{noul,txt}", "lib/notes.md"),
        ("[!a-c]*.noul", "b1.noul"),
    ])
    def test_does_not_match(self, pattern, path):
        assert not glob_match(pattern, path)

    def test_expand_nested_braces(self):
        assert expand_braces("{a,b{1,2}}.x") == ["a.x", "b1.x", "b2.x"]

    def test_unbalanced_brace_is_literal(self):
        assert expand_braces("a{b.x") == ["a{b.x"]


class TestPathHelpers:
    """Test path and URI conversion."""

    def test_relative_inside_and_outside(self, tmp_path):
        assert relative_posix(str(tmp_path / "a" / "b.noul"), str(tmp_path)) == "a/b.noul"
        assert relative_posix(str(tmp_path.parent / "other"), str(tmp_path)) is None

    def test_uri_is_percent_encoded(self, tmp_path):
        uri = uri_from_path(str(tmp_path / "with space" / "a.noul"))
        assert uri.startswith("file:///")
        assert uri.endswith("/with%20space/a.noul")


class TestHandleEvent:
    """Test the loop-side conversion of events to notifications."""

    @pytest.mark.asyncio
    async def test_forwards_matching_event(self, tmp_path):
        session = running_session()
        bridge = WatchBridge(session, str(tmp_path), ["**/*.noul"])
        path = str(tmp_path / "pkg" / "mod.noul")

        assert await bridge.handle_event(path, FileChangeType.CREATED) is True

        session.notify.assert_awaited_once_with(
            DID_CHANGE_WATCHED_FILES,
            {"changes": [{"uri": uri_from_path(path), "type": 1}]},
        )
        assert bridge.forwarded == 1

    @pytest.mark.asyncio
    async def test_ignores_non_matching_path(self, tmp_path):
        session = running_session()
        bridge = WatchBridge(session, str(tmp_path), ["**/*.noul"])
        assert await bridge.handle_event(str(tmp_path / "readme.md"), FileChangeType.CHANGED) is False
        session.notify.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_drops_when_session_not_running(self, tmp_path):
        session = running_session(running=False)
        bridge = WatchBridge(session, str(tmp_path), ["**/*.noul"])
        assert await bridge.handle_event(str(tmp_path / "a.noul"), FileChangeType.DELETED) is False
        session.notify.assert_not_awaited()
        assert bridge.dropped == 1

    @pytest.mark.asyncio
    async def test_notify_refused_counts_as_dropped(self, tmp_path):
        session = running_session()
        session.notify.return_value = False
        bridge = WatchBridge(session, str(tmp_path), ["**/*.noul"])
        assert await bridge.handle_event(str(tmp_path / "a.noul"), FileChangeType.CHANGED) is False
        assert bridge.dropped == 1
        assert bridge.forwarded == 0

    @pytest.mark.asyncio
    async def test_schedule_drops_before_running(self, tmp_path):
        session = running_session(running=False)
        bridge = WatchBridge(session, str(tmp_path), ["**/*.noul"])
        bridge._schedule(str(tmp_path / "a.noul"), FileChangeType.CREATED)
        await asyncio.sleep(0)
        assert bridge.dropped == 1
        session.notify.assert_not_awaited()


class TestEventHandler:
    """Test translation of watchdog events."""

    def make_handler(self, tmp_path, pattern="**/*.noul"):
        received = []
        subscription = WatchSubscription(pattern=pattern, callback=lambda p, t: received.append((p, t)))
        return _EventHandler(subscription, str(tmp_path)), received

    def test_created_modified_deleted(self, tmp_path):
        handler, received = self.make_handler(tmp_path)
        path = str(tmp_path / "a.noul")
        handler.dispatch(FileCreatedEvent(path))
        handler.dispatch(FileModifiedEvent(path))
        handler.dispatch(FileDeletedEvent(path))
        assert received == [
            (path, FileChangeType.CREATED),
            (path, FileChangeType.CHANGED),
            (path, FileChangeType.DELETED),
        ]

    def test_move_is_delete_plus_create(self, tmp_path):
        handler, received = self.make_handler(tmp_path)
        src, dest = str(tmp_path / "old.noul"), str(tmp_path / "new.noul")
        handler.dispatch(FileMovedEvent(src, dest))
        assert received == [(src, FileChangeType.DELETED), (dest, FileChangeType.CREATED)]

    def test_move_out_of_pattern_only_deletes(self, tmp_path):
        handler, received = self.make_handler(tmp_path)
        src, dest = str(tmp_path / "a.noul"), str(tmp_path / "a.bak")
        handler.dispatch(FileMovedEvent(src, dest))
        assert received == [(src, FileChangeType.DELETED)]

    def test_directories_and_other_files_ignored(self, tmp_path):
        handler, received = self.make_handler(tmp_path)
        handler.dispatch(DirCreatedEvent(str(tmp_path / "dir.noul")))
        handler.dispatch(FileCreatedEvent(str(tmp_path / "a.txt")))
        assert received == []


class TestObserverLifecycle:
    """Test scheduling and releasing watchdog subscriptions."""

    @pytest.mark.asyncio
    async def test_one_subscription_per_pattern(self, tmp_path):
        observer = MagicMock()
        observer.schedule.side_effect = ["watch-1", "watch-2"]
        bridge = WatchBridge(running_session(), str(tmp_path), ["**/*.noul", "*.toml"],
                             observer_factory=lambda: observer)

        bridge.start()
        assert bridge.is_watching
        assert [s.watch for s in bridge.subscriptions] == ["watch-1", "watch-2"]
        for call in observer.schedule.call_args_list:
            assert call.args[1] == str(tmp_path)
            assert call.kwargs["recursive"] is True
        observer.start.assert_called_once()

        bridge.stop()
        assert not bridge.is_watching
        assert observer.remove_handler_for_watch.call_count == 2
        observer.stop.assert_called_once()
        observer.join.assert_called_once()

        # Second stop is a no-op
        bridge.stop()
        observer.stop.assert_called_once()

    @pytest.mark.asyncio
    async def test_missing_root_is_not_watched(self, tmp_path):
        factory = Mock()
        bridge = WatchBridge(running_session(), str(tmp_path / "missing"), ["**/*.noul"],
                             observer_factory=factory)
        bridge.start()
        assert not bridge.is_watching
        factory.assert_not_called()

    @pytest.mark.asyncio
    async def test_no_patterns_means_no_observer(self, tmp_path):
        factory = Mock()
        bridge = WatchBridge(running_session(), str(tmp_path), [], observer_factory=factory)
        bridge.start()
        assert not bridge.is_watching
        factory.assert_not_called()

    @pytest.mark.asyncio
    async def test_real_observer_forwards_file_creation(self, tmp_path):
        session = running_session()
        bridge = WatchBridge(session, str(tmp_path), ["**/*.noul"])
        bridge.start()
        try:
            # Give the observer thread a moment to arm
            await asyncio.sleep(0.2)
            target = tmp_path / "created.noul"
            target.write_text("x := 1\n")
            (tmp_path / "ignored.txt").write_text("nope\n")

            await wait_until(lambda: session.notify.await_count > 0, timeout=5.0)
            uris = [
                change["uri"]
                for call in session.notify.await_args_list
                for change in call.args[1]["changes"]
            ]
            assert uri_from_path(str(target)) in uris
            assert all(uri.endswith(".noul") for uri in uris)
        finally:
            bridge.stop()
