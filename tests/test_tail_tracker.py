"""
Tests for the file tail tracker.
"""

import asyncio
import os
import sys

import pytest

from tailthon.config import OBSERVER_NATIVE, TailConfig
from tailthon.tail_tracker import FileTailTracker, TailChannel, WatchState, split_lines


def append(path, text):
    with open(path, "a") as f:
        f.write(text)


async def next_batch(channel: TailChannel, timeout: float = 5.0):
    return await asyncio.wait_for(channel.get(), timeout=timeout)


async def wait_for_state(tracker, path, state, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while tracker.get_entry(path).state is not state:
        assert loop.time() < deadline, f"{path} never reached {state}"
        await asyncio.sleep(0.02)


@pytest.fixture
def existing_log(log_dir):
    path = log_dir / "app.out"
    path.write_text("x" * 99 + "\n")
    return path


class TestSplitLines:
    """Tests for line splitting."""

    def test_drops_blank_lines(self):
        assert split_lines("a\n\n  \nb\n") == ["a", "b"]

    def test_keeps_partial_last_line(self):
        assert split_lines("done\npartial") == ["done", "partial"]

    def test_strips_carriage_returns(self):
        assert split_lines("one\r\ntwo\r\n") == ["one", "two"]


class TestBeginWatch:
    """Tests for starting and stopping watches."""

    @pytest.mark.asyncio
    async def test_existing_file_starts_at_end(self, tracker, existing_log):
        try:
            tracker.begin_watch(str(existing_log))
            entry = tracker.get_entry(str(existing_log))

            assert entry.state is WatchState.TAILING
            assert entry.last_read_offset == 100
            assert tracker.read_new_content(str(existing_log)) is None
        finally:
            tracker.close()

    @pytest.mark.asyncio
    async def test_missing_file_awaits_creation(self, tracker, log_dir):
        path = log_dir / "later.out"
        try:
            tracker.begin_watch(str(path))

            assert tracker.get_entry(str(path)).state is WatchState.AWAITING_CREATION
        finally:
            tracker.close()

    @pytest.mark.asyncio
    async def test_missing_directory_is_not_fatal(self, tracker, tmp_path):
        path = tmp_path / "nowhere" / "app.out"
        try:
            channel = tracker.begin_watch(str(path))

            entry = tracker.get_entry(str(path))
            assert entry.handle is None
            assert entry.state is WatchState.AWAITING_CREATION

            tracker.stop_watch(str(path), channel)
            assert not tracker.is_watching(str(path))
        finally:
            tracker.close()

    @pytest.mark.asyncio
    async def test_empty_path_is_rejected(self, tracker):
        with pytest.raises(ValueError):
            tracker.begin_watch("")

    @pytest.mark.asyncio
    async def test_subscribers_share_one_watch(self, tracker, existing_log):
        try:
            first = tracker.begin_watch(str(existing_log))
            second = tracker.begin_watch(str(existing_log))

            assert tracker.watched_paths() == [str(existing_log)]
            assert tracker.get_watch_info()[str(existing_log)]["subscribers"] == 2

            tracker.stop_watch(str(existing_log), first)
            assert tracker.is_watching(str(existing_log))
            assert first.closed
            assert not second.closed

            tracker.stop_watch(str(existing_log), second)
            assert not tracker.is_watching(str(existing_log))
        finally:
            tracker.close()

    @pytest.mark.asyncio
    async def test_stop_watch_is_idempotent(self, tracker, existing_log):
        try:
            channel = tracker.begin_watch(str(existing_log))
            tracker.stop_watch(str(existing_log), channel)
            tracker.stop_watch(str(existing_log), channel)
            tracker.stop_watch(str(existing_log))
            tracker.stop_watch("/not/watched.log")

            assert tracker.watched_paths() == []
            assert await channel.get() is None
        finally:
            tracker.close()

    @pytest.mark.asyncio
    async def test_stop_all_watches(self, tracker, existing_log, log_dir):
        try:
            first = tracker.begin_watch(str(existing_log))
            second = tracker.begin_watch(str(log_dir / "other.out"))

            tracker.stop_all_watches()

            assert tracker.watched_paths() == []
            assert first.closed and second.closed
        finally:
            tracker.close()


class TestReadNewContent:
    """Tests for the incremental read."""

    @pytest.mark.asyncio
    async def test_only_appended_bytes_are_read(self, tracker, existing_log):
        try:
            channel = tracker.begin_watch(str(existing_log))
            append(existing_log, "123456789\n")

            assert tracker.read_new_content(str(existing_log)) == ["123456789"]
            assert tracker.get_entry(str(existing_log)).last_read_offset == 110
            assert await next_batch(channel) == ["123456789"]
        finally:
            tracker.close()

    @pytest.mark.asyncio
    async def test_sequential_writes_are_delivered_in_order(self, tracker, existing_log):
        writes = ["first line\n", "second\n\nthird\n", "fourth\n"]
        try:
            channel = tracker.begin_watch(str(existing_log))
            received = []
            for text in writes:
                append(existing_log, text)
                tracker.read_new_content(str(existing_log))
                received.extend(await next_batch(channel))

            assert received == split_lines("".join(writes))
        finally:
            tracker.close()

    @pytest.mark.asyncio
    async def test_blank_growth_publishes_nothing(self, tracker, existing_log):
        try:
            channel = tracker.begin_watch(str(existing_log))
            append(existing_log, "\n   \n")

            assert tracker.read_new_content(str(existing_log)) is None
            assert tracker.get_entry(str(existing_log)).last_read_offset == 105
            with pytest.raises(asyncio.TimeoutError):
                await next_batch(channel, timeout=0.2)
        finally:
            tracker.close()

    @pytest.mark.asyncio
    async def test_truncation_resets_offset(self, tracker, existing_log):
        try:
            channel = tracker.begin_watch(str(existing_log))
            existing_log.write_text("short\n")

            assert tracker.read_new_content(str(existing_log)) is None
            assert tracker.get_entry(str(existing_log)).last_read_offset == 0

            append(existing_log, "after truncate\n")
            assert tracker.read_new_content(str(existing_log)) == ["short", "after truncate"]
            assert await next_batch(channel) == ["short", "after truncate"]
        finally:
            tracker.close()

    @pytest.mark.asyncio
    async def test_split_multibyte_character(self, tracker, existing_log):
        encoded = "café\n".encode("utf-8")
        try:
            channel = tracker.begin_watch(str(existing_log))
            with open(existing_log, "ab") as f:
                f.write(encoded[:4])
            tracker.read_new_content(str(existing_log))
            with open(existing_log, "ab") as f:
                f.write(encoded[4:])
            tracker.read_new_content(str(existing_log))

            assert await next_batch(channel) == ["caf"]
            assert await next_batch(channel) == ["é"]
        finally:
            tracker.close()

    @pytest.mark.asyncio
    async def test_deleted_file_is_skipped(self, tracker, existing_log):
        try:
            tracker.begin_watch(str(existing_log))
            os.remove(existing_log)

            assert tracker.read_new_content(str(existing_log)) is None
        finally:
            tracker.close()


class TestEvents:
    """Tests for filesystem event handling."""

    @pytest.mark.asyncio
    async def test_creation_switches_to_tailing(self, tracker, log_dir):
        path = log_dir / "new.out"
        try:
            channel = tracker.begin_watch(str(path))
            path.write_text("hello\n")
            tracker.dispatch_event("created", str(path))

            assert tracker.get_entry(str(path)).state is WatchState.TAILING
            assert await next_batch(channel) == ["hello"]
        finally:
            tracker.close()

    @pytest.mark.asyncio
    async def test_deletion_returns_to_awaiting_creation(self, tracker, existing_log):
        try:
            channel = tracker.begin_watch(str(existing_log))
            os.remove(existing_log)
            tracker.dispatch_event("deleted", str(existing_log))

            entry = tracker.get_entry(str(existing_log))
            assert entry.state is WatchState.AWAITING_CREATION
            assert entry.last_read_offset == 0

            existing_log.write_text("back again\n")
            tracker.dispatch_event("created", str(existing_log))
            assert await next_batch(channel) == ["back again"]
        finally:
            tracker.close()

    @pytest.mark.asyncio
    async def test_rotation_by_move(self, tracker, existing_log, log_dir):
        try:
            channel = tracker.begin_watch(str(existing_log))
            rotated = log_dir / "app.out.1"
            os.rename(existing_log, rotated)
            tracker.dispatch_event("moved", str(existing_log), str(rotated))

            assert tracker.get_entry(str(existing_log)).state is WatchState.AWAITING_CREATION

            staged = log_dir / "app.out.tmp"
            staged.write_text("fresh\n")
            os.rename(staged, existing_log)
            tracker.dispatch_event("moved", str(staged), str(existing_log))
            assert await next_batch(channel) == ["fresh"]
        finally:
            tracker.close()

    @pytest.mark.asyncio
    async def test_burst_of_changes_is_read_once(self, tracker, existing_log):
        try:
            channel = tracker.begin_watch(str(existing_log))
            for i in range(3):
                append(existing_log, f"line {i}\n")
                tracker.dispatch_event("modified", str(existing_log))

            assert await next_batch(channel) == ["line 0", "line 1", "line 2"]
        finally:
            tracker.close()

    @pytest.mark.asyncio
    async def test_events_for_other_files_are_ignored(self, tracker, existing_log, log_dir):
        try:
            tracker.begin_watch(str(existing_log))
            tracker.dispatch_event("modified", str(log_dir / "unrelated.out"))
            tracker.dispatch_event("deleted", str(log_dir / "unrelated.out"))

            assert tracker.get_entry(str(existing_log)).state is WatchState.TAILING
        finally:
            tracker.close()


class TestObserver:
    """End-to-end tests driven by the polling observer."""

    @pytest.mark.asyncio
    async def test_growth_is_detected(self, tail_config, existing_log):
        tracker = FileTailTracker(tail_config)
        try:
            channel = tracker.begin_watch(str(existing_log))
            await asyncio.sleep(0.5)
            append(existing_log, "observed\n")

            assert await next_batch(channel) == ["observed"]
        finally:
            tracker.close()

    @pytest.mark.asyncio
    async def test_creation_is_detected(self, tail_config, log_dir):
        tracker = FileTailTracker(tail_config)
        path = log_dir / "created.out"
        try:
            channel = tracker.begin_watch(str(path))
            await asyncio.sleep(0.5)
            path.write_text("hello\n")

            assert await next_batch(channel) == ["hello"]
        finally:
            tracker.close()


@pytest.mark.skipif(not sys.platform.startswith("linux"), reason="inotify is only available on Linux")
class TestNativeObserver:
    """End-to-end tests driven by the default inotify observer."""

    @pytest.fixture
    def native_config(self):
        return TailConfig(debounce_delay=0.05, observer=OBSERVER_NATIVE)

    @pytest.mark.asyncio
    async def test_growth_is_detected(self, native_config, existing_log):
        tracker = FileTailTracker(native_config)
        try:
            channel = tracker.begin_watch(str(existing_log))
            await asyncio.sleep(0.1)
            append(existing_log, "new\n")

            assert await next_batch(channel) == ["new"]
        finally:
            tracker.close()

    @pytest.mark.asyncio
    async def test_rotation_and_recreation(self, native_config, existing_log, log_dir):
        path = str(existing_log)
        tracker = FileTailTracker(native_config)
        try:
            channel = tracker.begin_watch(path)
            await asyncio.sleep(0.1)

            os.rename(existing_log, log_dir / "app.out.1")
            await wait_for_state(tracker, path, WatchState.AWAITING_CREATION)
            assert tracker.is_watching(path)

            existing_log.write_text("fresh\n")
            assert await next_batch(channel) == ["fresh"]
            assert tracker.get_entry(path).state is WatchState.TAILING

            append(existing_log, "more\n")
            assert await next_batch(channel) == ["more"]
        finally:
            tracker.close()

    @pytest.mark.asyncio
    async def test_deletion_and_recreation(self, native_config, existing_log):
        path = str(existing_log)
        tracker = FileTailTracker(native_config)
        try:
            channel = tracker.begin_watch(path)
            await asyncio.sleep(0.1)

            os.remove(existing_log)
            await wait_for_state(tracker, path, WatchState.AWAITING_CREATION)

            existing_log.write_text("back\n")
            assert await next_batch(channel) == ["back"]
        finally:
            tracker.close()
