"""
Incremental file tailing for the Tailthon service.

The tracker follows growing log files and publishes every newly appended
batch of lines to the channels that asked for that file. It knows nothing
about WebSockets; consumers read from the ``TailChannel`` they were handed.

Filesystem notifications come from watchdog observer threads and are handed
over to the event loop, so all tracker state is only touched on the loop.
"""

import asyncio
import codecs
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver, ObservedWatch
from watchdog.observers.polling import PollingObserver

from .config import OBSERVER_POLLING, TailConfig

logger = logging.getLogger(__name__)

# Event types that mean "the file may have grown".
_CHANGE_EVENTS = ("modified", "closed")


class WatchState(str, Enum):
    """Lifecycle state of a watched path."""

    AWAITING_CREATION = "awaiting_creation"
    TAILING = "tailing"


class TailChannel:
    """
    Queue of line batches for one consumer of a watched file.

    Iterating the channel yields lists of lines until it is closed.
    """

    def __init__(self, path: str, max_pending: int = 0):
        self.path = path
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_pending)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, lines: List[str]) -> bool:
        """
        Queue a batch of lines without blocking.

        Returns:
            bool: False if the channel is closed or full and the batch was dropped
        """
        if self._closed:
            return False
        try:
            self._queue.put_nowait(lines)
        except asyncio.QueueFull:
            logger.warning(f"Dropping log batch for {self.path}: subscriber is not keeping up")
            return False
        return True

    async def get(self) -> Optional[List[str]]:
        """Wait for the next batch. Returns None once the channel is closed."""
        if self._closed and self._queue.empty():
            return None
        return await self._queue.get()

    def close(self) -> None:
        """Close the channel and wake up a pending reader."""
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            # The reader will see the closed flag once it drains the queue
            pass

    def __aiter__(self):
        return self

    async def __anext__(self) -> List[str]:
        lines = await self.get()
        if lines is None:
            raise StopAsyncIteration
        return lines


@dataclass
class WatchEntry:
    """Watch state for one log file."""

    path: str
    state: WatchState = WatchState.AWAITING_CREATION
    last_read_offset: int = 0
    handle: Optional[ObservedWatch] = None
    channels: Set[TailChannel] = field(default_factory=set)
    debounce: Optional[asyncio.TimerHandle] = None
    decoder: codecs.IncrementalDecoder = field(
        default_factory=lambda: codecs.getincrementaldecoder("utf-8")(errors="replace")
    )


@dataclass
class _DirectoryWatch:
    handle: ObservedWatch
    paths: Set[str] = field(default_factory=set)


class _TailEventHandler(FileSystemEventHandler):
    """Forwards watchdog events from the observer thread to the tracker."""

    def __init__(self, tracker: "FileTailTracker"):
        super().__init__()
        self._tracker = tracker

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        dest_path = getattr(event, "dest_path", None) or None
        self._tracker.post_event(
            event.event_type,
            os.fsdecode(event.src_path),
            os.fsdecode(dest_path) if dest_path else None
        )


def split_lines(text: str) -> List[str]:
    """Split text on newlines and drop blank lines."""
    return [line.rstrip("\r") for line in text.split("\n") if line.strip()]


class FileTailTracker:
    """Follows log files and publishes appended lines to subscriber channels."""

    def __init__(self, config: Optional[TailConfig] = None, observer: Optional[BaseObserver] = None):
        """
        Initialize the tracker.

        Args:
            config: Tailing configuration, defaults are used when omitted
            observer: Optional watchdog observer, built from the config when omitted
        """
        self.config = config or TailConfig()
        if observer is None:
            if self.config.observer == OBSERVER_POLLING:
                observer = PollingObserver(timeout=self.config.polling_interval)
            else:
                observer = Observer()
        self._observer = observer
        self._handler = _TailEventHandler(self)
        self._entries: Dict[str, WatchEntry] = {}
        self._directories: Dict[str, _DirectoryWatch] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def running(self) -> bool:
        """Whether the observer thread has been started."""
        return self._loop is not None

    def start(self) -> None:
        """Start the observer thread. Must be called from the event loop."""
        if self._loop is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._observer.start()
        logger.info("File tail tracker started")

    def close(self) -> None:
        """Stop every watch and the observer thread."""
        self.stop_all_watches()
        if self._loop is None:
            return
        self._observer.stop()
        self._observer.join(timeout=5)
        self._loop = None
        logger.info("File tail tracker stopped")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def begin_watch(self, path: str) -> TailChannel:
        """
        Start following a file and return a channel receiving its new lines.

        Content already in the file is never replayed. If the file does not
        exist yet, the tracker waits for it to be created. Several channels
        may follow the same path; they share a single underlying watch.

        Args:
            path: Path of the log file

        Returns:
            TailChannel: Channel receiving batches of appended lines

        Raises:
            ValueError: If path is empty
        """
        if not path:
            raise ValueError("Log file path must be a non-empty string")
        if self._loop is None:
            self.start()

        path = os.path.abspath(path)
        entry = self._entries.get(path)
        if entry is None:
            entry = self._arm(path)

        channel = TailChannel(path, max_pending=self.config.max_pending_batches)
        entry.channels.add(channel)
        logger.debug(f"Channel attached to {path} ({len(entry.channels)} subscribers)")
        return channel

    def stop_watch(self, path: str, channel: Optional[TailChannel] = None) -> None:
        """
        Stop following a file.

        With a channel, only that channel is detached and the underlying
        watch is released when no channel is left. Without one, every
        channel is detached. Calling this for an unwatched path is a no-op.

        Args:
            path: Path of the log file
            channel: Optional channel to detach
        """
        if not path:
            return
        entry = self._entries.get(os.path.abspath(path))
        if entry is None:
            return

        if channel is not None:
            if channel not in entry.channels:
                return
            entry.channels.discard(channel)
            channel.close()
            if entry.channels:
                return
        else:
            for ch in entry.channels:
                ch.close()
            entry.channels.clear()

        self._disarm(entry)

    def stop_all_watches(self) -> None:
        """Close every watch handle and clear all state."""
        for entry in list(self._entries.values()):
            for channel in entry.channels:
                channel.close()
            entry.channels.clear()
            self._disarm(entry)
        self._entries.clear()
        self._directories.clear()

    def is_watching(self, path: str) -> bool:
        """
        Check whether a path has an active watch.

        Args:
            path: Path of the log file

        Returns:
            bool: True if at least one channel is attached to the path
        """
        return os.path.abspath(path) in self._entries

    def get_entry(self, path: str) -> Optional[WatchEntry]:
        """
        Get the watch entry for a path.

        Args:
            path: Path of the log file

        Returns:
            Optional[WatchEntry]: The entry, or None if the path is not watched
        """
        return self._entries.get(os.path.abspath(path))

    def watched_paths(self) -> List[str]:
        """
        Get the watched paths.

        Returns:
            List[str]: Absolute paths with an active watch
        """
        return list(self._entries.keys())

    def get_watch_info(self) -> Dict[str, dict]:
        """
        Get information about watched files.

        Returns:
            dict: Mapping of path to state, offset and subscriber count
        """
        return {
            path: {
                "state": entry.state.value,
                "offset": entry.last_read_offset,
                "subscribers": len(entry.channels)
            }
            for path, entry in self._entries.items()
        }

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    def post_event(self, event_type: str, src_path: str, dest_path: Optional[str] = None) -> None:
        """Hand a filesystem event over to the event loop. Thread safe."""
        loop = self._loop
        if loop is None:
            return
        try:
            loop.call_soon_threadsafe(self.dispatch_event, event_type, src_path, dest_path)
        except RuntimeError:
            # Loop already closed during shutdown
            logger.debug(f"Dropped {event_type} event for {src_path}: event loop closed")

    def dispatch_event(self, event_type: str, src_path: str, dest_path: Optional[str] = None) -> None:
        """
        Apply a filesystem event to the watch state. Runs on the event loop.

        Args:
            event_type: watchdog event type (created, modified, deleted, moved, closed)
            src_path: Path the event refers to
            dest_path: Destination path for move events
        """
        src_path = os.path.abspath(src_path)
        dest_path = os.path.abspath(dest_path) if dest_path else None

        if event_type == "moved":
            self._on_gone(src_path)
            if dest_path:
                self._on_appeared(dest_path)
        elif event_type == "created":
            self._on_appeared(src_path)
        elif event_type == "deleted":
            self._on_gone(src_path)
        elif event_type in _CHANGE_EVENTS:
            entry = self._entries.get(src_path)
            if entry is None:
                return
            if entry.state is WatchState.AWAITING_CREATION:
                self._on_appeared(src_path)
            else:
                self._schedule_read(entry)

    def _on_appeared(self, path: str) -> None:
        entry = self._entries.get(path)
        if entry is None or not os.path.exists(path):
            return
        if entry.state is WatchState.AWAITING_CREATION:
            logger.info(f"Log file created, start tailing: {path}")
            entry.state = WatchState.TAILING
            entry.last_read_offset = 0
            entry.decoder.reset()
        self._schedule_read(entry)

    def _on_gone(self, path: str) -> None:
        entry = self._entries.get(path)
        if entry is None or entry.state is not WatchState.TAILING or os.path.exists(path):
            return
        logger.warning(f"Log file removed, waiting for it to reappear: {path}")
        self._cancel_read(entry)
        entry.state = WatchState.AWAITING_CREATION
        entry.last_read_offset = 0
        entry.decoder.reset()

    def _schedule_read(self, entry: WatchEntry) -> None:
        # Restart the timer on every event so a burst of writes is read once
        self._cancel_read(entry)
        loop = self._loop or asyncio.get_running_loop()
        entry.debounce = loop.call_later(self.config.debounce_delay, self._debounced_read, entry.path)

    def _cancel_read(self, entry: WatchEntry) -> None:
        if entry.debounce is not None:
            entry.debounce.cancel()
            entry.debounce = None

    def _debounced_read(self, path: str) -> None:
        entry = self._entries.get(path)
        if entry is None:
            return
        entry.debounce = None
        self.read_new_content(path)

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def read_new_content(self, path: str) -> Optional[List[str]]:
        """
        Read whatever was appended to a file since the last read.

        A file that shrank below the recorded offset was truncated or
        replaced: the offset is reset to zero and nothing is read until the
        next change. Lines are published to every attached channel.

        Args:
            path: Path of the log file

        Returns:
            Optional[List[str]]: The non-blank lines read, or None if nothing was read
        """
        entry = self._entries.get(os.path.abspath(path))
        if entry is None or entry.state is not WatchState.TAILING:
            return None

        try:
            current_size = os.stat(entry.path).st_size
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.error(f"Cannot stat log file {entry.path}: {e}")
            return None

        offset = entry.last_read_offset
        if current_size < offset:
            logger.info(f"Log file truncated, resetting offset: {entry.path}")
            entry.last_read_offset = 0
            entry.decoder.reset()
            return None
        if current_size == offset:
            return None

        try:
            with open(entry.path, "rb") as f:
                f.seek(offset)
                data = f.read(current_size - offset)
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.error(f"Error reading log file {entry.path}: {e}")
            return None

        entry.last_read_offset = offset + len(data)
        lines = split_lines(entry.decoder.decode(data))
        if lines:
            for channel in list(entry.channels):
                channel.publish(lines)
        return lines or None

    # ------------------------------------------------------------------
    # Watch handles
    # ------------------------------------------------------------------

    def _arm(self, path: str) -> WatchEntry:
        entry = WatchEntry(path=path)
        self._entries[path] = entry

        directory = os.path.dirname(path)
        if not os.path.isdir(directory):
            logger.warning(f"Directory of log file does not exist, cannot watch: {path}")
            return entry

        entry.handle = self._watch_directory(directory, path)
        if entry.handle is None:
            return entry

        if not os.path.exists(path):
            logger.warning(f"Log file does not exist, will start tailing once created: {path}")
            return entry

        try:
            entry.last_read_offset = os.stat(path).st_size
        except FileNotFoundError:
            return entry
        except OSError as e:
            logger.error(f"Cannot stat log file {path}: {e}")
            return entry

        entry.state = WatchState.TAILING
        logger.info(f"Tailing log file {path} from offset {entry.last_read_offset}")
        return entry

    def _disarm(self, entry: WatchEntry) -> None:
        self._cancel_read(entry)
        self._entries.pop(entry.path, None)
        if entry.handle is not None:
            self._release_directory(os.path.dirname(entry.path), entry.path)
            entry.handle = None
        logger.info(f"Stopped watching {entry.path}")

    def _watch_directory(self, directory: str, path: str) -> Optional[ObservedWatch]:
        watch = self._directories.get(directory)
        if watch is None:
            try:
                handle = self._observer.schedule(self._handler, directory, recursive=False)
            except OSError as e:
                logger.warning(f"Cannot watch directory {directory}: {e}")
                return None
            watch = self._directories[directory] = _DirectoryWatch(handle=handle)
        watch.paths.add(path)
        return watch.handle

    def _release_directory(self, directory: str, path: str) -> None:
        watch = self._directories.get(directory)
        if watch is None:
            return
        watch.paths.discard(path)
        if watch.paths:
            return
        del self._directories[directory]
        try:
            self._observer.unschedule(watch.handle)
        except KeyError:
            # Already unscheduled, e.g. the observer was stopped first
            pass
