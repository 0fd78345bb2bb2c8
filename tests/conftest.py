"""
Shared fixtures for Sheet Music Player tests.
"""

import heapq
import itertools

import pytest

from sheet_music_player.core.highlighter import Highlighter
from sheet_music_player.core.sound_engine import SoundEngine


class ManualHandle:
    """Cancellable callback handle, like asyncio.TimerHandle."""

    def __init__(self, when, callback, args):
        self.when = when
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class ManualLoop:
    """
    Event loop stand-in whose clock only moves when advance() is called.

    Callbacks due at the same instant run in the order they were scheduled.
    """

    handle_class = ManualHandle

    def __init__(self, start=0.0):
        self._now = start
        self._queue = []
        self._sequence = itertools.count()

    def time(self):
        return self._now

    def call_at(self, when, callback, *args):
        handle = self.handle_class(when, callback, args)
        heapq.heappush(self._queue, (when, next(self._sequence), handle))
        return handle

    def call_later(self, delay, callback, *args):
        return self.call_at(self._now + max(0.0, delay), callback, *args)

    def call_soon(self, callback, *args):
        return self.call_at(self._now, callback, *args)

    call_soon_threadsafe = call_soon

    @property
    def pending(self):
        return sum(1 for _, _, h in self._queue if not h.cancelled)

    def advance(self, seconds):
        """Move the clock forward, running everything that falls due."""
        target = self._now + seconds
        while self._queue and self._queue[0][0] <= target + 1e-9:
            when, _, handle = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self._now = max(self._now, when)
            handle.callback(*handle.args)
        self._now = target

    def run_until_idle(self, limit=600.0, step=0.01):
        """Advance in small steps until nothing is queued."""
        elapsed = 0.0
        while self.pending and elapsed < limit:
            self.advance(step)
            elapsed += step


class RecordingSoundEngine(SoundEngine):
    """Keeps a log of every voice start and stop."""

    def __init__(self, max_polyphony=16, loop=None):
        super().__init__(max_polyphony)
        self.loop = loop
        self.log = []
        self.silenced = 0

    def _start_voice(self, note_id, pitch, velocity, at_time):
        now = self.loop.time() if self.loop else at_time
        self.log.append(("on", note_id, pitch, now))

    def _stop_voice(self, note_id, pitch, at_time):
        now = self.loop.time() if self.loop else at_time
        self.log.append(("off", note_id, pitch, now))

    def _silence(self):
        self.silenced += 1

    def starts(self):
        return [entry for entry in self.log if entry[0] == "on"]


class RecordingHighlighter(Highlighter):
    def __init__(self):
        super().__init__()
        self.log = []
        self.cleared = 0

    def on_note_start(self, note_id):
        super().on_note_start(note_id)
        self.log.append(("start", note_id))

    def on_note_end(self, note_id):
        super().on_note_end(note_id)
        self.log.append(("end", note_id))

    def clear_all_highlights(self):
        super().clear_all_highlights()
        self.cleared += 1


@pytest.fixture
def loop():
    return ManualLoop()


@pytest.fixture
def engine(loop):
    return RecordingSoundEngine(loop=loop)


@pytest.fixture
def highlighter():
    return RecordingHighlighter()


@pytest.fixture
def config_dir(tmp_path):
    return tmp_path / "config"
