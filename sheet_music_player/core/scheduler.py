"""
Scheduler - Tempo-synchronized note dispatch with transport controls.

Flattens a score into a time-sorted event list and runs a periodically
re-armed loop that admits events falling inside a short lookahead
window, handing each one to the sound engine and the visual
highlighter as independently timed, cancellable callbacks.

The loop runs on an asyncio-style event loop (anything providing
``time()``, ``call_at()`` and ``call_later()``). All methods must be
called from that loop's thread.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from sheet_music_player.core.mom import MusicalObjectModel

logger = logging.getLogger(__name__)

DEFAULT_LOOKAHEAD = 0.025  # seconds between loop runs
DEFAULT_SCHEDULE_AHEAD = 0.1  # seconds of events admitted per run


class SchedulerState(Enum):
    """Playback state enumeration."""
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"


class PlaybackStateError(RuntimeError):
    """A transport call that is not legal in the current state."""


@dataclass(frozen=True)
class ScheduledEvent:
    """One note to play, in beats."""
    note_id: str
    midi_note: int
    velocity: float
    start_beat: float
    duration_beats: float

    @property
    def end_beat(self) -> float:
        return self.start_beat + self.duration_beats


def flatten_mom(mom: MusicalObjectModel) -> List[ScheduledEvent]:
    """
    Every sounding note of a score, sorted by start beat.

    Rests produce no event. Chord members each become an event.
    """
    events = [
        ScheduledEvent(
            note_id=note.id,
            midi_note=note.midi_note,
            velocity=note.velocity,
            start_beat=note.start_time,
            duration_beats=note.duration,
        )
        for note in mom.iter_notes()
    ]
    events.sort(key=lambda e: e.start_beat)
    return events


class Scheduler:
    """
    Drives a sound engine and a highlighter from a flattened event list.

    States:
        idle -> running (start), running -> paused (pause),
        paused -> running (resume), any -> idle (stop or natural end)
    """

    def __init__(
        self,
        loop: Any,
        sound_engine: Any,
        highlighter: Any = None,
        on_playback_end: Optional[Callable[[], None]] = None,
        lookahead: float = DEFAULT_LOOKAHEAD,
        schedule_ahead: float = DEFAULT_SCHEDULE_AHEAD,
    ):
        """
        Initialize scheduler.

        Args:
            loop: Event loop providing time(), call_at() and call_later()
            sound_engine: Receives note_on/note_off
            highlighter: Receives on_note_start/on_note_end, optional
            on_playback_end: Called once when the last note has ended
            lookahead: Loop period in seconds
            schedule_ahead: Admission window in seconds
        """
        self._loop = loop
        self.sound_engine = sound_engine
        self.highlighter = highlighter
        self.on_playback_end = on_playback_end
        self.lookahead = lookahead
        self.schedule_ahead = schedule_ahead

        self._events: List[ScheduledEvent] = []
        self._end_beat = 0.0
        self._tempo = 120.0
        self._seconds_per_beat = 0.5

        self._state = SchedulerState.IDLE
        self._cursor = 0
        self._origin = 0.0
        self._paused_at = 0.0
        self._generation = 0

        self._pending: Set[Any] = set()
        # Admitted events whose note-on has not fired yet
        self._unfired: Dict[str, ScheduledEvent] = {}
        # Admitted events whose note-off or highlight end has not fired yet
        self._sounding: Dict[str, ScheduledEvent] = {}
        self._unended: Set[str] = set()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def events(self) -> tuple:
        return tuple(self._events)

    @property
    def cursor(self) -> int:
        """Index of the next event to admit."""
        return self._cursor

    @property
    def generation(self) -> int:
        """Bumped on every load and transport change; stale callbacks compare against it."""
        return self._generation

    @property
    def tempo(self) -> float:
        return self._tempo

    @property
    def seconds_per_beat(self) -> float:
        return self._seconds_per_beat

    @property
    def duration(self) -> float:
        """Seconds from the first beat to the end of the last note."""
        return self._end_beat * self._seconds_per_beat

    @property
    def current_beat(self) -> float:
        if self._state is SchedulerState.RUNNING:
            return (self._loop.time() - self._origin) / self._seconds_per_beat
        if self._state is SchedulerState.PAUSED:
            return (self._paused_at - self._origin) / self._seconds_per_beat
        return 0.0

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load(self, mom: MusicalObjectModel, tempo: float) -> None:
        """
        Load a score for playback.

        Args:
            mom: Parsed score
            tempo: Beats per minute, in the score's own beat unit
        """
        self.load_events(flatten_mom(mom), tempo)

    def load_events(self, events: List[ScheduledEvent], tempo: float) -> None:
        """Load an already flattened event list."""
        if tempo <= 0:
            raise ValueError(f"Tempo must be positive, got {tempo}")
        if self._state is not SchedulerState.IDLE:
            self.stop()

        self._events = sorted(events, key=lambda e: e.start_beat)
        self._end_beat = max((e.end_beat for e in self._events), default=0.0)
        self._tempo = float(tempo)
        self._seconds_per_beat = 60.0 / self._tempo
        self._cursor = 0
        self._generation += 1
        logger.debug(f"Loaded {len(self._events)} events at {self._tempo:g} BPM")

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start playback from the beginning."""
        self._require(SchedulerState.IDLE, "start")
        self._generation += 1
        self._cursor = 0
        self._unfired.clear()
        self._sounding.clear()
        self._unended.clear()
        self._origin = self._loop.time()
        self._state = SchedulerState.RUNNING
        self._tick(self._generation)

    def pause(self) -> None:
        """Pause playback, keeping the position."""
        self._require(SchedulerState.RUNNING, "pause")
        self._paused_at = self._loop.time()
        self._cancel_pending()
        self._sounding.clear()
        self._unended.clear()
        self._generation += 1
        self._state = SchedulerState.PAUSED

    def resume(self) -> None:
        """Resume from where pause() left off."""
        self._require(SchedulerState.PAUSED, "resume")
        now = self._loop.time()
        self._origin += now - self._paused_at
        self._generation += 1
        self._state = SchedulerState.RUNNING

        # Events admitted before the pause that never sounded
        carried = sorted(self._unfired.values(), key=lambda e: e.start_beat)
        self._unfired.clear()
        for event in carried:
            self._dispatch(event, now, self._generation)

        self._tick(self._generation)

    def stop(self) -> None:
        """Stop playback and rewind. Sounding notes are left to the caller to silence."""
        self._cancel_pending()
        self._generation += 1
        self._cursor = 0
        self._unfired.clear()
        self._sounding.clear()
        self._unended.clear()
        self._state = SchedulerState.IDLE

    def _require(self, state: SchedulerState, action: str) -> None:
        if self._state is not state:
            raise PlaybackStateError(f"Cannot {action} while {self._state.value}")

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def _tick(self, generation: int) -> None:
        """Admit every event inside the lookahead window, then re-arm."""
        if generation != self._generation or self._state is not SchedulerState.RUNNING:
            return

        now = self._loop.time()
        horizon = now + self.schedule_ahead

        while self._cursor < len(self._events):
            event = self._events[self._cursor]
            if self._event_time(event) > horizon:
                break
            self._dispatch(event, now, generation)
            self._cursor += 1

        if self._cursor >= len(self._events):
            end_time = self._origin + self._end_beat * self._seconds_per_beat
            self._arm_at(max(end_time, now), self._finish, generation)
            return

        self._arm_at(now + self.lookahead, self._tick, generation)

    def _event_time(self, event: ScheduledEvent) -> float:
        return self._origin + event.start_beat * self._seconds_per_beat

    def _dispatch(self, event: ScheduledEvent, now: float, generation: int) -> None:
        start = self._event_time(event)
        end = start + event.duration_beats * self._seconds_per_beat
        self._unfired[event.note_id] = event
        self._sounding[event.note_id] = event

        # Audio path: absolute loop times
        self._arm_at(start, self._fire_note_on, generation, event, start)
        self._arm_at(end, self._fire_note_off, generation, event, end)

        # Visual path: relative delays
        if self.highlighter is not None:
            self._unended.add(event.note_id)
            self._arm_later(max(0.0, start - now), self._fire_highlight_start, generation, event.note_id)
            self._arm_later(max(0.0, end - now), self._fire_highlight_end, generation, event.note_id)

    def _finish(self, generation: int) -> None:
        if generation != self._generation:
            return

        # End callbacks due at the same instant may still be queued behind us
        now = self._loop.time()
        for event in sorted(self._sounding.values(), key=lambda e: e.end_beat):
            self._fire_note_off(generation, event, now)
        for note_id in sorted(self._unended):
            self._fire_highlight_end(generation, note_id)

        self._cancel_pending()
        self._generation += 1
        self._cursor = 0
        self._unfired.clear()
        self._state = SchedulerState.IDLE
        logger.debug("Playback finished")
        if self.on_playback_end:
            try:
                self.on_playback_end()
            except Exception as e:
                logger.warning(f"Playback end callback failed: {e}")

    # ------------------------------------------------------------------
    # Timed callbacks
    # ------------------------------------------------------------------

    def _fire_note_on(self, generation: int, event: ScheduledEvent, at_time: float) -> None:
        if generation != self._generation:
            return
        self._unfired.pop(event.note_id, None)
        try:
            self.sound_engine.note_on(event.note_id, event.midi_note, event.velocity, at_time)
        except Exception as e:
            logger.warning(f"Sound engine rejected note_on {event.note_id}: {e}")

    def _fire_note_off(self, generation: int, event: ScheduledEvent, at_time: float) -> None:
        if generation != self._generation:
            return
        if self._sounding.pop(event.note_id, None) is None:
            return
        try:
            self.sound_engine.note_off(event.note_id, at_time)
        except Exception as e:
            logger.warning(f"Sound engine rejected note_off {event.note_id}: {e}")

    def _fire_highlight_start(self, generation: int, note_id: str) -> None:
        if generation != self._generation:
            return
        try:
            self.highlighter.on_note_start(note_id)
        except Exception as e:
            logger.warning(f"Highlighter failed on start of {note_id}: {e}")

    def _fire_highlight_end(self, generation: int, note_id: str) -> None:
        if generation != self._generation:
            return
        if note_id not in self._unended:
            return
        self._unended.discard(note_id)
        try:
            self.highlighter.on_note_end(note_id)
        except Exception as e:
            logger.warning(f"Highlighter failed on end of {note_id}: {e}")

    def _arm_at(self, when: float, callback: Callable, *args) -> None:
        handle = None

        def fire():
            self._pending.discard(handle)
            callback(*args)

        handle = self._loop.call_at(when, fire)
        self._pending.add(handle)

    def _arm_later(self, delay: float, callback: Callable, *args) -> None:
        handle = None

        def fire():
            self._pending.discard(handle)
            callback(*args)

        handle = self._loop.call_later(delay, fire)
        self._pending.add(handle)

    def _cancel_pending(self) -> None:
        for handle in list(self._pending):
            handle.cancel()
        self._pending.clear()
