"""
Playback Session - Owns the scheduler, sound engine and highlighter.

A session runs its scheduler on an asyncio event loop in a background
thread. Every prime() starts a new generation; callbacks carrying an
older generation are ignored.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import Future
from typing import Any, Callable, Dict, List, Optional, Union

from sheet_music_player.config import PlaybackConfig, get_config
from sheet_music_player.core.highlighter import Highlighter
from sheet_music_player.core.mom import ParseResult
from sheet_music_player.core.scheduler import Scheduler, SchedulerState
from sheet_music_player.core.sound_engine import SoundEngine, create_sound_engine
from sheet_music_player.parsers.midi_parser import MidiParseResult

logger = logging.getLogger(__name__)

SESSION_EVENTS = ("note_start", "note_end", "playback_end", "state_changed")

# One MIDI-file beat is one second
MIDI_PLAYBACK_TEMPO = 60.0


class _SessionHighlighter:
    """Forwards scheduler highlight callbacks to the session, tagged with a generation."""

    def __init__(self, session: "PlaybackSession", generation: int):
        self._session = session
        self._generation = generation

    def on_note_start(self, note_id: str) -> None:
        self._session._note_event("note_start", self._generation, note_id)

    def on_note_end(self, note_id: str) -> None:
        self._session._note_event("note_end", self._generation, note_id)

    def clear_all_highlights(self) -> None:
        self._session._clear_highlights()


class PlaybackSession:
    """
    Transport for one loaded score at a time.

    Features:
    - Prime from a text/markup ParseResult or a MidiParseResult
    - Play/pause/stop with engine silencing and highlight clearing
    - Listeners for note_start, note_end, playback_end, state_changed
    """

    def __init__(
        self,
        sound_engine: Optional[SoundEngine] = None,
        highlighter: Optional[Highlighter] = None,
        config: Optional[PlaybackConfig] = None,
        loop: Any = None,
    ):
        """
        Initialize session.

        Args:
            sound_engine: Engine to drive; the best available one if omitted
            highlighter: Optional visual highlighter
            config: Playback settings; the global config if omitted
            loop: Event loop to schedule on. If omitted, one is started
                in a background thread on first use.
        """
        self.config = config or get_config().playback
        self._sound_engine = sound_engine
        self.highlighter = highlighter

        self._loop = loop
        self._owns_loop = False
        self._thread: Optional[threading.Thread] = None

        self._generation = 0
        self._scheduler: Optional[Scheduler] = None
        self._listeners: Dict[str, List[Callable]] = {name: [] for name in SESSION_EVENTS}

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def sound_engine(self) -> SoundEngine:
        if self._sound_engine is None:
            self._sound_engine = create_sound_engine(
                self.config.max_polyphony,
                self.config.midi_output_id,
                self.config.midi_channel,
            )
        return self._sound_engine

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def scheduler(self) -> Optional[Scheduler]:
        return self._scheduler

    @property
    def state(self) -> SchedulerState:
        if self._scheduler is None:
            return SchedulerState.IDLE
        return self._scheduler.state

    @property
    def is_playing(self) -> bool:
        return self.state is SchedulerState.RUNNING

    @property
    def is_paused(self) -> bool:
        return self.state is SchedulerState.PAUSED

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def on(self, event: str, callback: Callable) -> None:
        """Register a listener for one of SESSION_EVENTS."""
        if event not in self._listeners:
            raise ValueError(f"Unknown session event: {event}")
        self._listeners[event].append(callback)

    def off(self, event: str, callback: Callable) -> None:
        if callback in self._listeners.get(event, []):
            self._listeners[event].remove(callback)

    def _emit(self, event: str, *args) -> None:
        for callback in list(self._listeners[event]):
            try:
                callback(*args)
            except Exception as e:
                logger.warning(f"Listener for {event} failed: {e}")

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def prime(self, result: Union[ParseResult, MidiParseResult], tempo: Optional[float] = None) -> None:
        """
        Load a parse result, replacing whatever was loaded before.

        Args:
            result: Output of any of the parsers
            tempo: Quarter notes per minute, overriding the score's tempo.
                Ignored for MIDI results, which carry their own tempo map.
        """
        self._call(self._prime, result, tempo)

    def play(self) -> None:
        """Start playback, or resume it when paused."""
        self._call(self._play)

    def pause(self) -> None:
        self._call(self._pause)

    def stop(self) -> None:
        self._call(self._stop)

    def toggle_play_pause(self) -> None:
        """Toggle between play and pause."""
        if self.is_playing:
            self.pause()
        else:
            self.play()

    def cleanup(self) -> None:
        """Stop playback, release the engine and shut down the loop thread."""
        if self._scheduler is not None:
            self.stop()
        if self._sound_engine is not None:
            self._sound_engine.cleanup()
        if self._owns_loop and self._loop is not None:
            self._loop.call_soon_threadsafe(self._loop.stop)
            if self._thread:
                self._thread.join(timeout=1.0)
            self._loop.close()
            self._loop = None
            self._thread = None
            self._owns_loop = False

    def _prime(self, result, tempo):
        if self._scheduler is not None and self._scheduler.state is not SchedulerState.IDLE:
            self._stop()

        self._generation += 1
        generation = self._generation
        self._scheduler = Scheduler(
            self._loop,
            self.sound_engine,
            highlighter=_SessionHighlighter(self, generation),
            on_playback_end=lambda: self._playback_ended(generation),
            lookahead=self.config.lookahead_ms / 1000.0,
            schedule_ahead=self.config.schedule_ahead,
        )

        if isinstance(result, MidiParseResult):
            if tempo:
                logger.debug("Tempo override ignored for MIDI input")
            self._scheduler.load_events(result.to_events(), MIDI_PLAYBACK_TEMPO)
        else:
            mom = result.mom
            quarter_bpm = tempo or (None if mom.header.tempo else self.config.default_tempo)
            self._scheduler.load(mom, mom.playback_tempo(quarter_bpm))

        logger.info(
            f"Primed {len(self._scheduler.events)} events "
            f"({self._scheduler.duration:.1f}s, generation {generation})"
        )

    def _play(self):
        if self._scheduler is None:
            logger.warning("Nothing loaded to play")
            return
        if self._scheduler.state is SchedulerState.RUNNING:
            return
        if self._scheduler.state is SchedulerState.PAUSED:
            self._scheduler.resume()
        else:
            self._scheduler.start()
        self._state_changed()

    def _pause(self):
        if self._scheduler is None or self._scheduler.state is not SchedulerState.RUNNING:
            return
        self._scheduler.pause()
        self.sound_engine.stop_all_voices_immediately()
        self._clear_highlights()
        self._state_changed()

    def _stop(self):
        if self._scheduler is None:
            return
        self._scheduler.stop()
        self.sound_engine.stop_all_voices_immediately()
        self._clear_highlights()
        self._state_changed()

    # ------------------------------------------------------------------
    # Scheduler callbacks
    # ------------------------------------------------------------------

    def _note_event(self, event: str, generation: int, note_id: str) -> None:
        if generation != self._generation:
            return
        if self.highlighter is not None:
            if event == "note_start":
                self.highlighter.on_note_start(note_id)
            else:
                self.highlighter.on_note_end(note_id)
        self._emit(event, note_id)

    def _clear_highlights(self) -> None:
        if self.highlighter is not None:
            self.highlighter.clear_all_highlights()

    def _playback_ended(self, generation: int) -> None:
        if generation != self._generation:
            return
        self.sound_engine.stop_all_voices_immediately()
        self._clear_highlights()
        self._state_changed()
        self._emit("playback_end")

    def _state_changed(self) -> None:
        state = self.state
        logger.info(f"Playback {state.value}")
        self._emit("state_changed", state)

    # ------------------------------------------------------------------
    # Loop thread
    # ------------------------------------------------------------------

    def _ensure_loop(self) -> None:
        if self._loop is not None:
            return
        self._loop = asyncio.new_event_loop()
        self._owns_loop = True
        ready = threading.Event()

        def run():
            asyncio.set_event_loop(self._loop)
            self._loop.call_soon(ready.set)
            self._loop.run_forever()

        self._thread = threading.Thread(target=run, name="playback-loop", daemon=True)
        self._thread.start()
        ready.wait(timeout=1.0)

    def _call(self, fn: Callable, *args) -> Any:
        """Run fn on the loop thread and wait for it."""
        self._ensure_loop()
        if not self._owns_loop or threading.current_thread() is self._thread:
            return fn(*args)

        future: Future = Future()

        def runner():
            try:
                future.set_result(fn(*args))
            except Exception as e:
                future.set_exception(e)

        self._loop.call_soon_threadsafe(runner)
        return future.result(timeout=2.0)


# Process-wide session
_session: Optional[PlaybackSession] = None


def get_session() -> PlaybackSession:
    """Get the process-wide playback session."""
    global _session
    if _session is None:
        _session = PlaybackSession()
    return _session
