"""
Sound engines - Receivers of timed note-on/note-off requests.

Engines keep a bounded set of sounding voices. When the ceiling is
reached, the oldest voice is released before a new one starts.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import List, Optional

from sheet_music_player.core.pitch import clamp_midi, clamp_velocity

logger = logging.getLogger(__name__)

DEFAULT_MAX_POLYPHONY = 16


class SoundEngine:
    """Base class for sound engines with voice-ceiling bookkeeping."""

    def __init__(self, max_polyphony: int = DEFAULT_MAX_POLYPHONY):
        self.max_polyphony = max(1, max_polyphony)
        # note_id -> midi note, oldest first
        self._active: "OrderedDict[str, int]" = OrderedDict()

    @property
    def available(self) -> bool:
        return True

    @property
    def active_voices(self) -> List[str]:
        """IDs of sounding notes, oldest first."""
        return list(self._active)

    def note_on(self, note_id: str, pitch: int, velocity: float, at_time: Optional[float] = None) -> None:
        """
        Start a voice.

        Args:
            note_id: Score note ID, used to release the voice later
            pitch: MIDI note number
            velocity: Loudness in 0.0-1.0
            at_time: Loop time the note was scheduled for
        """
        if note_id in self._active:
            self.note_off(note_id, at_time)

        while len(self._active) >= self.max_polyphony:
            oldest = next(iter(self._active))
            logger.debug(f"Voice ceiling reached, releasing {oldest}")
            self.note_off(oldest, at_time)

        pitch = clamp_midi(pitch)
        self._start_voice(note_id, pitch, clamp_velocity(velocity), at_time)
        self._active[note_id] = pitch

    def note_off(self, note_id: str, at_time: Optional[float] = None) -> None:
        """Release a voice. Unknown IDs are ignored."""
        pitch = self._active.pop(note_id, None)
        if pitch is None:
            return
        self._stop_voice(note_id, pitch, at_time)

    def stop_all_voices_immediately(self) -> None:
        """Silence everything now."""
        for note_id, pitch in list(self._active.items()):
            self._stop_voice(note_id, pitch, None)
        self._active.clear()
        self._silence()

    def cleanup(self) -> None:
        """Release resources."""
        self.stop_all_voices_immediately()

    def _start_voice(self, note_id: str, pitch: int, velocity: float, at_time: Optional[float]) -> None:
        raise NotImplementedError

    def _stop_voice(self, note_id: str, pitch: int, at_time: Optional[float]) -> None:
        raise NotImplementedError

    def _silence(self) -> None:
        pass


class SilentSoundEngine(SoundEngine):
    """Tracks voices without producing sound."""

    def _start_voice(self, note_id, pitch, velocity, at_time):
        logger.debug(f"note_on {note_id} pitch={pitch} velocity={velocity:.2f}")

    def _stop_voice(self, note_id, pitch, at_time):
        logger.debug(f"note_off {note_id}")


class PygameMidiSoundEngine(SoundEngine):
    """Sound output through a pygame.midi output port."""

    def __init__(
        self,
        max_polyphony: int = DEFAULT_MAX_POLYPHONY,
        output_id: Optional[int] = None,
        channel: int = 0,
    ):
        super().__init__(max_polyphony)
        self.channel = max(0, min(15, channel))
        self._initialized = False
        self._midi = None
        self._output = None

        try:
            import os
            os.environ.setdefault('PYGAME_HIDE_SUPPORT_PROMPT', '1')
            import pygame.midi
            pygame.midi.init()
            device = output_id if output_id is not None else pygame.midi.get_default_output_id()
            if device < 0:
                logger.warning("No MIDI output device available")
                pygame.midi.quit()
                return
            self._output = pygame.midi.Output(device)
            self._midi = pygame.midi
            self._initialized = True
            logger.info(f"Pygame MIDI output initialized on device {device}")
        except ImportError:
            logger.warning("pygame not available for MIDI playback")
        except Exception as e:
            logger.warning(f"Failed to initialize pygame.midi: {e}")

    @property
    def available(self) -> bool:
        return self._initialized

    def _start_voice(self, note_id, pitch, velocity, at_time):
        if not self._initialized:
            return
        self._output.note_on(pitch, int(round(velocity * 127)), self.channel)

    def _stop_voice(self, note_id, pitch, at_time):
        if not self._initialized:
            return
        self._output.note_off(pitch, 0, self.channel)

    def _silence(self):
        if not self._initialized:
            return
        # All Notes Off
        self._output.write_short(0xB0 | self.channel, 123, 0)

    def cleanup(self) -> None:
        super().cleanup()
        if self._initialized:
            self._output.close()
            self._midi.quit()
            self._initialized = False


def create_sound_engine(max_polyphony: int = DEFAULT_MAX_POLYPHONY,
                        output_id: Optional[int] = None,
                        channel: int = 0) -> SoundEngine:
    """Best available engine: pygame.midi, or a silent fallback."""
    engine = PygameMidiSoundEngine(max_polyphony, output_id, channel)
    if engine.available:
        return engine
    logger.warning("No MIDI playback backend available, playing silently")
    return SilentSoundEngine(max_polyphony)
