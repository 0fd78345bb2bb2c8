"""
Pitch helpers.

MIDI number to pitch name conversion, plus the range clamping every
parser applies before storing a value in the model.
"""

from typing import Tuple

from music21 import pitch

MIDI_RANGE: Tuple[int, int] = (0, 127)
VELOCITY_RANGE: Tuple[float, float] = (0.0, 1.0)


def midi_to_pitch(midi_number: int) -> str:
    """
    Convert MIDI number to pitch name.

    Args:
        midi_number: MIDI note number (0-127)

    Returns:
        Pitch name like "C4"
    """
    p = pitch.Pitch(midi=clamp_midi(midi_number))
    return p.nameWithOctave


def clamp_midi(midi_number: int) -> int:
    low, high = MIDI_RANGE
    return max(low, min(high, int(midi_number)))


def clamp_velocity(velocity: float) -> float:
    low, high = VELOCITY_RANGE
    return max(low, min(high, float(velocity)))


def in_midi_range(midi_number: int) -> bool:
    return MIDI_RANGE[0] <= midi_number <= MIDI_RANGE[1]
