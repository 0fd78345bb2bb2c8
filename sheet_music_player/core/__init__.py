"""
Core module for Sheet Music Player.

Contains the Musical Object Model, pitch helpers and the playback stack.
"""

from sheet_music_player.core.errors import (
    NotationError,
    StructuralError,
    GrammarWarning,
    RangeWarning,
    UnsupportedFormatError,
)
from sheet_music_player.core.mom import (
    Header,
    VoiceDefinition,
    Directive,
    DirectiveType,
    DirectivesMap,
    ElementKind,
    Note,
    Rest,
    Chord,
    Measure,
    MusicalObjectModel,
    ParseResult,
)
from sheet_music_player.core.scheduler import (
    Scheduler,
    SchedulerState,
    ScheduledEvent,
    PlaybackStateError,
    flatten_mom,
)
from sheet_music_player.core.sound_engine import (
    SoundEngine,
    SilentSoundEngine,
    PygameMidiSoundEngine,
    create_sound_engine,
)
from sheet_music_player.core.highlighter import Highlighter, LoggingHighlighter

__all__ = [
    "NotationError",
    "StructuralError",
    "GrammarWarning",
    "RangeWarning",
    "UnsupportedFormatError",
    "Header",
    "VoiceDefinition",
    "Directive",
    "DirectiveType",
    "DirectivesMap",
    "ElementKind",
    "Note",
    "Rest",
    "Chord",
    "Measure",
    "MusicalObjectModel",
    "ParseResult",
    "Scheduler",
    "SchedulerState",
    "ScheduledEvent",
    "PlaybackStateError",
    "flatten_mom",
    "SoundEngine",
    "SilentSoundEngine",
    "PygameMidiSoundEngine",
    "create_sound_engine",
    "Highlighter",
    "LoggingHighlighter",
]
