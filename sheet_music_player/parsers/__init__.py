"""
Parsers module for Sheet Music Player.

One parser per input format, plus a loader that picks between them.
"""

from sheet_music_player.parsers.abc_parser import ABCParser
from sheet_music_player.parsers.midi_parser import (
    MidiParser,
    MidiParseResult,
    ResolvedNote,
    TempoChange,
    TempoMap,
)
from sheet_music_player.parsers.musicxml_parser import MusicXMLParser
from sheet_music_player.parsers.loader import (
    load_file,
    detect_format,
    get_supported_extensions,
)

__all__ = [
    "ABCParser",
    "MidiParser",
    "MidiParseResult",
    "ResolvedNote",
    "TempoChange",
    "TempoMap",
    "MusicXMLParser",
    "load_file",
    "detect_format",
    "get_supported_extensions",
]
