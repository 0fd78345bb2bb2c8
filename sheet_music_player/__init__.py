"""
Sheet Music Player - Notation parsing and synchronized playback

Reads ABC text notation, Standard MIDI Files and MusicXML into a
shared Musical Object Model, and plays it back with a lookahead
scheduler that keeps sound and note highlighting in step.
"""

__version__ = "1.0.0"

from sheet_music_player.config import Config
from sheet_music_player.core.mom import MusicalObjectModel, ParseResult
from sheet_music_player.parsers.loader import load_file

__all__ = ["MusicalObjectModel", "ParseResult", "Config", "load_file", "__version__"]
