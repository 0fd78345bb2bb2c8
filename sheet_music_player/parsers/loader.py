"""
Loader - Pick a parser from a file's extension and run it.
"""

import logging
from pathlib import Path
from typing import List, Optional, Union

from sheet_music_player.config import ParserConfig
from sheet_music_player.core.errors import UnsupportedFormatError
from sheet_music_player.core.mom import ParseResult
from sheet_music_player.parsers.abc_parser import ABCParser
from sheet_music_player.parsers.midi_parser import MidiParseResult, MidiParser
from sheet_music_player.parsers.musicxml_parser import MusicXMLParser

logger = logging.getLogger(__name__)

FORMAT_ABC = "abc"
FORMAT_MIDI = "midi"
FORMAT_MUSICXML = "musicxml"

EXTENSIONS = {
    ".abc": FORMAT_ABC,
    ".mid": FORMAT_MIDI,
    ".midi": FORMAT_MIDI,
    ".xml": FORMAT_MUSICXML,
    ".musicxml": FORMAT_MUSICXML,
    ".mxl": FORMAT_MUSICXML,
}


def get_supported_extensions() -> List[str]:
    """Get list of supported file extensions."""
    return list(EXTENSIONS)


def detect_format(filepath: Union[str, Path]) -> str:
    """
    Determine a file's notation format from its extension.

    Raises:
        UnsupportedFormatError: If the extension is not recognised
    """
    suffix = Path(filepath).suffix.lower()
    try:
        return EXTENSIONS[suffix]
    except KeyError:
        raise UnsupportedFormatError(f"Unsupported file type: {suffix or filepath}") from None


def load_file(
    filepath: Union[str, Path],
    config: Optional[ParserConfig] = None,
) -> Union[ParseResult, MidiParseResult]:
    """
    Parse a notation file of any supported format.

    Args:
        filepath: Path to an ABC, MIDI or MusicXML file
        config: Parser defaults

    Returns:
        ParseResult for ABC/MusicXML, MidiParseResult for MIDI

    Raises:
        FileNotFoundError: If the file doesn't exist
        UnsupportedFormatError: If the extension is not recognised
    """
    filepath = Path(filepath)
    if not filepath.exists():
        raise FileNotFoundError(f"File not found: {filepath}")

    fmt = detect_format(filepath)
    logger.info(f"Loading {filepath.name} as {fmt}")

    if fmt == FORMAT_ABC:
        return ABCParser(config).parse_file(filepath)
    if fmt == FORMAT_MIDI:
        return MidiParser().parse_file(filepath)
    return MusicXMLParser(config).parse_file(filepath)
