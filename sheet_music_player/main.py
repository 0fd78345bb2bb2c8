"""
Main entry point for Sheet Music Player.

Usage:
    sheet-music-player info FILE
    sheet-music-player play FILE [--tempo BPM]
"""

import argparse
import logging
import sys
import threading
from pathlib import Path
from typing import List, Optional

from sheet_music_player.config import get_config
from sheet_music_player.core.errors import UnsupportedFormatError
from sheet_music_player.core.highlighter import LoggingHighlighter
from sheet_music_player.core.mom import ParseResult, element_notes
from sheet_music_player.core.pitch import midi_to_pitch
from sheet_music_player.core.session import PlaybackSession
from sheet_music_player.parsers.loader import load_file
from sheet_music_player.parsers.midi_parser import MidiParseResult

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="sheet-music-player",
        description="Parse ABC, MIDI and MusicXML files and play them back",
    )
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = p.add_subparsers(dest="command", required=True)

    info = sub.add_parser("info", help="Summarise a notation file")
    info.add_argument("file", help="Input .abc, .mid/.midi, .xml/.musicxml/.mxl")

    play = sub.add_parser("play", help="Play a notation file")
    play.add_argument("file", help="Input .abc, .mid/.midi, .xml/.musicxml/.mxl")
    play.add_argument("--tempo", type=float, default=None, help="Quarter notes per minute")
    return p


def print_diagnostics(result) -> None:
    for error in result.errors:
        print(f"  error: {error}")
    for warning in result.warnings:
        print(f"  warning: {warning}")


def print_info(result) -> None:
    """Print a summary of a parse result."""
    if isinstance(result, MidiParseResult):
        print(f"MIDI format {result.format}, {result.track_count} tracks, "
              f"{result.ticks_per_quarter} ticks per quarter")
        print(f"Tempo changes: {len(result.tempo_map)}")
        print(f"Notes: {len(result)}")
        print(f"Duration: {result.duration:.2f}s")
    else:
        header = result.mom.header
        print(f"Title: {header.title}")
        if header.composer:
            print(f"Composer: {header.composer}")
        print(f"Meter: {header.meter}  Key: {header.key}  Tempo: {header.quarter_bpm:g} BPM")
        print(f"Voices: {', '.join(result.mom.voice_ids) or '-'}")
        print(f"Measures: {len(result.mom.measures)}")
        print(f"Notes: {result.mom.num_notes}")
        if len(result.directives):
            print(f"Directives: {len(result.directives)}")

    if result.errors or result.warnings:
        print(f"Diagnostics ({len(result.errors)} errors, {len(result.warnings)} warnings):")
        print_diagnostics(result)


def note_labels(result) -> dict:
    """Pitch names per note ID, for the playback log."""
    if isinstance(result, MidiParseResult):
        return {n.note_id: n.pitch for n in result.notes}
    labels = {}
    for element in result.mom.iter_elements():
        for note in element_notes(element):
            labels[note.id] = note.pitch or midi_to_pitch(note.midi_note)
    return labels


def play(result, tempo: Optional[float]) -> int:
    config = get_config()
    session = PlaybackSession(
        highlighter=LoggingHighlighter(note_labels(result)),
        config=config.playback,
    )
    finished = threading.Event()
    session.on("playback_end", finished.set)

    try:
        session.prime(result, tempo)
        session.play()
        finished.wait()
    except KeyboardInterrupt:
        print("Stopped")
    finally:
        session.cleanup()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the application."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    path = Path(args.file).expanduser()
    try:
        result = load_file(path, get_config().parser)
    except (FileNotFoundError, UnsupportedFormatError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.command == "info":
        print_info(result)
        return 0 if result.ok else 2

    if not result.ok:
        print_diagnostics(result)
        return 2
    if isinstance(result, ParseResult) and result.mom.num_notes == 0:
        print("Nothing to play")
        return 0
    get_config().add_recent_file(str(path.resolve()))
    return play(result, args.tempo)


if __name__ == "__main__":
    sys.exit(main())
