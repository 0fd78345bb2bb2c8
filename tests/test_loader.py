"""
Tests for file type detection and the command line entry point.
"""

import struct

import pytest

from sheet_music_player.core.errors import UnsupportedFormatError
from sheet_music_player.core.mom import ParseResult
from sheet_music_player.main import build_parser, main, note_labels
from sheet_music_player.parsers.loader import (
    detect_format,
    get_supported_extensions,
    load_file,
)
from sheet_music_player.parsers.midi_parser import MidiParseResult

ABC_TUNE = "X:1\nT:Loader Test\nK:C\nCDEF|GABc|\n"
MUSICXML = """<score-partwise>
  <part-list><score-part id="P1"/></part-list>
  <part id="P1"><measure number="1">
    <attributes><divisions>1</divisions></attributes>
    <note><pitch><step>A</step><octave>4</octave></pitch><duration>1</duration></note>
  </measure></part>
</score-partwise>"""


def midi_bytes():
    body = b"\x00\x90\x3c\x64\x60\x80\x3c\x00\x00\xff\x2f\x00"
    return (
        b"MThd" + struct.pack(">IHHH", 6, 0, 1, 96)
        + b"MTrk" + struct.pack(">I", len(body)) + body
    )


@pytest.fixture
def files(tmp_path):
    abc = tmp_path / "tune.abc"
    abc.write_text(ABC_TUNE)
    mid = tmp_path / "tune.mid"
    mid.write_bytes(midi_bytes())
    xml = tmp_path / "tune.musicxml"
    xml.write_text(MUSICXML)
    return {"abc": abc, "midi": mid, "musicxml": xml}


class TestDetection:
    """Tests for extension based detection."""

    @pytest.mark.parametrize("name,fmt", [
        ("a.abc", "abc"),
        ("a.mid", "midi"),
        ("a.MIDI", "midi"),
        ("a.xml", "musicxml"),
        ("a.musicxml", "musicxml"),
        ("a.mxl", "musicxml"),
    ])
    def test_detect_format(self, name, fmt):
        assert detect_format(name) == fmt

    def test_unsupported(self):
        with pytest.raises(UnsupportedFormatError):
            detect_format("song.mp3")

    def test_unsupported_is_value_error(self):
        with pytest.raises(ValueError):
            detect_format("noextension")

    def test_supported_extensions(self):
        assert ".abc" in get_supported_extensions()
        assert ".mxl" in get_supported_extensions()


class TestLoadFile:
    """Tests for load_file dispatch."""

    def test_abc(self, files):
        result = load_file(files["abc"])
        assert isinstance(result, ParseResult)
        assert result.mom.header.title == "Loader Test"

    def test_midi(self, files):
        result = load_file(files["midi"])
        assert isinstance(result, MidiParseResult)
        assert len(result) == 1

    def test_musicxml(self, files):
        result = load_file(files["musicxml"])
        assert result.mom.num_notes == 1
        assert next(result.mom.iter_notes()).midi_note == 69

    def test_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_file(tmp_path / "nope.abc")

    def test_unsupported_existing_file(self, tmp_path):
        path = tmp_path / "song.mp3"
        path.write_bytes(b"ID3")
        with pytest.raises(UnsupportedFormatError):
            load_file(path)


class TestCommandLine:
    """Tests for the sheet-music-player command."""

    def test_info_abc(self, files, capsys):
        assert main(["info", str(files["abc"])]) == 0
        out = capsys.readouterr().out
        assert "Title: Loader Test" in out
        assert "Measures: 2" in out
        assert "Notes: 8" in out

    def test_info_midi(self, files, capsys):
        assert main(["info", str(files["midi"])]) == 0
        out = capsys.readouterr().out
        assert "MIDI format 0" in out
        assert "Notes: 1" in out

    def test_info_reports_diagnostics(self, tmp_path, capsys):
        path = tmp_path / "bad.mid"
        path.write_bytes(b"garbage")
        assert main(["info", str(path)]) == 2
        assert "error:" in capsys.readouterr().out

    def test_missing_file(self, tmp_path, capsys):
        assert main(["info", str(tmp_path / "missing.abc")]) == 1
        assert "not found" in capsys.readouterr().err

    def test_play_options(self):
        args = build_parser().parse_args(["-v", "play", "x.abc", "--tempo", "90"])
        assert args.verbose
        assert args.command == "play"
        assert args.tempo == 90.0

    def test_note_labels(self, files):
        labels = note_labels(load_file(files["abc"]))
        assert labels["note_0"] == "C3"
        midi_labels = note_labels(load_file(files["midi"]))
        assert midi_labels == {"midi_0": "C4"}
