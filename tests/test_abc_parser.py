"""
Tests for the ABC text notation parser.
"""

import pytest

from sheet_music_player.config import ParserConfig
from sheet_music_player.core.errors import GrammarWarning, RangeWarning
from sheet_music_player.core.mom import DirectiveType, ElementKind
from sheet_music_player.parsers.abc_parser import (
    ABCParser,
    BARLINE,
    CHORD_SYMBOL,
    DECORATION,
    NOTE,
    REST,
)


@pytest.fixture
def parser():
    return ABCParser()


def body(text, header="X:1\nK:C\n"):
    return ABCParser().parse(header + text)


class TestDurations:
    """Tests for the length suffix grammar."""

    @pytest.mark.parametrize("modifier,expected", [
        ("", 0.125),
        ("2", 0.25),
        ("/2", 0.0625),
        ("/", 0.0625),
        ("3/2", 0.1875),
        ("//", 0.03125),
        ("/4", 0.03125),
    ])
    def test_suffixes(self, parser, modifier, expected):
        assert parser.parse_duration(modifier, 0.125) == pytest.approx(expected)

    def test_note_tokens_in_tune(self):
        result = body("C2 C/2 C3/2|")
        durations = [e.duration for e in result.mom.iter_elements()]
        assert durations == pytest.approx([0.25, 0.0625, 0.1875])

    def test_unit_length_header(self):
        result = body("C D2|", header="X:1\nL:1/4\nK:C\n")
        assert [e.duration for e in result.mom.iter_elements()] == pytest.approx([0.25, 0.5])

    def test_zero_length_warns(self):
        result = body("C0 D|")
        assert any(isinstance(w, RangeWarning) for w in result.warnings)
        assert result.mom.measures[0].elements[0].duration == pytest.approx(0.125)


class TestPitches:
    """Tests for pitch to MIDI conversion."""

    @pytest.mark.parametrize("token,midi,label", [
        ("c", 60, "C4"),
        ("C", 48, "C3"),
        ("B", 59, "B3"),
        ("^c", 61, "C#4"),
        ("_B", 58, "Bb3"),
        ("c'", 72, "C5"),
        ("C,", 36, "C2"),
        ("^^f", 67, "F##4"),
    ])
    def test_pitch(self, token, midi, label):
        note = next(body(token + "|").mom.iter_notes())
        assert note.midi_note == midi
        assert note.pitch == label

    def test_natural_overrides_earlier_accidental(self):
        note = next(body("^=c|").mom.iter_notes())
        assert note.midi_note == 60

    def test_out_of_range_clamped(self):
        result = body("c''''''|")
        note = next(result.mom.iter_notes())
        assert note.midi_note == 127
        assert any(isinstance(w, RangeWarning) for w in result.warnings)


class TestHeaders:
    """Tests for header fields."""

    TUNE = (
        "X:3\n"
        "T:First Title\n"
        "T:Subtitle\n"
        "C:J. S. Bach\n"
        "M:3/4\n"
        "L:1/4\n"
        "Q:1/4=90\n"
        'V:1 name="Violin I" short="Vln" clef=treble\n'
        'V:2 name="Cello" clef=bass\n'
        "K:G\n"
        "GAB|\n"
    )

    def test_fields(self, parser):
        header = parser.parse(self.TUNE).mom.header

        assert header.reference == 3
        assert header.title == "First Title"
        assert header.composer == "J. S. Bach"
        assert header.meter == "3/4"
        assert header.unit_note_length == "1/4"
        assert header.tempo == "1/4=90"
        assert header.key == "G"

    def test_voice_definitions(self, parser):
        voices = parser.parse(self.TUNE).mom.header.voices

        assert [v.id for v in voices] == ["1", "2"]
        assert voices[0].name == "Violin I"
        assert voices[0].short_name == "Vln"
        assert voices[0].clef == "treble"
        assert voices[1].name == "Cello"
        assert voices[1].clef == "bass"

    def test_defaults(self, parser):
        header = parser.parse("K:C\nC|\n").mom.header

        assert header.reference == 1
        assert header.title == "Untitled"
        assert header.meter == "4/4"
        assert header.unit_note_length == "1/8"
        assert header.quarter_bpm == 120

    def test_config_defaults(self):
        parser = ABCParser(ParserConfig(default_unit_length="1/16", default_meter="3/8"))
        result = parser.parse("K:C\nC|\n")
        assert result.mom.header.meter == "3/8"
        assert next(result.mom.iter_notes()).duration == pytest.approx(0.0625)

    @pytest.mark.parametrize("tempo,bpm", [
        ("1/4=90", 90),
        ("1/8=180", 90),
        ("1/2=60", 120),
        ("100", 100),
        ('"Allegro" 1/4=132', 132),
    ])
    def test_quarter_bpm(self, parser, tempo, bpm):
        header = parser.parse(f"Q:{tempo}\nK:C\nC|\n").mom.header
        assert header.quarter_bpm == pytest.approx(bpm)

    def test_unknown_header_field_warns(self, parser):
        result = parser.parse("X:1\nY:what\nK:C\nC|\n")
        assert result.ok
        assert any(isinstance(w, GrammarWarning) for w in result.warnings)


class TestDirectives:
    """Tests for %% directive lines."""

    def test_attributes_and_position(self):
        result = body('CDEF|GABc|\n%%marker name="chorus" color="red"\ncBAG|\n')
        directive = result.directives.marker[0]

        assert directive.type is DirectiveType.MARKER
        assert directive.measure == 2
        assert directive.position == pytest.approx(1.0)
        assert directive.attributes == {"name": "chorus", "color": "red"}
        assert directive.name == "marker"

    def test_verbatim_value(self, parser):
        directive = parser.parse_directive("%%vskip 10pt")
        assert directive.type is DirectiveType.VSKIP
        assert directive.attributes == {"value": "10pt"}

    def test_unknown_name_is_generic(self, parser):
        directive = parser.parse_directive('%%whatever key="v"')
        assert directive.type is DirectiveType.DIR
        assert directive.name == "whatever"

    def test_buckets(self):
        result = body(
            "%%swing-off\n%%mute-off\n%%sep\n%%measurenumbering 1\n%%fb on\n%%fx reverb\nC|\n"
        )
        directives = result.directives

        assert len(directives.swing) == 1
        assert len(directives.mute) == 1
        assert len(directives.layout) == 2
        assert len(directives.harmony) == 1
        assert len(directives.fx) == 1
        assert len(directives) == 6

    def test_directives_do_not_affect_timing(self):
        plain = body("CD|EF|")
        annotated = body('CD|\n%%loop start="1"\nEF|')
        assert [e.start_time for e in plain.mom.iter_elements()] == \
            [e.start_time for e in annotated.mom.iter_elements()]

    def test_directive_in_header(self):
        result = ABCParser().parse('X:1\n%%analysis mode="harmony"\nK:C\nC|\n')
        assert result.directives.analysis[0].measure == 0


class TestTokenizer:
    """Tests for the body tokenizer."""

    def test_token_kinds(self, parser):
        tokens = parser.tokenize('"Am"!trill!A2 z|]')
        assert [t.kind for t in tokens] == [CHORD_SYMBOL, DECORATION, NOTE, REST, BARLINE]
        assert tokens[-1].text == "|]"

    @pytest.mark.parametrize("text,style", [
        ("|", "single"),
        ("|]", "final"),
        ("||", "double"),
        ("|:", "repeat-start"),
        (":|", "repeat-end"),
    ])
    def test_barline_styles(self, text, style):
        result = body(f"C D {text} E|")
        assert result.mom.measures[0].barline == style

    def test_unknown_character_warns(self):
        result = body("C ? D|")
        assert [e.kind for e in result.mom.iter_elements()] == [ElementKind.NOTE, ElementKind.NOTE]
        assert any("'?'" in w.message for w in result.warnings)

    def test_accidental_without_note_warns(self):
        result = body("C ^ |")
        assert result.mom.num_notes == 1
        assert any(isinstance(w, GrammarWarning) for w in result.warnings)

    def test_comment_stripped(self):
        result = body("C D % E F\n")
        assert result.mom.num_notes == 2

    def test_chord_symbols_and_decorations_discarded(self):
        result = body('"G7"!fermata!G2|')
        assert [e.kind for e in result.mom.iter_elements()] == [ElementKind.NOTE]


class TestMeasures:
    """Tests for measure accumulation."""

    def test_measures_and_start_times(self):
        result = body("CDEF|GABc|")
        measures = result.mom.measures

        assert [m.number for m in measures] == [1, 2]
        assert [m.start_time for m in measures] == pytest.approx([0.0, 0.5])
        assert [m.duration for m in measures] == pytest.approx([0.5, 0.5])

    def test_trailing_measure_emitted(self):
        result = body("CD|EF")
        assert len(result.mom.measures) == 2
        assert result.mom.measures[-1].barline is None

    def test_total_duration_is_sum_of_measures(self):
        result = body("C2 D|E/2 F/2 G3/2|[CEG]2|z4|")
        mom = result.mom
        assert mom.total_duration == pytest.approx(sum(m.duration for m in mom.measures))

    def test_ids_unique(self):
        result = body("C D [CEG] z|x E|")
        ids = []
        for element in result.mom.iter_elements():
            ids.append(element.id)
            if element.kind is ElementKind.CHORD:
                ids.extend(n.id for n in element.notes)
        assert len(ids) == len(set(ids))


class TestRestsAndChords:
    """Tests for rests and chords."""

    def test_rests(self):
        result = body("z x2|")
        elements = list(result.mom.iter_elements())
        assert [e.kind for e in elements] == [ElementKind.REST, ElementKind.REST]
        assert [e.duration for e in elements] == pytest.approx([0.125, 0.25])
        assert result.mom.num_notes == 0

    def test_multi_measure_rest(self):
        result = body("Z4|", header="X:1\nM:3/4\nK:C\n")
        assert next(result.mom.iter_elements()).duration == pytest.approx(3.0)

    def test_multi_measure_rest_common_time(self):
        result = body("Z|", header="X:1\nM:C\nK:C\n")
        assert next(result.mom.iter_elements()).duration == pytest.approx(1.0)

    def test_chord(self):
        result = body("[CEG]2 c|")
        chord, note = list(result.mom.iter_elements())

        assert chord.kind is ElementKind.CHORD
        assert [n.midi_note for n in chord.notes] == [48, 52, 55]
        assert all(n.start_time == 0.0 for n in chord.notes)
        assert chord.duration == pytest.approx(0.25)
        assert note.start_time == pytest.approx(0.25)

    def test_chord_duration_from_first_note(self):
        result = body("[C2EG]|")
        chord = next(result.mom.iter_elements())
        assert chord.duration == pytest.approx(0.25)

    def test_unclosed_chord_closed_at_line_end(self):
        result = body("[CEG\nc|")
        assert next(result.mom.iter_elements()).kind is ElementKind.CHORD
        assert any("Unclosed chord" in w.message for w in result.warnings)


class TestVoices:
    """Tests for voice switching."""

    def test_voice_switch_creates_voice(self):
        result = body("C D|\nV:2\nE F|\n", header="X:1\nV:1\nK:C\n")
        mom = result.mom

        assert mom.voice_ids == ["1", "2"]
        assert [e.voice for e in mom.iter_elements()] == ["1", "1", "2", "2"]
        assert len(mom.voices["2"]) == 2

    def test_voice_definitions_after_key(self, parser):
        result = parser.parse(
            "X:1\nK:C\n"
            'V:1 name="Melody" clef=treble\n'
            "C D|\n"
            'V:2 name="Bass" short="B." clef=bass\n'
            "C, D,|\n"
            "V:1\n"
            "E F|\n"
        )
        voices = result.mom.header.voices

        assert [v.id for v in voices] == ["1", "2"]
        assert voices[0].name == "Melody"
        assert voices[1].short_name == "B."
        assert voices[1].clef == "bass"
        assert result.mom.voice_ids == ["1", "2"]

    def test_body_voice_keeps_header_definition(self, parser):
        result = parser.parse('X:1\nV:1 name="Top"\nK:C\nV:1 name="Other"\nC|\n')
        voices = result.mom.header.voices

        assert len(voices) == 1
        assert voices[0].name == "Top"

    def test_default_voice(self):
        result = body("C|")
        assert result.mom.voice_ids == ["V1"]

    def test_inline_voice_field(self):
        result = body("C [V:B] D|")
        assert [e.voice for e in result.mom.iter_elements()] == ["V1", "B"]

    def test_inline_length_field(self):
        result = body("C [L:1/4] C|")
        assert [e.duration for e in result.mom.iter_elements()] == pytest.approx([0.125, 0.25])


class TestRobustness:
    """Tests for malformed input."""

    def test_empty_input(self, parser):
        result = parser.parse("")
        assert result.ok
        assert result.mom.measures == []

    def test_bytes_input(self, parser):
        result = parser.parse(b"X:1\nK:C\nCDE|\n")
        assert result.mom.num_notes == 3

    def test_parser_holds_no_state_between_calls(self, parser):
        first = parser.parse("X:1\nK:C\nC ? D|\n")
        second = parser.parse("X:1\nK:C\nC D|\n")
        assert first.warnings
        assert second.warnings == []
        assert [n.id for n in second.mom.iter_notes()] == ["note_0", "note_1"]

    def test_parse_file(self, parser, tmp_path):
        path = tmp_path / "tune.abc"
        path.write_text("X:1\nT:File\nK:C\nCDEF|\n")
        result = parser.parse_file(path)
        assert result.mom.header.title == "File"

    def test_parse_missing_file(self, parser, tmp_path):
        with pytest.raises(FileNotFoundError):
            parser.parse_file(tmp_path / "missing.abc")
