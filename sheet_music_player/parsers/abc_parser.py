"""
ABC Parser - Parse ABC notation (with ``%%`` directives) into a score model.

Header fields are read until the tune body starts, ``%%name`` lines
become typed directives, and the body is scanned left to right into
notes, rests, chords and barlines.

Syntax Examples:
    X:1
    T:Scale
    M:4/4
    L:1/8
    Q:1/4=100
    V:1 name="Melody" clef=treble
    K:C
    %%marker label="intro"
    C D E F | G A B c |]

Note format:
    Accidentals + Letter + Octave marks + Length
    ^C (sharp), _B (flat), =F (natural), c' (octave up), C, (octave down)

Length suffixes (relative to the L: unit):
    C2 = twice the unit, C/2 or C/ = half the unit, C3/2 = three halves
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from fractions import Fraction
from pathlib import Path
from typing import List, Optional, Tuple, Union

from sheet_music_player.config import ParserConfig
from sheet_music_player.core.errors import GrammarWarning, RangeWarning, StructuralError
from sheet_music_player.core.mom import (
    Chord,
    Directive,
    DirectivesMap,
    DirectiveType,
    Header,
    Measure,
    MusicalObjectModel,
    Note,
    ParseResult,
    Rest,
    VoiceDefinition,
    parse_fraction,
)
from sheet_music_player.core.pitch import clamp_midi, in_midi_range

logger = logging.getLogger(__name__)


# Token kinds produced by ABCParser.tokenize
BARLINE = "barline"
NOTE = "note"
REST = "rest"
CHORD_OPEN = "chord_open"
CHORD_CLOSE = "chord_close"
CHORD_SYMBOL = "chord_symbol"
DECORATION = "decoration"
INLINE_FIELD = "inline_field"


@dataclass
class Token:
    """A lexical unit of a body line."""
    kind: str
    text: str
    column: int = 0


@dataclass
class _BodyState:
    """Cursor for one parse call."""
    unit_length: float
    measure_length: float
    voice: str
    measures: List[Measure] = field(default_factory=list)
    current: Measure = field(default_factory=lambda: Measure(number=1, start_time=0.0))
    beat: float = 0.0
    next_id: int = 0
    voice_ids: List[str] = field(default_factory=list)
    voices: List[VoiceDefinition] = field(default_factory=list)
    chord: Optional[List[Note]] = None

    def take_id(self) -> int:
        value = self.next_id
        self.next_id += 1
        return value


class ABCParser:
    """
    Parser for ABC tunes.

    Malformed input never raises: problems are collected in the
    ``errors`` and ``warnings`` of the returned ParseResult.
    """

    # Regex patterns
    FIELD_PATTERN = re.compile(r"^([A-Za-z]):(?!\|)\s*(.*)$")
    HEADER_FIELD_PATTERN = re.compile(r"^([A-Z]):\s*(.*)$")
    VOICE_LINE_PATTERN = re.compile(r"^V:\s*(\S+)")
    DIRECTIVE_PATTERN = re.compile(r"^%%(\w+(?:-\w+)?)\s*(.*)$")
    ATTRIBUTE_PATTERN = re.compile(r'(\w+)="([^"]+)"')
    INLINE_FIELD_PATTERN = re.compile(r"\[([A-Za-z]):([^\]]*)\]")

    VOICE_NAME_PATTERN = re.compile(r'(?<![\w])name="([^"]+)"')
    VOICE_SHORT_PATTERN = re.compile(r'(?:short(?:name)?|snm)="([^"]+)"')
    VOICE_CLEF_PATTERN = re.compile(r"clef=(\w+)")

    DURATION_MULTIPLIER = re.compile(r"^(\d+)$")
    DURATION_DIVISOR = re.compile(r"^/(\d*)$")
    DURATION_RATIO = re.compile(r"^(\d+)/(\d+)$")
    DURATION_SLASHES = re.compile(r"^(/{2,})$")

    # Standard ABC information fields; anything else in the header is unknown
    KNOWN_FIELDS = set("ABCDFGHIKLMmNOPQRrSsTUVWwXZ")

    DIRECTIVE_TYPES = {
        "dir": DirectiveType.DIR,
        "fx": DirectiveType.FX,
        "analysis": DirectiveType.ANALYSIS,
        "game_state": DirectiveType.GAME_STATE,
        "loop": DirectiveType.LOOP,
        "art": DirectiveType.ART,
        "marker": DirectiveType.MARKER,
        "swing": DirectiveType.SWING,
        "swing-off": DirectiveType.SWING,
        "mute": DirectiveType.MUTE,
        "mute-off": DirectiveType.MUTE,
        "vskip": DirectiveType.VSKIP,
        "sep": DirectiveType.SEP,
        "measurenumbering": DirectiveType.MEASURENUMBERING,
        "frame": DirectiveType.FRAME,
        "fb": DirectiveType.FB,
    }

    # Middle C (c) = MIDI 60; upper case letters sit an octave lower
    BASE_MIDI = {
        "C": 48, "D": 50, "E": 52, "F": 53, "G": 55, "A": 57, "B": 59,
        "c": 60, "d": 62, "e": 64, "f": 65, "g": 67, "a": 69, "b": 71,
    }

    BARLINE_STYLES = {
        "|": "single",
        "|]": "final",
        "||": "double",
        "|:": "repeat-start",
        ":|": "repeat-end",
    }

    NOTE_LETTERS = set("ABCDEFGabcdefg")
    REST_LETTERS = set("zxZ")
    ACCIDENTAL_CHARS = set("^_=")
    OCTAVE_CHARS = {"'": 1, ",": -1}
    DECORATION_DELIMITER = "!"

    # Ties, slurs, broken rhythm and shorthand decorations carry no timing here
    IGNORED_CHARS = set("-()<>.~&\\`$*;#@HLMOPSTuvy")

    def __init__(self, config: Optional[ParserConfig] = None):
        self.config = config or ParserConfig()
        self.errors: List[StructuralError] = []
        self.warnings: List[Union[GrammarWarning, RangeWarning]] = []

    def parse(self, text: Union[str, bytes]) -> ParseResult:
        """
        Parse an ABC tune.

        Args:
            text: Tune source

        Returns:
            ParseResult with the score, its directives and diagnostics
        """
        self.errors = []
        self.warnings = []

        if isinstance(text, bytes):
            text = text.decode("utf-8", errors="replace")

        try:
            lines = text.splitlines()
            header, body_start = self._parse_headers(lines)
            directives = DirectivesMap()
            mom = self._parse_body(lines, header, body_start, directives)
        except Exception as e:
            logger.exception(f"ABC parse failed: {e}")
            self.errors.append(StructuralError(f"Parse error: {e}"))
            return ParseResult(errors=list(self.errors), warnings=list(self.warnings))

        logger.debug(
            f"Parsed ABC '{header.title}': {len(mom.measures)} measures, "
            f"{len(self.warnings)} warnings"
        )
        return ParseResult(
            mom=mom,
            directives=directives,
            errors=list(self.errors),
            warnings=list(self.warnings),
        )

    def parse_file(self, filepath: Union[str, Path]) -> ParseResult:
        """Parse an ABC file from disk."""
        filepath = Path(filepath)
        if not filepath.exists():
            raise FileNotFoundError(f"File not found: {filepath}")
        return self.parse(filepath.read_text(encoding="utf-8", errors="replace"))

    # ------------------------------------------------------------------
    # Headers
    # ------------------------------------------------------------------

    def _parse_headers(self, lines: List[str]) -> Tuple[Header, int]:
        """
        Read header fields.

        Returns:
            Tuple of (Header, index of the first body line)
        """
        header = Header(
            meter=self.config.default_meter,
            unit_note_length=self.config.default_unit_length,
        )
        title_seen = False
        body_start = len(lines)

        for index, raw in enumerate(lines):
            line = raw.strip()
            if not line or line.startswith("%"):
                continue

            if not self.FIELD_PATTERN.match(line):
                body_start = index
                break

            match = self.HEADER_FIELD_PATTERN.match(line)
            if not match:
                continue
            name, value = match.group(1), match.group(2).strip()

            if name == "X":
                try:
                    header.reference = int(value) or 1
                except ValueError:
                    header.reference = 1
            elif name == "T":
                if not title_seen:
                    header.title = value
                    title_seen = True
            elif name == "C":
                header.composer = value
            elif name == "M":
                header.meter = value or header.meter
            elif name == "L":
                header.unit_note_length = value or header.unit_note_length
            elif name == "Q":
                header.tempo = value
            elif name == "K":
                header.key = value or header.key
                body_start = index + 1
                break
            elif name == "V":
                header.voices.append(self.parse_voice_definition(value))
            elif name not in self.KNOWN_FIELDS:
                self._warn(GrammarWarning(f"Unknown header field '{name}:'", index + 1, 0))

        return header, body_start

    def parse_voice_definition(self, value: str) -> VoiceDefinition:
        """Parse ``1 name="Violin I" short="Vln" clef=treble``."""
        parts = value.split()
        definition = VoiceDefinition(id=parts[0] if parts else self.config.default_voice)

        name_match = self.VOICE_NAME_PATTERN.search(value)
        if name_match:
            definition.name = name_match.group(1)

        short_match = self.VOICE_SHORT_PATTERN.search(value)
        if short_match:
            definition.short_name = short_match.group(1)

        clef_match = self.VOICE_CLEF_PATTERN.search(value)
        if clef_match:
            definition.clef = clef_match.group(1)

        return definition

    # ------------------------------------------------------------------
    # Directives
    # ------------------------------------------------------------------

    def parse_directive(self, line: str, measure: int = 0, position: float = 0.0) -> Optional[Directive]:
        """
        Parse a ``%%name attr="value"`` line.

        Unknown names are filed as generic ``dir`` directives.
        """
        match = self.DIRECTIVE_PATTERN.match(line.strip())
        if not match:
            return None

        name, rest = match.group(1), match.group(2)
        directive_type = self.DIRECTIVE_TYPES.get(name.lower(), DirectiveType.DIR)
        return Directive(
            type=directive_type,
            measure=measure,
            position=position,
            attributes=self.parse_attributes(rest),
            name=name,
        )

    def parse_attributes(self, text: str) -> dict:
        """Extract ``key="value"`` pairs, or keep the whole text under ``value``."""
        attributes = {key: value for key, value in self.ATTRIBUTE_PATTERN.findall(text)}
        if not attributes and text.strip():
            attributes["value"] = text.strip()
        return attributes

    # ------------------------------------------------------------------
    # Body
    # ------------------------------------------------------------------

    def _parse_body(
        self,
        lines: List[str],
        header: Header,
        body_start: int,
        directives: DirectivesMap,
    ) -> MusicalObjectModel:
        """Walk every line, collecting directives and building measures."""
        state = _BodyState(
            unit_length=header.unit_length,
            measure_length=header.measure_length,
            voice=header.voices[0].id if header.voices else self.config.default_voice,
            voices=header.voices,
        )
        for definition in header.voices:
            if definition.id not in state.voice_ids:
                state.voice_ids.append(definition.id)

        bar_count = 0

        for index, raw in enumerate(lines):
            line_num = index + 1
            line = raw.strip()
            bar_count += line.count("|")

            if line.startswith("%%"):
                directive = self.parse_directive(line, bar_count, state.beat)
                if directive:
                    directives.add(directive)
                else:
                    self._warn(GrammarWarning(f"Malformed directive: {line}", line_num, 0))
                continue

            if index < body_start or not line or line.startswith("%"):
                continue

            field_match = self.FIELD_PATTERN.match(line)
            if field_match:
                self._apply_body_field(field_match.group(1), field_match.group(2), state, line_num)
                continue

            for token in self.tokenize(self._strip_comment(line), line_num):
                self._consume_token(token, state, line_num)

            if state.chord is not None:
                self._warn(GrammarWarning("Unclosed chord at end of line", line_num, len(line)))
                self._close_chord(Token(CHORD_CLOSE, "]", len(line)), state, line_num)

        # Trailing measure without a closing barline
        if state.current.elements:
            state.current.duration = state.beat - state.current.start_time
            state.measures.append(state.current)

        return MusicalObjectModel(
            header=header,
            measures=state.measures,
            voice_ids=state.voice_ids,
            beat_unit=1.0,
        )

    def _apply_body_field(self, name: str, value: str, state: _BodyState, line_num: int) -> None:
        """Handle a field line (or inline ``[X:...]`` field) inside the body."""
        value = value.strip()
        if name == "V":
            voice_match = self.VOICE_LINE_PATTERN.match(f"V:{value}")
            if voice_match:
                voice_id = voice_match.group(1)
                # Definitions may follow K: in multi-voice tunes
                if len(value.split()) > 1 and all(v.id != voice_id for v in state.voices):
                    state.voices.append(self.parse_voice_definition(value))
                self._switch_voice(voice_id, state)
        elif name == "L":
            state.unit_length = float(parse_fraction(value, Fraction(state.unit_length)))
        elif name == "M":
            if value in ("C", "C|"):
                state.measure_length = 1.0
            else:
                state.measure_length = float(parse_fraction(value, Fraction(state.measure_length)))
        elif name not in self.KNOWN_FIELDS:
            self._warn(GrammarWarning(f"Unknown field '{name}:' in tune body", line_num, 0))

    def _switch_voice(self, voice_id: str, state: _BodyState) -> None:
        state.voice = voice_id
        if voice_id not in state.voice_ids:
            state.voice_ids.append(voice_id)

    def _strip_comment(self, line: str) -> str:
        """Drop a trailing ``%`` comment that is not inside quotes."""
        in_quotes = False
        for i, char in enumerate(line):
            if char == '"':
                in_quotes = not in_quotes
            elif char == "%" and not in_quotes:
                return line[:i]
        return line

    # ------------------------------------------------------------------
    # Tokenizer
    # ------------------------------------------------------------------

    def tokenize(self, line: str, line_num: int = 0) -> List[Token]:
        """
        Split one body line into tokens.

        Chord symbols and decorations are kept as tokens so callers can see
        them; the body walk discards them.
        """
        tokens: List[Token] = []
        i = 0
        n = len(line)

        while i < n:
            char = line[i]
            nxt = line[i + 1] if i + 1 < n else ""

            if char.isspace():
                i += 1
                continue

            # Barlines
            if char == "|":
                text = char + nxt if nxt in ("]", "|", ":") else char
                tokens.append(Token(BARLINE, text, i))
                i = self._skip_ending_number(line, i + len(text))
                continue

            if char == ":":
                if nxt == "|":
                    tokens.append(Token(BARLINE, ":|", i))
                    i = self._skip_ending_number(line, i + 2)
                else:
                    i += 1
                continue

            # Chord symbols in quotes
            if char == '"':
                end = line.find('"', i + 1)
                if end == -1:
                    self._warn(GrammarWarning("Unterminated chord symbol", line_num, i))
                    tokens.append(Token(CHORD_SYMBOL, line[i:], i))
                    break
                tokens.append(Token(CHORD_SYMBOL, line[i:end + 1], i))
                i = end + 1
                continue

            # Decorations !xxx!
            if char == self.DECORATION_DELIMITER:
                end = line.find(self.DECORATION_DELIMITER, i + 1)
                if end == -1:
                    self._warn(GrammarWarning("Unterminated decoration", line_num, i))
                    break
                tokens.append(Token(DECORATION, line[i:end + 1], i))
                i = end + 1
                continue

            # Grace notes {gab} take no time
            if char == "{":
                end = line.find("}", i + 1)
                if end == -1:
                    self._warn(GrammarWarning("Unterminated grace group", line_num, i))
                    break
                tokens.append(Token(DECORATION, line[i:end + 1], i))
                i = end + 1
                continue

            if char == "[":
                field_match = self.INLINE_FIELD_PATTERN.match(line, i)
                if field_match:
                    tokens.append(Token(INLINE_FIELD, field_match.group(0), i))
                    i = field_match.end()
                elif nxt == "|" or nxt.isdigit():
                    # [| thick-thin bar or [1 variant ending
                    i = self._skip_ending_number(line, i + 1)
                else:
                    tokens.append(Token(CHORD_OPEN, "[", i))
                    i += 1
                continue

            if char == "]":
                end = self._scan_duration(line, i + 1)
                tokens.append(Token(CHORD_CLOSE, line[i:end], i))
                i = end
                continue

            # Tuplet markers (3 or (3:2:3
            if char == "(":
                i += 1
                while i < n and (line[i].isdigit() or line[i] == ":"):
                    i += 1
                continue

            # Notes and rests
            if char in self.ACCIDENTAL_CHARS or char in self.NOTE_LETTERS or char in self.REST_LETTERS:
                j = i
                while j < n and line[j] in self.ACCIDENTAL_CHARS:
                    j += 1
                if j < n and (line[j] in self.NOTE_LETTERS or line[j] in self.REST_LETTERS):
                    kind = REST if line[j] in self.REST_LETTERS else NOTE
                    j += 1
                    while j < n and line[j] in self.OCTAVE_CHARS:
                        j += 1
                    j = self._scan_duration(line, j)
                    tokens.append(Token(kind, line[i:j], i))
                else:
                    self._warn(GrammarWarning(f"Accidental without a note: '{line[i:j]}'", line_num, i))
                i = j
                continue

            if char not in self.IGNORED_CHARS:
                self._warn(GrammarWarning(f"Unrecognized character '{char}'", line_num, i))
            i += 1

        return tokens

    def _scan_duration(self, line: str, start: int) -> int:
        end = start
        while end < len(line) and (line[end].isdigit() or line[end] == "/"):
            end += 1
        return end

    def _skip_ending_number(self, line: str, start: int) -> int:
        end = start
        while end < len(line) and line[end].isdigit():
            end += 1
        return end

    # ------------------------------------------------------------------
    # Elements
    # ------------------------------------------------------------------

    def _consume_token(self, token: Token, state: _BodyState, line_num: int) -> None:
        if token.kind == BARLINE:
            if state.chord is not None:
                self._warn(GrammarWarning("Barline inside chord", line_num, token.column))
                self._close_chord(Token(CHORD_CLOSE, "]", token.column), state, line_num)
            self._close_measure(token.text, state)
        elif token.kind in (CHORD_SYMBOL, DECORATION):
            return
        elif token.kind == INLINE_FIELD:
            match = self.INLINE_FIELD_PATTERN.match(token.text)
            self._apply_body_field(match.group(1), match.group(2), state, line_num)
        elif token.kind == CHORD_OPEN:
            if state.chord is not None:
                self._warn(GrammarWarning("Nested chord", line_num, token.column))
                return
            state.chord = []
        elif token.kind == CHORD_CLOSE:
            if state.chord is None:
                self._warn(GrammarWarning("Chord close without open", line_num, token.column))
                return
            self._close_chord(token, state, line_num)
        elif token.kind == NOTE:
            note = self._make_note(token, state, line_num)
            if state.chord is not None:
                state.chord.append(note)
            else:
                self._append(note, state)
        elif token.kind == REST:
            if state.chord is not None:
                self._warn(GrammarWarning("Rest inside chord", line_num, token.column))
                return
            self._append(self._make_rest(token, state, line_num), state)

    def _append(self, element: Union[Note, Rest, Chord], state: _BodyState) -> None:
        if state.voice not in state.voice_ids:
            state.voice_ids.append(state.voice)
        state.current.elements.append(element)
        state.beat += element.duration

    def _close_measure(self, barline: str, state: _BodyState) -> None:
        """Finish the open measure at a barline and open the next one."""
        if state.current.elements:
            state.current.duration = state.beat - state.current.start_time
            state.current.barline = self.BARLINE_STYLES.get(barline, "single")
            state.measures.append(state.current)
        state.current = Measure(number=len(state.measures) + 1, start_time=state.beat)

    def _close_chord(self, token: Token, state: _BodyState, line_num: int) -> None:
        notes = state.chord or []
        state.chord = None
        if not notes:
            self._warn(GrammarWarning("Empty chord", line_num, token.column))
            return

        suffix = token.text[1:]
        if suffix:
            factor = self._duration(suffix, 1.0, line_num, token.column)
            for note in notes:
                note.duration *= factor

        if len(notes) == 1:
            self._append(notes[0], state)
            return

        chord = Chord(
            id=f"chord_{state.take_id()}",
            notes=notes,
            start_time=notes[0].start_time,
            duration=notes[0].duration,
            voice=state.voice,
            measure=state.current.number,
        )
        self._append(chord, state)

    def _make_rest(self, token: Token, state: _BodyState, line_num: int) -> Rest:
        text = token.text.lstrip("".join(self.ACCIDENTAL_CHARS))
        if text != token.text:
            self._warn(GrammarWarning(f"Accidental on rest '{token.text}'", line_num, token.column))
        letter, suffix = text[0], text[1:].lstrip("',")

        if letter == "Z":
            # Multi-measure rest: Z4 = four bars
            bars = int(suffix) if suffix.isdigit() and int(suffix) > 0 else 1
            if suffix and not suffix.isdigit():
                self._warn(GrammarWarning(f"Bad multi-measure rest length '{suffix}'", line_num, token.column))
            duration = bars * state.measure_length
        else:
            duration = self._duration(suffix, state.unit_length, line_num, token.column)

        return Rest(
            id=f"rest_{state.take_id()}",
            duration=duration,
            start_time=state.beat,
            voice=state.voice,
            measure=state.current.number,
        )

    def _make_note(self, token: Token, state: _BodyState, line_num: int) -> Note:
        accidental, letter, octave_shift, suffix = self.split_note(token.text)

        midi_note = self.BASE_MIDI[letter] + accidental + octave_shift * 12
        if not in_midi_range(midi_note):
            self._warn(RangeWarning(f"Pitch '{token.text}' out of MIDI range", line_num, token.column))
            midi_note = clamp_midi(midi_note)

        return Note(
            id=f"note_{state.take_id()}",
            pitch=self.pitch_label(letter, accidental, octave_shift),
            midi_note=midi_note,
            duration=self._duration(suffix, state.unit_length, line_num, token.column),
            start_time=state.beat,
            velocity=self.config.default_velocity,
            voice=state.voice,
            measure=state.current.number,
        )

    def split_note(self, text: str) -> Tuple[int, str, int, str]:
        """
        Break a note token into its parts.

        Returns:
            Tuple of (accidental semitones, letter, octave shift, length suffix)
        """
        i = 0
        accidental = 0
        while i < len(text) and text[i] in self.ACCIDENTAL_CHARS:
            if text[i] == "^":
                accidental += 1
            elif text[i] == "_":
                accidental -= 1
            else:
                accidental = 0
            i += 1

        letter = text[i]
        i += 1

        octave_shift = 0
        while i < len(text) and text[i] in self.OCTAVE_CHARS:
            octave_shift += self.OCTAVE_CHARS[text[i]]
            i += 1

        return accidental, letter, octave_shift, text[i:]

    @staticmethod
    def pitch_label(letter: str, accidental: int, octave_shift: int) -> str:
        """Scientific pitch name, e.g. ``^c'`` -> ``C#5``."""
        octave = (4 if letter.islower() else 3) + octave_shift
        sign = "#" * accidental if accidental > 0 else "b" * -accidental
        return f"{letter.upper()}{sign}{octave}"

    def parse_duration(self, modifier: str, default_length: float) -> float:
        """
        Apply a length suffix to the unit length.

        ``2`` multiplies, ``/2`` (or a bare ``/``) divides, and ``3/2`` scales
        by the ratio. Anything else falls back to the unit length.
        """
        return self._duration(modifier, default_length, 0, 0)

    def _duration(self, modifier: str, default_length: float, line_num: int, column: int) -> float:
        if not modifier:
            return default_length

        match = self.DURATION_MULTIPLIER.match(modifier)
        if match:
            factor = int(match.group(1))
            if factor == 0:
                self._warn(RangeWarning(f"Zero length '{modifier}'", line_num, column))
                return default_length
            return default_length * factor

        match = self.DURATION_DIVISOR.match(modifier)
        if match:
            divisor = int(match.group(1)) if match.group(1) else 2
            if divisor == 0:
                self._warn(RangeWarning(f"Zero divisor in '{modifier}'", line_num, column))
                return default_length
            return default_length / divisor

        match = self.DURATION_RATIO.match(modifier)
        if match:
            numerator, denominator = int(match.group(1)), int(match.group(2))
            if numerator == 0 or denominator == 0:
                self._warn(RangeWarning(f"Zero in length ratio '{modifier}'", line_num, column))
                return default_length
            return default_length * numerator / denominator

        match = self.DURATION_SLASHES.match(modifier)
        if match:
            return default_length / (2 ** len(match.group(1)))

        self._warn(GrammarWarning(f"Unrecognized length '{modifier}'", line_num, column))
        return default_length

    def _warn(self, warning: Union[GrammarWarning, RangeWarning]) -> None:
        logger.debug(f"ABC {type(warning).__name__}: {warning}")
        self.warnings.append(warning)
