"""
Musical Object Model (MOM).

The format-neutral score representation every parser produces and the
scheduler consumes. A MOM is built fresh on each parse; nothing here
holds parser state.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from fractions import Fraction
from typing import Dict, Iterator, List, Optional, Tuple, Union

from sheet_music_player.core.errors import NotationError

DEFAULT_TEMPO_BPM = 120.0
DEFAULT_MICROSECONDS_PER_QUARTER = 500_000

BARLINE_TYPES = ("single", "final", "double", "repeat-start", "repeat-end")


class ElementKind(Enum):
    """Tag carried by every measure element."""
    NOTE = "note"
    REST = "rest"
    CHORD = "chord"


class DirectiveType(Enum):
    """Directive names recognised on ``%%`` lines."""
    DIR = "dir"
    FX = "fx"
    ANALYSIS = "analysis"
    GAME_STATE = "game_state"
    LOOP = "loop"
    ART = "art"
    MARKER = "marker"
    SWING = "swing"
    MUTE = "mute"
    VSKIP = "vskip"
    SEP = "sep"
    MEASURENUMBERING = "measurenumbering"
    FRAME = "frame"
    FB = "fb"


def parse_fraction(text: Optional[str], default: Fraction) -> Fraction:
    """Read an ``a/b`` fraction out of ``text``."""
    if not text:
        return default
    match = re.search(r"(\d+)\s*/\s*(\d+)", text)
    if match and int(match.group(2)) > 0:
        return Fraction(int(match.group(1)), int(match.group(2)))
    return default


@dataclass
class VoiceDefinition:
    """A voice declared in the header (``V:`` field or a score part)."""
    id: str
    name: Optional[str] = None
    short_name: Optional[str] = None
    clef: Optional[str] = None


@dataclass
class Header:
    """Score-level metadata. Every field has a usable default."""
    reference: int = 1
    title: str = "Untitled"
    composer: Optional[str] = None
    meter: str = "4/4"
    unit_note_length: str = "1/8"
    tempo: Optional[str] = None
    key: str = "C"
    voices: List[VoiceDefinition] = field(default_factory=list)

    @property
    def unit_length(self) -> float:
        """Default note length as a fraction of a whole note."""
        return float(parse_fraction(self.unit_note_length, Fraction(1, 8)))

    @property
    def measure_length(self) -> float:
        """Length of one measure as a fraction of a whole note."""
        meter = self.meter.strip()
        if meter in ("C", "C|"):  # common time, cut time
            return 1.0
        return float(parse_fraction(meter, Fraction(1, 1)))

    @property
    def quarter_bpm(self) -> float:
        """
        Tempo in quarter notes per minute.

        ``1/8=180`` means 180 eighths a minute, i.e. 90 quarters.
        A bare number is read as quarter notes per minute.
        """
        if not self.tempo:
            return DEFAULT_TEMPO_BPM

        match = re.search(r"(\d+)\s*/\s*(\d+)\s*=\s*(\d+(?:\.\d+)?)", self.tempo)
        if match and int(match.group(2)) > 0:
            beat = Fraction(int(match.group(1)), int(match.group(2)))
            bpm = float(match.group(3)) * float(beat) / 0.25
            return bpm if bpm > 0 else DEFAULT_TEMPO_BPM

        match = re.search(r"(\d+(?:\.\d+)?)", self.tempo)
        if match and float(match.group(1)) > 0:
            return float(match.group(1))
        return DEFAULT_TEMPO_BPM


@dataclass
class Directive:
    """An annotation from a ``%%`` line. It never affects timing."""
    type: DirectiveType
    measure: int
    position: float
    attributes: Dict[str, str] = field(default_factory=dict)
    name: str = ""


@dataclass
class DirectivesMap:
    """Directives grouped by category, in source order within each group."""
    dir: List[Directive] = field(default_factory=list)
    fx: List[Directive] = field(default_factory=list)
    analysis: List[Directive] = field(default_factory=list)
    game_state: List[Directive] = field(default_factory=list)
    loop: List[Directive] = field(default_factory=list)
    art: List[Directive] = field(default_factory=list)
    marker: List[Directive] = field(default_factory=list)
    swing: List[Directive] = field(default_factory=list)
    mute: List[Directive] = field(default_factory=list)
    layout: List[Directive] = field(default_factory=list)
    harmony: List[Directive] = field(default_factory=list)

    CATEGORY_MAP = {
        DirectiveType.DIR: "dir",
        DirectiveType.FX: "fx",
        DirectiveType.ANALYSIS: "analysis",
        DirectiveType.GAME_STATE: "game_state",
        DirectiveType.LOOP: "loop",
        DirectiveType.ART: "art",
        DirectiveType.MARKER: "marker",
        DirectiveType.SWING: "swing",
        DirectiveType.MUTE: "mute",
        DirectiveType.VSKIP: "layout",
        DirectiveType.SEP: "layout",
        DirectiveType.MEASURENUMBERING: "layout",
        DirectiveType.FRAME: "harmony",
        DirectiveType.FB: "harmony",
    }

    def add(self, directive: Directive) -> None:
        """File a directive under its category."""
        getattr(self, self.CATEGORY_MAP[directive.type]).append(directive)

    def __iter__(self) -> Iterator[Directive]:
        for category in dict.fromkeys(self.CATEGORY_MAP.values()):
            yield from getattr(self, category)

    def __len__(self) -> int:
        return sum(1 for _ in self)


@dataclass
class Note:
    """A pitched note. Times and durations are in MOM beats."""
    id: str
    pitch: str
    midi_note: int
    duration: float
    start_time: float
    velocity: float
    voice: str
    measure: int
    kind: ElementKind = field(default=ElementKind.NOTE, init=False, repr=False)


@dataclass
class Rest:
    """A silence. Carries no pitch or velocity."""
    id: str
    duration: float
    start_time: float
    voice: str
    measure: int
    kind: ElementKind = field(default=ElementKind.REST, init=False, repr=False)


@dataclass
class Chord:
    """Notes sounding together. ``duration`` is how far the chord advances time."""
    id: str
    notes: List[Note]
    start_time: float
    duration: float
    voice: str
    measure: int
    kind: ElementKind = field(default=ElementKind.CHORD, init=False, repr=False)


Element = Union[Note, Rest, Chord]


def element_notes(element: Element) -> List[Note]:
    """Notes that sound for an element (none for a rest)."""
    if element.kind is ElementKind.NOTE:
        return [element]
    if element.kind is ElementKind.CHORD:
        return list(element.notes)
    if element.kind is ElementKind.REST:
        return []
    raise ValueError(f"Unknown element kind: {element.kind}")


@dataclass
class Measure:
    """One bar of music."""
    number: int
    start_time: float
    duration: float = 0.0
    elements: List[Element] = field(default_factory=list)
    barline: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.elements

    def notes(self) -> Iterator[Note]:
        for element in self.elements:
            yield from element_notes(element)


@dataclass
class MusicalObjectModel:
    """
    A parsed score.

    Attributes:
        header: Score metadata
        measures: Measures in order
        voice_ids: Voices seen, in first-seen order
        beat_unit: Fraction of a whole note one MOM beat spans
            (1.0 for ABC lengths, 0.25 for quarter-based formats)
    """
    header: Header = field(default_factory=Header)
    measures: List[Measure] = field(default_factory=list)
    voice_ids: List[str] = field(default_factory=list)
    beat_unit: float = 1.0

    @property
    def total_duration(self) -> float:
        return sum(m.duration for m in self.measures)

    @property
    def voices(self) -> Dict[str, Tuple[Element, ...]]:
        """Read-only index of the measure elements by voice id."""
        index: Dict[str, List[Element]] = {vid: [] for vid in self.voice_ids}
        for element in self.iter_elements():
            index.setdefault(element.voice, []).append(element)
        return {vid: tuple(elements) for vid, elements in index.items()}

    def iter_elements(self) -> Iterator[Element]:
        for measure in self.measures:
            yield from measure.elements

    def iter_notes(self) -> Iterator[Note]:
        for measure in self.measures:
            yield from measure.notes()

    @property
    def num_notes(self) -> int:
        return sum(1 for _ in self.iter_notes())

    def find(self, element_id: str) -> Optional[Union[Element, Note]]:
        """Look up an element or chord member by id."""
        for element in self.iter_elements():
            if element.id == element_id:
                return element
            for note in element_notes(element):
                if note.id == element_id:
                    return note
        return None

    def playback_tempo(self, quarter_bpm: Optional[float] = None) -> float:
        """
        Tempo in MOM beats per minute, for the scheduler.

        Args:
            quarter_bpm: Override for the header tempo, in quarters per minute
        """
        bpm = quarter_bpm if quarter_bpm else self.header.quarter_bpm
        return bpm * 0.25 / self.beat_unit


@dataclass
class ParseResult:
    """What every score parser returns. Never raised, always returned."""
    mom: MusicalObjectModel = field(default_factory=MusicalObjectModel)
    directives: DirectivesMap = field(default_factory=DirectivesMap)
    errors: List[NotationError] = field(default_factory=list)
    warnings: List[NotationError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors
