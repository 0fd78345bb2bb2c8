"""
MusicXML Parser - Read partwise or timewise MusicXML into a score model.

Durations are given in divisions per quarter note; the model stores
them in quarter-note beats.
"""

from __future__ import annotations

import logging
import zipfile
from pathlib import Path
from typing import Iterator, List, Optional, Tuple, Union
from xml.etree import ElementTree as ET

from sheet_music_player.config import ParserConfig
from sheet_music_player.core.errors import GrammarWarning, RangeWarning, StructuralError
from sheet_music_player.core.mom import (
    Chord,
    ElementKind,
    Header,
    Measure,
    MusicalObjectModel,
    Note,
    ParseResult,
    Rest,
    VoiceDefinition,
)
from sheet_music_player.core.pitch import clamp_midi, in_midi_range

logger = logging.getLogger(__name__)

PARTWISE = "score-partwise"
TIMEWISE = "score-timewise"

DEFAULT_NOTE_BEATS = 0.25

STEP_SEMITONES = {"C": 0, "D": 2, "E": 4, "F": 5, "G": 7, "A": 9, "B": 11}

# Indexed by number of sharps / flats, 0-7
MAJOR_SHARP_KEYS = ["C", "G", "D", "A", "E", "B", "F#", "C#"]
MAJOR_FLAT_KEYS = ["C", "F", "Bb", "Eb", "Ab", "Db", "Gb", "Cb"]
MINOR_SHARP_KEYS = ["Am", "Em", "Bm", "F#m", "C#m", "G#m", "D#m", "A#m"]
MINOR_FLAT_KEYS = ["Am", "Dm", "Gm", "Cm", "Fm", "Bbm", "Ebm", "Abm"]

# Softest to loudest
DYNAMICS_VELOCITY = [
    ("ppp", 0.2),
    ("pp", 0.3),
    ("p", 0.4),
    ("mp", 0.55),
    ("mf", 0.7),
    ("f", 0.85),
    ("ff", 0.95),
    ("fff", 1.0),
]

CLEF_NAMES = {"G": "treble", "F": "bass", "C": "alto", "percussion": "perc", "TAB": "tab"}


def local_name(tag: str) -> str:
    """Tag name without its ``{namespace}`` prefix."""
    return tag.rsplit("}", 1)[-1] if isinstance(tag, str) else ""


def find_child(elem: ET.Element, name: str) -> Optional[ET.Element]:
    for child in elem:
        if local_name(child.tag) == name:
            return child
    return None


def find_children(elem: ET.Element, name: str) -> List[ET.Element]:
    return [child for child in elem if local_name(child.tag) == name]


def find_descendant(elem: ET.Element, name: str, **attributes: str) -> Optional[ET.Element]:
    """First element below ``elem`` (document order) with this name and attributes."""
    for node in elem.iter():
        if node is elem or local_name(node.tag) != name:
            continue
        if all(node.get(key) == value for key, value in attributes.items()):
            return node
    return None


def element_text(elem: Optional[ET.Element]) -> Optional[str]:
    if elem is None or elem.text is None:
        return None
    return elem.text.strip() or None


def child_text(elem: Optional[ET.Element], name: str, default: Optional[str] = None) -> Optional[str]:
    if elem is None:
        return default
    child = find_child(elem, name)
    if child is None or child.text is None or not child.text.strip():
        return default
    return child.text.strip()


def fifths_to_key(fifths: int, mode: str = "major") -> str:
    """
    Key name from a signed count of sharps (+) or flats (-).

    Args:
        fifths: -7 to 7; larger counts are clamped
        mode: "minor" selects the relative minor, anything else is major
    """
    count = min(abs(fifths), 7)
    if mode == "minor":
        return MINOR_SHARP_KEYS[count] if fifths >= 0 else MINOR_FLAT_KEYS[count]
    return MAJOR_SHARP_KEYS[count] if fifths >= 0 else MAJOR_FLAT_KEYS[count]


def dynamics_to_velocity(dynamics: ET.Element, default: float = 0.8) -> float:
    """Velocity for the first recognised marking inside a <dynamics> element."""
    marks = {local_name(child.tag) for child in dynamics}
    for mark, velocity in DYNAMICS_VELOCITY:
        if mark in marks:
            return velocity
    return default


def step_to_midi(step: str, octave: int, alter: int = 0) -> int:
    return (octave + 1) * 12 + STEP_SEMITONES.get(step.upper(), 0) + alter


class MusicXMLParser:
    """
    Parser for MusicXML documents.

    Parts are laid end to end in document order, the same way measures
    appear in the file. MusicXML has no directives, so the directive map
    of the result is always empty.
    """

    def __init__(self, config: Optional[ParserConfig] = None):
        self.config = config or ParserConfig()
        self.errors: List[StructuralError] = []
        self.warnings: List[Union[GrammarWarning, RangeWarning]] = []
        self._divisions = 1.0

    def parse(self, document: Union[str, bytes, ET.Element]) -> ParseResult:
        """
        Parse a MusicXML document.

        Args:
            document: XML text, raw bytes or an already parsed root element

        Returns:
            ParseResult; an empty score plus an error when the document is
            not MusicXML
        """
        self.errors = []
        self.warnings = []
        self._divisions = 1.0

        if isinstance(document, ET.Element):
            tree_root = document
        else:
            try:
                tree_root = ET.fromstring(document)
            except ET.ParseError as e:
                return self._error_result(f"XML parse error: {e}")

        root = self._find_root(tree_root)
        if root is None:
            return self._error_result("Invalid MusicXML: no score-partwise or score-timewise root")

        try:
            header = self._parse_header(root)
            mom = MusicalObjectModel(header=header, voice_ids=[v.id for v in header.voices], beat_unit=0.25)
            mom.measures = self._parse_measures(root, mom)
        except Exception as e:
            logger.exception(f"MusicXML parse failed: {e}")
            return self._error_result(f"Parse error: {e}")

        return ParseResult(mom=mom, errors=list(self.errors), warnings=list(self.warnings))

    def parse_file(self, filepath: Union[str, Path]) -> ParseResult:
        """Parse a .musicxml/.xml file or a compressed .mxl container."""
        filepath = Path(filepath)
        if not filepath.exists():
            raise FileNotFoundError(f"File not found: {filepath}")

        if zipfile.is_zipfile(filepath):
            try:
                return self.parse(self._read_mxl(filepath))
            except (zipfile.BadZipFile, KeyError, ET.ParseError) as e:
                self.errors = []
                self.warnings = []
                return self._error_result(f"Invalid MXL container: {e}")

        return self.parse(filepath.read_bytes())

    def _read_mxl(self, filepath: Path) -> bytes:
        """Return the main score document of a compressed MusicXML file."""
        with zipfile.ZipFile(filepath) as archive:
            names = archive.namelist()
            if "META-INF/container.xml" in names:
                container = ET.fromstring(archive.read("META-INF/container.xml"))
                rootfile = find_descendant(container, "rootfile")
                if rootfile is not None and rootfile.get("full-path"):
                    return archive.read(rootfile.get("full-path"))
            for name in names:
                if not name.startswith("META-INF/") and name.endswith((".xml", ".musicxml")):
                    return archive.read(name)
        raise KeyError("no score document in archive")

    def _find_root(self, tree_root: ET.Element) -> Optional[ET.Element]:
        if local_name(tree_root.tag) in (PARTWISE, TIMEWISE):
            return tree_root
        root = find_descendant(tree_root, PARTWISE)
        if root is None:
            root = find_descendant(tree_root, TIMEWISE)
        return root

    def _error_result(self, message: str) -> ParseResult:
        logger.warning(message)
        self.errors.append(StructuralError(message))
        return ParseResult(
            mom=MusicalObjectModel(header=Header(title=""), beat_unit=0.25),
            errors=list(self.errors),
            warnings=list(self.warnings),
        )

    # ------------------------------------------------------------------
    # Header
    # ------------------------------------------------------------------

    def _parse_header(self, root: ET.Element) -> Header:
        header = Header(meter=self.config.default_meter, unit_note_length="1/4")

        header.title = (
            element_text(find_descendant(root, "work-title"))
            or element_text(find_descendant(root, "movement-title"))
            or "Untitled"
        )

        composer = element_text(find_descendant(root, "creator", type="composer"))
        if composer:
            header.composer = composer

        time = find_descendant(root, "time")
        if time is not None:
            beats = child_text(time, "beats", "4")
            beat_type = child_text(time, "beat-type", "4")
            header.meter = f"{beats}/{beat_type}"

        key = find_descendant(root, "key")
        if key is not None:
            fifths = self._int(child_text(key, "fifths", "0"), 0, "fifths")
            if abs(fifths) > 7:
                self.warnings.append(RangeWarning(f"Key with {fifths} fifths clamped to 7"))
            header.key = fifths_to_key(fifths, child_text(key, "mode", "major"))

        sound = None
        for node in root.iter():
            if local_name(node.tag) == "sound" and node.get("tempo"):
                sound = node
                break
        if sound is not None and sound.get("tempo"):
            try:
                bpm = float(sound.get("tempo"))
            except ValueError:
                self.warnings.append(GrammarWarning(f"Bad tempo '{sound.get('tempo')}'"))
            else:
                if bpm > 0:
                    header.tempo = f"1/4={bpm:g}"
                else:
                    self.warnings.append(RangeWarning(f"Ignoring non-positive tempo {bpm:g}"))

        divisions = find_descendant(root, "divisions")
        if divisions is not None and divisions.text and divisions.text.strip():
            try:
                value = float(divisions.text.strip())
            except ValueError:
                value = 0.0
            if value > 0:
                self._divisions = value
            else:
                self.warnings.append(RangeWarning(f"Bad divisions '{divisions.text.strip()}', using 1"))

        header.voices = self._parse_part_list(root)
        return header

    def _parse_part_list(self, root: ET.Element) -> List[VoiceDefinition]:
        voices = []
        part_list = find_child(root, "part-list")
        if part_list is None:
            return voices

        for score_part in find_children(part_list, "score-part"):
            part_id = score_part.get("id") or str(len(voices) + 1)
            voices.append(VoiceDefinition(
                id=part_id,
                name=child_text(score_part, "part-name"),
                short_name=child_text(score_part, "part-abbreviation"),
                clef=self._part_clef(root, part_id),
            ))
        return voices

    def _part_clef(self, root: ET.Element, part_id: str) -> Optional[str]:
        for part in find_children(root, "part"):
            if part.get("id") == part_id:
                clef = find_descendant(part, "clef")
                sign = child_text(clef, "sign")
                return CLEF_NAMES.get(sign, sign.lower()) if sign else None
        return None

    # ------------------------------------------------------------------
    # Measures
    # ------------------------------------------------------------------

    def _iter_measures(self, root: ET.Element) -> Iterator[Tuple[ET.Element, List[Tuple[ET.Element, str]]]]:
        """Yield each <measure> with its (note, part id) pairs in document order."""
        if local_name(root.tag) == PARTWISE:
            for part in find_children(root, "part"):
                part_id = part.get("id") or "1"
                for measure in find_children(part, "measure"):
                    yield measure, [(n, part_id) for n in measure.iter() if local_name(n.tag) == "note"]
        else:
            for measure in find_children(root, "measure"):
                notes = []
                for part in find_children(measure, "part"):
                    part_id = part.get("id") or "1"
                    notes.extend((n, part_id) for n in part.iter() if local_name(n.tag) == "note")
                yield measure, notes

    def _parse_measures(self, root: ET.Element, mom: MusicalObjectModel) -> List[Measure]:
        measures: List[Measure] = []
        current_time = 0.0
        next_id = 0

        for measure_el, note_elements in self._iter_measures(root):
            measure = Measure(number=len(measures) + 1, start_time=current_time)
            cursor = 0.0

            for note_el, part_id in note_elements:
                if part_id not in mom.voice_ids:
                    mom.voice_ids.append(part_id)

                is_rest = find_child(note_el, "rest") is not None
                is_chord = find_child(note_el, "chord") is not None
                duration = self._duration(note_el)
                # Chord members sound with the element before them
                start = current_time + (max(0.0, cursor - duration) if is_chord else cursor)

                if is_rest:
                    element = Rest(
                        id=f"rest_{next_id}",
                        duration=duration,
                        start_time=start,
                        voice=part_id,
                        measure=measure.number,
                    )
                    next_id += 1
                else:
                    element = self._make_note(note_el, f"note_{next_id}", start, duration, part_id, measure.number)
                    next_id += 1
                    if element is None:
                        # Unpitched note: takes time but makes no sound here
                        if not is_chord:
                            cursor += duration
                        continue

                if is_chord and not is_rest:
                    grouped = self._add_to_chord(measure, element, f"chord_{next_id}")
                    if grouped:
                        next_id += 1
                        continue

                measure.elements.append(element)
                if not is_chord:
                    cursor += duration

            measure.duration = cursor
            current_time += cursor
            measures.append(measure)

        return measures

    def _add_to_chord(self, measure: Measure, note: Note, chord_id: str) -> bool:
        """
        Join ``note`` to the element before it.

        Returns:
            False when there is no note to stack onto; the caller then
            keeps ``note`` on its own at the same start
        """
        if not measure.elements or measure.elements[-1].kind is ElementKind.REST:
            self.warnings.append(GrammarWarning(f"Chord note {note.pitch} has no preceding note"))
            return False

        previous = measure.elements[-1]
        note.start_time = previous.start_time
        if previous.kind is ElementKind.CHORD:
            previous.notes.append(note)
            return True

        measure.elements[-1] = Chord(
            id=chord_id,
            notes=[previous, note],
            start_time=previous.start_time,
            duration=previous.duration,
            voice=previous.voice,
            measure=previous.measure,
        )
        return True

    def _duration(self, note_el: ET.Element) -> float:
        text = child_text(note_el, "duration")
        if text is None:
            return DEFAULT_NOTE_BEATS
        try:
            ticks = float(text)
        except ValueError:
            self.warnings.append(GrammarWarning(f"Bad duration '{text}'"))
            return DEFAULT_NOTE_BEATS
        if ticks < 0:
            self.warnings.append(RangeWarning(f"Negative duration '{text}' treated as 0"))
            ticks = 0.0
        return ticks / self._divisions

    def _make_note(
        self,
        note_el: ET.Element,
        note_id: str,
        start_time: float,
        duration: float,
        voice: str,
        measure_number: int,
    ) -> Optional[Note]:
        pitch = find_child(note_el, "pitch")
        if pitch is None:
            return None

        step = child_text(pitch, "step", "C")
        octave = self._int(child_text(pitch, "octave", "4"), 4, "octave")
        alter = round(self._float(child_text(pitch, "alter", "0"), 0.0, "alter"))

        midi_note = step_to_midi(step, octave, alter)
        if not in_midi_range(midi_note):
            self.warnings.append(RangeWarning(f"Pitch {step}{octave} alter {alter} out of MIDI range"))
            midi_note = clamp_midi(midi_note)

        dynamics = find_descendant(note_el, "dynamics")
        velocity = (
            dynamics_to_velocity(dynamics, self.config.default_velocity)
            if dynamics is not None
            else self.config.default_velocity
        )

        sign = "#" * alter if alter > 0 else "b" * -alter
        return Note(
            id=note_id,
            pitch=f"{step.upper()}{sign}{octave}",
            midi_note=midi_note,
            duration=duration,
            start_time=start_time,
            velocity=velocity,
            voice=voice,
            measure=measure_number,
        )

    def _int(self, text: Optional[str], default: int, name: str) -> int:
        return int(self._float(text, float(default), name))

    def _float(self, text: Optional[str], default: float, name: str) -> float:
        if text is None:
            return default
        try:
            return float(text)
        except ValueError:
            self.warnings.append(GrammarWarning(f"Bad {name} value '{text}'"))
            return default
