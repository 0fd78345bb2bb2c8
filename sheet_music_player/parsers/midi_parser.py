"""
MIDI Parser - Decode Standard MIDI Files into timed notes.

Reads the MThd header and every MTrk chunk, pairs note-on/note-off
events per (channel, note), and converts tick positions to seconds
through the tempo map built from all tempo meta events.
"""

from __future__ import annotations

import logging
import struct
from bisect import bisect_right
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple, Union

from sheet_music_player.core.errors import (
    GrammarWarning,
    NotationError,
    RangeWarning,
    StructuralError,
)
from sheet_music_player.core.mom import DEFAULT_MICROSECONDS_PER_QUARTER
from sheet_music_player.core.pitch import clamp_midi, midi_to_pitch
from sheet_music_player.core.scheduler import ScheduledEvent

logger = logging.getLogger(__name__)

HEADER_CHUNK = b"MThd"
TRACK_CHUNK = b"MTrk"
HEADER_LENGTH = 6
STATUS_THRESHOLD = 0x80

NOTE_OFF = 0x80
NOTE_ON = 0x90
TWO_DATA_BYTE_TYPES = (0xA0, 0xB0, 0xE0)  # aftertouch, control change, pitch bend
ONE_DATA_BYTE_TYPES = (0xC0, 0xD0)  # program change, channel pressure
META = 0xFF
SYSEX_TYPES = (0xF0, 0xF7)
TEMPO_META = 0x51


class _TruncatedData(Exception):
    """A read ran past the end of the current chunk."""


@dataclass
class ResolvedNote:
    """A note with absolute timing in seconds."""
    note_id: str
    midi_note: int
    velocity: float  # 0.0-1.0
    start_time: float  # seconds
    duration: float  # seconds
    channel: int
    track: int = 0

    @property
    def end_time(self) -> float:
        return self.start_time + self.duration

    @property
    def pitch(self) -> str:
        return midi_to_pitch(self.midi_note)


@dataclass
class TrackEvent:
    """A decoded event of interest inside one track."""
    type: str  # "note_on", "note_off" or "tempo"
    tick: int
    channel: int = 0
    note: int = 0
    velocity: float = 0.0
    tempo: int = 0


@dataclass
class TempoChange:
    """One entry of the tempo map."""
    tick: int
    microseconds_per_quarter: int

    @property
    def bpm(self) -> float:
        return 60_000_000 / self.microseconds_per_quarter


class TempoMap:
    """
    Tick to seconds conversion over a sorted list of tempo changes.

    The first change governs every tick before it, and a map with no
    changes runs at 120 BPM. The conversion is monotonic non-decreasing
    in tick.
    """

    def __init__(self, changes: List[TempoChange], ticks_per_quarter: int):
        if ticks_per_quarter <= 0:
            raise ValueError("ticks_per_quarter must be positive")
        self.ticks_per_quarter = ticks_per_quarter

        changes = sorted(changes, key=lambda c: c.tick)
        if not changes:
            changes.append(TempoChange(0, DEFAULT_MICROSECONDS_PER_QUARTER))
        elif changes[0].tick > 0:
            # The first tempo also covers the ticks before it
            changes[0] = TempoChange(0, changes[0].microseconds_per_quarter)
        self.changes = changes

        # Seconds elapsed at the start of every segment
        self._ticks: List[int] = []
        self._offsets: List[float] = []
        seconds = 0.0
        for index, change in enumerate(changes):
            if index > 0:
                previous = changes[index - 1]
                seconds += self._span(change.tick - previous.tick, previous.microseconds_per_quarter)
            self._ticks.append(change.tick)
            self._offsets.append(seconds)

    def _span(self, ticks: int, microseconds_per_quarter: int) -> float:
        return (ticks / self.ticks_per_quarter) * (microseconds_per_quarter / 1_000_000)

    def ticks_to_seconds(self, tick: int) -> float:
        """Absolute time in seconds of an absolute tick position."""
        if tick <= 0:
            return 0.0
        index = bisect_right(self._ticks, tick) - 1
        change = self.changes[index]
        return self._offsets[index] + self._span(tick - change.tick, change.microseconds_per_quarter)

    def __iter__(self) -> Iterator[TempoChange]:
        return iter(self.changes)

    def __len__(self) -> int:
        return len(self.changes)


@dataclass
class MidiParseResult:
    """Everything decoded from one MIDI file. Returned, never raised."""
    notes: List[ResolvedNote] = field(default_factory=list)
    errors: List[NotationError] = field(default_factory=list)
    warnings: List[NotationError] = field(default_factory=list)
    format: int = 0
    track_count: int = 0
    ticks_per_quarter: int = 0
    tempo_map: List[TempoChange] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def duration(self) -> float:
        """Seconds until the last note ends."""
        return max((n.end_time for n in self.notes), default=0.0)

    def to_events(self) -> List[ScheduledEvent]:
        """Scheduler events where one beat is one second (play at 60 BPM)."""
        return [
            ScheduledEvent(
                note_id=n.note_id,
                midi_note=n.midi_note,
                velocity=n.velocity,
                start_beat=n.start_time,
                duration_beats=n.duration,
            )
            for n in self.notes
        ]

    def __iter__(self) -> Iterator[ResolvedNote]:
        return iter(self.notes)

    def __len__(self) -> int:
        return len(self.notes)


class _ByteReader:
    """Big-endian cursor over a bytes object, bounded by ``limit``."""

    def __init__(self, data: bytes, position: int = 0, limit: Optional[int] = None):
        self.data = data
        self.position = position
        self.limit = len(data) if limit is None else min(limit, len(data))

    @property
    def remaining(self) -> int:
        return self.limit - self.position

    def read_bytes(self, count: int) -> bytes:
        if count < 0 or self.position + count > self.limit:
            raise _TruncatedData(f"need {count} bytes at offset {self.position}")
        chunk = self.data[self.position:self.position + count]
        self.position += count
        return chunk

    def read_uint8(self) -> int:
        return self.read_bytes(1)[0]

    def read_uint16(self) -> int:
        return struct.unpack(">H", self.read_bytes(2))[0]

    def read_uint32(self) -> int:
        return struct.unpack(">I", self.read_bytes(4))[0]

    def read_variable_length(self) -> int:
        """Read a variable-length quantity (7 bits per byte, high bit = more)."""
        value = 0
        for _ in range(4):
            byte = self.read_uint8()
            value = (value << 7) | (byte & 0x7F)
            if not byte & 0x80:
                return value
        raise _TruncatedData(f"variable-length quantity longer than 4 bytes at offset {self.position}")

    def skip(self, count: int) -> None:
        self.read_bytes(count)


def read_variable_length(data: bytes, position: int = 0) -> Tuple[int, int]:
    """
    Decode a variable-length quantity.

    Returns:
        Tuple of (value, position after the quantity)
    """
    reader = _ByteReader(data, position)
    value = reader.read_variable_length()
    return value, reader.position


class MidiParser:
    """
    Parser for Standard MIDI Files.

    Only ticks-per-quarter-note timing is interpreted. A timecode
    division is read with its top bit masked off and used as is.
    """

    def __init__(self):
        self.errors: List[NotationError] = []
        self.warnings: List[NotationError] = []

    def parse(self, data: Union[bytes, bytearray]) -> MidiParseResult:
        """
        Parse MIDI file contents.

        Args:
            data: Raw file bytes

        Returns:
            MidiParseResult with notes sorted by start time
        """
        self.errors = []
        self.warnings = []
        data = bytes(data)
        reader = _ByteReader(data)

        try:
            header = self._parse_header(reader)
        except _TruncatedData:
            header = None
        if header is None:
            self.errors.append(StructuralError("Invalid MIDI file: missing or malformed MThd header"))
            logger.warning("Rejected MIDI data without a valid header")
            return self._result()

        midi_format, track_count, division = header
        ticks_per_quarter = division & 0x7FFF
        if division & 0x8000:
            logger.debug(f"Timecode division 0x{division:04x} used as {ticks_per_quarter} ticks/quarter")
        if ticks_per_quarter == 0:
            self.errors.append(StructuralError("MIDI header declares zero ticks per quarter note"))
            return self._result(midi_format, track_count, 0)

        tracks: List[List[TrackEvent]] = []
        tempo_changes: List[TempoChange] = []

        while len(tracks) < track_count:
            try:
                events = self._parse_next_track(reader, len(tracks) + 1)
            except _TruncatedData as e:
                self.errors.append(StructuralError(f"Truncated MIDI data: {e}"))
                break
            if events is None:
                self.errors.append(StructuralError(
                    f"Expected {track_count} tracks, found {len(tracks)}"
                ))
                break
            tracks.append(events)
            for event in events:
                if event.type == "tempo":
                    tempo_changes.append(TempoChange(event.tick, event.tempo))

        tempo_map = TempoMap(tempo_changes, ticks_per_quarter)
        notes = self._pair_notes(tracks, tempo_map)

        logger.debug(
            f"Parsed MIDI format {midi_format}: {len(tracks)} tracks, "
            f"{len(notes)} notes, {len(tempo_map)} tempo entries"
        )
        return MidiParseResult(
            notes=notes,
            errors=list(self.errors),
            warnings=list(self.warnings),
            format=midi_format,
            track_count=track_count,
            ticks_per_quarter=ticks_per_quarter,
            tempo_map=list(tempo_map),
        )

    def parse_file(self, filepath: Union[str, Path]) -> MidiParseResult:
        """Parse a .mid file from disk."""
        filepath = Path(filepath)
        if not filepath.exists():
            raise FileNotFoundError(f"File not found: {filepath}")
        return self.parse(filepath.read_bytes())

    def _result(self, midi_format: int = 0, track_count: int = 0, ticks_per_quarter: int = 0) -> MidiParseResult:
        return MidiParseResult(
            errors=list(self.errors),
            warnings=list(self.warnings),
            format=midi_format,
            track_count=track_count,
            ticks_per_quarter=ticks_per_quarter,
        )

    def _parse_header(self, reader: _ByteReader) -> Optional[Tuple[int, int, int]]:
        """Return (format, track count, division) or None when invalid."""
        if reader.read_bytes(4) != HEADER_CHUNK:
            return None
        if reader.read_uint32() != HEADER_LENGTH:
            return None
        midi_format = reader.read_uint16()
        track_count = reader.read_uint16()
        division = reader.read_uint16()
        return midi_format, track_count, division

    def _parse_next_track(self, reader: _ByteReader, track_number: int) -> Optional[List[TrackEvent]]:
        """Find the next MTrk chunk, skipping unknown chunks. None at end of data."""
        while reader.remaining >= 8:
            chunk_id = reader.read_bytes(4)
            length = reader.read_uint32()
            if chunk_id == TRACK_CHUNK:
                end = reader.position + length
                if end > reader.limit:
                    self.errors.append(StructuralError(
                        f"Track {track_number} declares {length} bytes but only {reader.remaining} remain"
                    ))
                track_reader = _ByteReader(reader.data, reader.position, end)
                events = self._parse_track_events(track_reader)
                reader.position = min(end, reader.limit)
                return events

            self.warnings.append(GrammarWarning(f"Skipping unknown chunk {chunk_id!r}"))
            reader.position = min(reader.position + length, reader.limit)
        return None

    def _parse_track_events(self, reader: _ByteReader) -> List[TrackEvent]:
        """Decode one track body. Truncation keeps the events read so far."""
        events: List[TrackEvent] = []
        try:
            self._decode_events(reader, events)
        except _TruncatedData as e:
            self.errors.append(StructuralError(f"Truncated track data: {e}"))
        return events

    def _decode_events(self, reader: _ByteReader, events: List[TrackEvent]) -> None:
        absolute_tick = 0
        running_status = 0

        while reader.remaining > 0:
            absolute_tick += reader.read_variable_length()
            status = reader.read_uint8()

            if status < STATUS_THRESHOLD:
                if not running_status:
                    self.warnings.append(GrammarWarning(
                        f"Data byte 0x{status:02x} without running status at offset {reader.position - 1}"
                    ))
                    continue
                # Data byte: re-read it under the previous status
                reader.position -= 1
                status = running_status
            elif status < 0xF0:
                running_status = status

            event_type = status & 0xF0
            channel = status & 0x0F

            if event_type == NOTE_ON:
                note = self._read_data_byte(reader)
                velocity = self._read_data_byte(reader)
                events.append(TrackEvent(
                    type="note_on" if velocity > 0 else "note_off",
                    tick=absolute_tick,
                    channel=channel,
                    note=note,
                    velocity=velocity / 127,
                ))
            elif event_type == NOTE_OFF:
                note = self._read_data_byte(reader)
                self._read_data_byte(reader)
                events.append(TrackEvent(type="note_off", tick=absolute_tick, channel=channel, note=note))
            elif event_type in TWO_DATA_BYTE_TYPES:
                reader.skip(2)
            elif event_type in ONE_DATA_BYTE_TYPES:
                reader.skip(1)
            elif status == META:
                meta_type = reader.read_uint8()
                length = reader.read_variable_length()
                if meta_type == TEMPO_META and length == 3:
                    tempo = int.from_bytes(reader.read_bytes(3), "big")
                    if tempo > 0:
                        events.append(TrackEvent(type="tempo", tick=absolute_tick, tempo=tempo))
                    else:
                        self.warnings.append(RangeWarning(f"Ignoring zero tempo at tick {absolute_tick}"))
                else:
                    reader.skip(length)
            elif status in SYSEX_TYPES:
                reader.skip(reader.read_variable_length())
            else:
                self.warnings.append(GrammarWarning(f"Unexpected status byte 0x{status:02x}"))

    def _read_data_byte(self, reader: _ByteReader) -> int:
        value = reader.read_uint8()
        if value > 127:
            self.warnings.append(RangeWarning(f"Data byte 0x{value:02x} out of range"))
            value = clamp_midi(value)
        return value

    def _pair_notes(self, tracks: List[List[TrackEvent]], tempo_map: TempoMap) -> List[ResolvedNote]:
        """Match note-ons with their note-offs, track by track."""
        notes: List[ResolvedNote] = []
        next_id = 0

        for track_index, events in enumerate(tracks):
            open_notes: Dict[Tuple[int, int], TrackEvent] = {}
            for event in events:
                key = (event.channel, event.note)
                if event.type == "note_on":
                    open_notes[key] = event
                elif event.type == "note_off":
                    note_on = open_notes.pop(key, None)
                    if note_on is None:
                        continue
                    start = tempo_map.ticks_to_seconds(note_on.tick)
                    end = tempo_map.ticks_to_seconds(event.tick)
                    notes.append(ResolvedNote(
                        note_id=f"midi_{next_id}",
                        midi_note=event.note,
                        velocity=note_on.velocity,
                        start_time=start,
                        duration=end - start,
                        channel=event.channel,
                        track=track_index,
                    ))
                    next_id += 1

            if open_notes:
                logger.debug(f"Track {track_index}: dropping {len(open_notes)} unterminated notes")

        notes.sort(key=lambda n: n.start_time)
        return notes
