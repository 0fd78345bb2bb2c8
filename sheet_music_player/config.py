"""
Configuration module for Sheet Music Player.

Handles playback timing settings, parser defaults,
and user preferences.
"""

import json
import logging
from pathlib import Path
from dataclasses import dataclass, field, asdict
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class PlaybackConfig:
    """Configuration for the scheduler and sound output."""
    default_tempo: float = 120.0  # quarter notes per minute
    lookahead_ms: int = 25  # scheduler loop period
    schedule_ahead: float = 0.1  # seconds of events admitted per tick
    max_polyphony: int = 16
    midi_output_id: Optional[int] = None  # None = system default
    midi_channel: int = 0

    def __post_init__(self):
        self.max_polyphony = max(1, self.max_polyphony)
        self.midi_channel = max(0, min(15, self.midi_channel))


@dataclass
class ParserConfig:
    """Defaults used when a source file leaves something out."""
    default_unit_length: str = "1/8"
    default_meter: str = "4/4"
    default_velocity: float = 0.8
    default_voice: str = "V1"


@dataclass
class Config:
    """
    Main configuration class for Sheet Music Player.

    Handles loading/saving settings.
    """

    # Sub-configurations
    playback: PlaybackConfig = field(default_factory=PlaybackConfig)
    parser: ParserConfig = field(default_factory=ParserConfig)

    # Recent files
    recent_files: list = field(default_factory=list)
    recent_files_max: int = 10

    # Application directories
    _config_dir: Path = field(default_factory=lambda: Path.home() / ".sheet_music_player")
    _config_file: Path = field(default=None)

    def __post_init__(self):
        """Initialize configuration paths."""
        if self._config_file is None:
            self._config_file = self._config_dir / "config.json"

    @property
    def config_file(self) -> Path:
        return self._config_file

    def save(self) -> None:
        """Save configuration to disk."""
        data = {
            "playback": asdict(self.playback),
            "parser": asdict(self.parser),
            "recent_files": self.recent_files[:self.recent_files_max],
        }

        self._config_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self._config_file, "w") as f:
            json.dump(data, f, indent=2)

    @classmethod
    def load(cls, config_dir: Optional[Path] = None) -> "Config":
        """Load configuration from disk or create default."""
        config = cls() if config_dir is None else cls(_config_dir=Path(config_dir))

        if config._config_file.exists():
            try:
                with open(config._config_file, "r") as f:
                    data = json.load(f)

                if "playback" in data:
                    config.playback = PlaybackConfig(**data["playback"])
                if "parser" in data:
                    config.parser = ParserConfig(**data["parser"])

                config.recent_files = data.get("recent_files", [])

            except (json.JSONDecodeError, TypeError, KeyError) as e:
                logger.warning(f"Could not load config file: {e}")

        return config

    def add_recent_file(self, filepath: str) -> None:
        """Add a file to recent files list."""
        filepath = str(filepath)

        # Remove if already exists
        if filepath in self.recent_files:
            self.recent_files.remove(filepath)

        # Add to front
        self.recent_files.insert(0, filepath)

        # Trim to max length
        self.recent_files = self.recent_files[:self.recent_files_max]

        self.save()


# Global configuration instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def reset_config() -> None:
    """Reset the global configuration to defaults."""
    global _config
    _config = Config()
    _config.save()
