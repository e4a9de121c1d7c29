# core/config.py
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, AliasChoices
from pydantic_settings import BaseSettings, SettingsConfigDict


# Project root: .../playalong
BASE_DIR = Path(__file__).resolve().parents[1]


class Settings(BaseSettings):
    """
    Playalong settings.

    Reads from:
    - environment variables
    - .env in project root

    Goals:
    - sensible defaults for a single practice machine
    - normalize paths
    - clamp timing knobs into ranges the scheduler/poller can honor
    """

    model_config = SettingsConfigDict(
        env_file=str(BASE_DIR / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # ---- Environment / server ----
    app_env: str = Field(default="development", validation_alias="APP_ENV")
    host: str = Field(default="0.0.0.0", validation_alias="HOST")
    port: int = Field(default=8000, validation_alias="PORT")
    cors_allow_origins: Optional[str] = Field(default=None, validation_alias="CORS_ALLOW_ORIGINS")

    # ---- Paths ----
    score_dir: Path = Field(default=Path("scores"), validation_alias="SCORE_DIR")

    # ---- Score parsing ----
    default_tempo_bpm: float = Field(default=74.0, validation_alias="DEFAULT_TEMPO_BPM")
    hand_from_staff: bool = Field(default=False, validation_alias="HAND_FROM_STAFF")
    score_fetch_timeout_s: float = Field(default=10.0, validation_alias="SCORE_FETCH_TIMEOUT_S")
    max_score_size_mb: int = Field(default=5, validation_alias="MAX_SCORE_SIZE_MB")

    # ---- Matching / transport ----
    match_tolerance_s: float = Field(default=1.0, validation_alias="MATCH_TOLERANCE_S")
    transport_poll_ms: int = Field(default=100, validation_alias="TRANSPORT_POLL_MS")

    # ---- Metronome ----
    beats_per_measure: int = Field(default=4, validation_alias="BEATS_PER_MEASURE")
    click_note: int = Field(default=76, validation_alias="CLICK_NOTE")
    click_accent_note: int = Field(default=77, validation_alias="CLICK_ACCENT_NOTE")
    click_channel: int = Field(default=9, validation_alias="CLICK_CHANNEL")
    click_velocity: int = Field(default=100, validation_alias="CLICK_VELOCITY")

    # ---- MIDI devices (None = first available) ----
    midi_input_port: Optional[str] = Field(default=None, validation_alias="MIDI_INPUT_PORT")
    midi_output_port: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("MIDI_OUTPUT_PORT", "CLICK_PORT"),
    )

    def model_post_init(self, __context) -> None:
        # 1) Normalize paths to absolute, relative to BASE_DIR
        self.score_dir = self._abs_path(self.score_dir)

        # 2) Ensure runtime directories exist
        self.score_dir.mkdir(parents=True, exist_ok=True)

        # 3) Clamps
        if self.default_tempo_bpm <= 0:
            self.default_tempo_bpm = 74.0
        if self.match_tolerance_s <= 0:
            self.match_tolerance_s = 1.0
        if self.score_fetch_timeout_s <= 0:
            self.score_fetch_timeout_s = 10.0
        if self.max_score_size_mb <= 0:
            self.max_score_size_mb = 5

        self.transport_poll_ms = int(min(max(self.transport_poll_ms, 10), 1000))
        self.beats_per_measure = int(min(max(self.beats_per_measure, 1), 16))

        self.click_note = int(min(max(self.click_note, 0), 127))
        self.click_accent_note = int(min(max(self.click_accent_note, 0), 127))
        self.click_channel = int(min(max(self.click_channel, 0), 15))
        self.click_velocity = int(min(max(self.click_velocity, 1), 127))

    @staticmethod
    def _abs_path(p: Path) -> Path:
        if p.is_absolute():
            return p
        return (BASE_DIR / p).resolve()

    @property
    def max_score_bytes(self) -> int:
        return self.max_score_size_mb * 1024 * 1024


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


if __name__ == "__main__":
    # Quick self-check
    s = get_settings()
    print("Settings loaded")
    print(f"BASE_DIR: {BASE_DIR}")
    print(f"SCORE_DIR: {s.score_dir}")
    print(f"default tempo: {s.default_tempo_bpm} BPM")
    print(f"match tolerance: {s.match_tolerance_s}s | poll: {s.transport_poll_ms}ms")
    print(f"metronome: {s.beats_per_measure} beats | click ch={s.click_channel} note={s.click_note}/{s.click_accent_note}")
    print(f"midi in: {s.midi_input_port or '(first available)'} | midi out: {s.midi_output_port or '(first available)'}")
