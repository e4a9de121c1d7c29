import os

import pytest

from core.config import BASE_DIR, Settings, get_settings


@pytest.fixture
def clean_env(tmp_path):
    """Isolated environment; SCORE_DIR points at tmp so nothing lands in the repo."""
    old_env = os.environ.copy()
    os.environ["SCORE_DIR"] = str(tmp_path / "scores")
    yield
    os.environ.clear()
    os.environ.update(old_env)
    get_settings.cache_clear()


def test_defaults(clean_env):
    s = Settings(_env_file=None)
    assert s.default_tempo_bpm == 74.0
    assert s.match_tolerance_s == 1.0
    assert s.transport_poll_ms == 100
    assert s.beats_per_measure == 4
    assert s.click_channel == 9
    assert s.midi_input_port is None
    assert s.max_score_bytes == 5 * 1024 * 1024


def test_score_dir_created(clean_env, tmp_path):
    s = Settings(_env_file=None)
    assert s.score_dir == tmp_path / "scores"
    assert s.score_dir.is_dir()


def test_alias_choices(clean_env):
    # CLICK_PORT is accepted as an alias of MIDI_OUTPUT_PORT
    os.environ["CLICK_PORT"] = "IAC Bus 1"
    s1 = Settings(_env_file=None)
    assert s1.midi_output_port == "IAC Bus 1"

    del os.environ["CLICK_PORT"]
    os.environ["MIDI_OUTPUT_PORT"] = "Synth"
    s2 = Settings(_env_file=None)
    assert s2.midi_output_port == "Synth"


def test_sanity_clamps(clean_env):
    s = Settings(TRANSPORT_POLL_MS=1, BEATS_PER_MEASURE=99, CLICK_CHANNEL=40, _env_file=None)
    assert s.transport_poll_ms == 10
    assert s.beats_per_measure == 16
    assert s.click_channel == 15

    s = Settings(DEFAULT_TEMPO_BPM=-5, MATCH_TOLERANCE_S=0, MAX_SCORE_SIZE_MB=0, _env_file=None)
    assert s.default_tempo_bpm == 74.0
    assert s.match_tolerance_s == 1.0
    assert s.max_score_size_mb == 5


def test_env_overrides(clean_env):
    os.environ["DEFAULT_TEMPO_BPM"] = "96"
    os.environ["HAND_FROM_STAFF"] = "true"
    s = Settings(_env_file=None)
    assert s.default_tempo_bpm == 96.0
    assert s.hand_from_staff is True


def test_path_normalization(clean_env):
    s = Settings(SCORE_DIR="scores", _env_file=None)
    assert s.score_dir.is_absolute()
    assert s.score_dir == (BASE_DIR / "scores").resolve()


def test_get_settings_is_cached(clean_env):
    get_settings.cache_clear()
    assert get_settings() is get_settings()
