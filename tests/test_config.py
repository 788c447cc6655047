"""Configuration defaults, validation and environment overrides."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from ipcamstream.config import RecordingConfig, ServerConfig


def test_defaults():
    config = ServerConfig()
    assert config.host == "0.0.0.0"
    assert config.port == 8080
    assert config.jpeg_quality == 60
    assert config.recording.segment_duration == 2.0
    assert config.recording.playlist_window == 3
    assert config.recording.min_segment_bytes == 1000
    assert config.recording.extension == "mp4"
    assert not config.recording.record_audio


@pytest.mark.parametrize("kwargs", [
    {"port": 70000},
    {"port": -1},
    {"jpeg_quality": 0},
    {"write_timeout": 0},
    {"boundary": "has space"},
    {"max_request_bytes": 10},
])
def test_invalid_server_values(kwargs):
    with pytest.raises(ValidationError):
        ServerConfig(**kwargs)


@pytest.mark.parametrize("kwargs", [
    {"segment_duration": 0},
    {"playlist_window": 0},
    {"fourcc": "mp4"},
    {"extension": "../mp4"},
])
def test_invalid_recording_values(kwargs):
    with pytest.raises(ValidationError):
        RecordingConfig(**kwargs)


def test_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("IPCAM_HOST", "127.0.0.1")
    monkeypatch.setenv("IPCAM_PORT", "9090")
    monkeypatch.setenv("IPCAM_JPEG_QUALITY", "80")
    monkeypatch.setenv("IPCAM_OUTPUT_DIR", str(tmp_path))
    monkeypatch.setenv("IPCAM_SEGMENT_DURATION", "4")
    monkeypatch.setenv("IPCAM_RECORD_AUDIO", "yes")
    config = ServerConfig.from_env()
    assert config.host == "127.0.0.1"
    assert config.port == 9090
    assert config.jpeg_quality == 80
    assert config.recording.output_dir == Path(tmp_path)
    assert config.recording.segment_duration == 4.0
    assert config.recording.record_audio


def test_overrides_win_over_env(monkeypatch):
    monkeypatch.setenv("IPCAM_PORT", "9090")
    monkeypatch.setenv("IPCAM_SEGMENT_DURATION", "4")
    config = ServerConfig.from_env(port=0, recording={"segment_duration": 6, "fps": 15})
    assert config.port == 0
    assert config.recording.segment_duration == 6.0
    assert config.recording.fps == 15.0


def test_recording_model_override(monkeypatch, tmp_path):
    monkeypatch.setenv("IPCAM_OUTPUT_DIR", "/should/not/win")
    config = ServerConfig.from_env(recording=RecordingConfig(output_dir=tmp_path))
    assert config.recording.output_dir == tmp_path


def test_custom_prefix(monkeypatch):
    monkeypatch.setenv("CAM_PORT", "1234")
    monkeypatch.setenv("IPCAM_PORT", "9090")
    assert ServerConfig.from_env(prefix="CAM_").port == 1234


def test_bad_env_value(monkeypatch):
    monkeypatch.setenv("IPCAM_PORT", "not-a-port")
    with pytest.raises(ValidationError):
        ServerConfig.from_env()
