import pytest
from pathlib import Path
from pydantic import ValidationError
from hls_packager.config import load_yaml, merge_dicts, resolve_config
from hls_packager.models import PackagerConfig

DEFAULT_YAML = Path(__file__).resolve().parent.parent / "config" / "default.yaml"


@pytest.fixture
def no_local(tmp_path):
    return tmp_path / "local.yaml"


def test_default_config_loads(no_local):
    """Test default.yaml loads without errors."""
    config = resolve_config(default_path=DEFAULT_YAML, local_path=no_local)
    assert isinstance(config, PackagerConfig)
    assert [spec.name for spec in config.ladder] == ["240p", "360p", "480p", "720p", "1080p"]
    assert config.hls.segment_duration_s == 6
    assert config.encoding.ffmpeg_path is None
    assert config.jobs.max_concurrent_encodes == 5


def test_default_yaml_matches_model_defaults(no_local):
    """Test the shipped YAML and the model defaults agree."""
    config = resolve_config(default_path=DEFAULT_YAML, local_path=no_local)
    assert config.model_dump() == PackagerConfig().model_dump()


def test_local_overrides_default(tmp_path):
    """Test local.yaml overrides default.yaml section by section."""
    local = tmp_path / "local.yaml"
    local.write_text("hls:\n  segment_duration_s: 10\njobs:\n  output_root: /data/hls\n")

    config = resolve_config(default_path=DEFAULT_YAML, local_path=local)

    assert config.hls.segment_duration_s == 10
    assert config.hls.video_codec == "libx264"
    assert config.jobs.output_root == "/data/hls"
    assert config.jobs.max_concurrent_jobs == 2


def test_local_ladder_replaces_default_ladder(tmp_path):
    """Test lists are replaced, not merged."""
    local = tmp_path / "local.yaml"
    local.write_text(
        "ladder:\n"
        "  - {name: 360p, width: 640, height: 360, video_bitrate: 800k, audio_bitrate: 96k}\n"
    )

    config = resolve_config(default_path=DEFAULT_YAML, local_path=local)

    assert [spec.name for spec in config.ladder] == ["360p"]


def test_cli_overrides_local(tmp_path):
    """Test CLI args win over both YAML layers."""
    local = tmp_path / "local.yaml"
    local.write_text("hls:\n  segment_duration_s: 10\n")

    config = resolve_config({"segment_duration": 2}, default_path=DEFAULT_YAML, local_path=local)

    assert config.hls.segment_duration_s == 2


def test_invalid_config_raises(tmp_path):
    """Test validation errors propagate instead of being swallowed."""
    local = tmp_path / "local.yaml"
    local.write_text("thumbnail:\n  fraction: 3.0\n")

    with pytest.raises(ValidationError):
        resolve_config(default_path=DEFAULT_YAML, local_path=local)


def test_missing_yaml_returns_empty_dict():
    """Test graceful handling of missing config files."""
    result = load_yaml(Path("nonexistent.yaml"))
    assert result == {}


def test_missing_files_fall_back_to_model_defaults(tmp_path):
    config = resolve_config(default_path=tmp_path / "a.yaml", local_path=tmp_path / "b.yaml")
    assert config.model_dump() == PackagerConfig().model_dump()


def test_merge_dicts_is_recursive():
    base = {"hls": {"segment_duration_s": 6, "video_codec": "libx264"}, "ladder": [1, 2]}
    override = {"hls": {"segment_duration_s": 4}, "ladder": [3]}

    assert merge_dicts(base, override) == {
        "hls": {"segment_duration_s": 4, "video_codec": "libx264"},
        "ladder": [3],
    }
