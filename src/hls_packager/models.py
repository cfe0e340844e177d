"""Pydantic models for configuration and media metadata."""

import re
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

_BITRATE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([kKmM]?)\s*$")
_MULTIPLIERS = {"": 1, "k": 1_000, "m": 1_000_000}


def parse_bitrate(value) -> int:
    """Parse an FFmpeg-style bitrate into bits per second.

    Examples:
        >>> parse_bitrate("800k")
        800000
        >>> parse_bitrate("5M")
        5000000
        >>> parse_bitrate(128000)
        128000

    Raises:
        ValueError: If the value is not a recognised bitrate
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid bitrate: {value!r}")
    if isinstance(value, int):
        if value <= 0:
            raise ValueError(f"Bitrate must be positive: {value}")
        return value

    match = _BITRATE_RE.match(str(value))
    if not match:
        raise ValueError(f"Invalid bitrate: {value!r}")

    number, suffix = match.groups()
    bps = int(round(float(number) * _MULTIPLIERS[suffix.lower()]))
    if bps <= 0:
        raise ValueError(f"Bitrate must be positive: {value!r}")
    return bps


class RenditionSpec(BaseModel):
    """One rung of the bitrate ladder."""

    model_config = {"frozen": True}

    name: str = Field(..., min_length=1, description="Rendition name, also its subdirectory")
    width: int = Field(..., gt=0, description="Output width in pixels")
    height: int = Field(..., gt=0, description="Output height in pixels")
    video_bitrate: str = Field(..., description="Video bitrate in FFmpeg notation (e.g. '800k')")
    audio_bitrate: str = Field(..., description="Audio bitrate in FFmpeg notation (e.g. '96k')")

    @field_validator("name")
    @classmethod
    def name_is_path_segment(cls, v: str) -> str:
        if v in (".", "..") or "/" in v or "\\" in v:
            raise ValueError(f"rendition name must be a single path segment, got {v!r}")
        return v

    @field_validator("width", "height")
    @classmethod
    def dimension_is_even(cls, v: int) -> int:
        # yuv420p chroma subsampling needs even dimensions
        if v % 2:
            raise ValueError(f"dimension must be even, got {v}")
        return v

    @field_validator("video_bitrate", "audio_bitrate", mode="before")
    @classmethod
    def bitrate_parses(cls, v) -> str:
        parse_bitrate(v)
        return str(v)

    @property
    def video_bitrate_bps(self) -> int:
        return parse_bitrate(self.video_bitrate)

    @property
    def audio_bitrate_bps(self) -> int:
        return parse_bitrate(self.audio_bitrate)

    @property
    def bandwidth(self) -> int:
        """Peak bandwidth advertised in the master playlist (bits/sec)."""
        return self.video_bitrate_bps + self.audio_bitrate_bps

    @property
    def resolution(self) -> str:
        return f"{self.width}x{self.height}"


DEFAULT_LADDER: List[RenditionSpec] = [
    RenditionSpec(name="240p", width=426, height=240, video_bitrate="400k", audio_bitrate="64k"),
    RenditionSpec(name="360p", width=640, height=360, video_bitrate="800k", audio_bitrate="96k"),
    RenditionSpec(name="480p", width=854, height=480, video_bitrate="1200k", audio_bitrate="128k"),
    RenditionSpec(name="720p", width=1280, height=720, video_bitrate="2500k", audio_bitrate="128k"),
    RenditionSpec(name="1080p", width=1920, height=1080, video_bitrate="5000k", audio_bitrate="192k"),
]


class HlsConfig(BaseModel):
    """HLS muxer settings shared by every rendition."""

    segment_duration_s: int = Field(default=6, gt=0, description="Target segment duration (-hls_time)")
    playlist_size: int = Field(
        default=0, ge=0, description="Max playlist entries (-hls_list_size), 0 keeps all segments"
    )
    video_codec: str = Field(default="libx264", description="Video encoder")
    audio_codec: str = Field(default="aac", description="Audio encoder")


class ThumbnailConfig(BaseModel):
    """Poster frame extraction settings."""

    enabled: bool = Field(default=True, description="Extract a thumbnail after encoding")
    fraction: float = Field(
        default=0.25, ge=0.0, le=1.0, description="Position of the frame as a fraction of duration"
    )
    width: int = Field(default=320, gt=0, description="Thumbnail width")
    height: int = Field(default=180, gt=0, description="Thumbnail height")
    filename: str = Field(default="thumbnail.jpg", description="File name inside the output dir")


class EncodingConfig(BaseModel):
    """FFmpeg runner settings."""

    global_timeout_s: int = Field(
        default=7200, gt=0, description="Maximum wall time for one rendition encode"
    )
    no_progress_timeout_s: int = Field(
        default=300, gt=0, description="Kill the encode if FFmpeg reports no progress for this long"
    )
    kill_grace_period_s: int = Field(
        default=5, gt=0, description="Grace period between SIGTERM and SIGKILL"
    )
    ffmpeg_loglevel: str = Field(
        default="info", description="FFmpeg log level: error, warning, info, verbose"
    )
    ffmpeg_path: Optional[str] = Field(
        default=None, description="FFmpeg binary (None = bundled imageio-ffmpeg binary)"
    )


class ProbeConfig(BaseModel):
    """ffprobe settings."""

    timeout_s: int = Field(default=30, gt=0, description="ffprobe timeout in seconds")
    ffprobe_path: str = Field(default="ffprobe", description="ffprobe binary")


class JobsConfig(BaseModel):
    """Job lifecycle and concurrency settings."""

    output_root: str = Field(default="output/hls", description="Root directory for job output")
    retention_hours: float = Field(
        default=24.0, gt=0.0, description="Evict finished jobs older than this"
    )
    cleanup_interval_s: int = Field(
        default=3600, gt=0, description="Seconds between periodic eviction sweeps"
    )
    max_concurrent_jobs: int = Field(default=2, ge=1, description="Jobs processed in parallel")
    max_concurrent_encodes: int = Field(
        default=5, ge=1, description="Rendition encodes running in parallel across all jobs"
    )
    cleanup_on_failure: bool = Field(
        default=False, description="Delete partial rendition directories when a job fails"
    )


class LoggingConfig(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")


class PackagerConfig(BaseModel):
    """Complete application configuration with validation."""

    ladder: List[RenditionSpec] = Field(default_factory=lambda: list(DEFAULT_LADDER))
    hls: HlsConfig = Field(default_factory=HlsConfig)
    thumbnail: ThumbnailConfig = Field(default_factory=ThumbnailConfig)
    encoding: EncodingConfig = Field(default_factory=EncodingConfig)
    probe: ProbeConfig = Field(default_factory=ProbeConfig)
    jobs: JobsConfig = Field(default_factory=JobsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def ladder_is_usable(self) -> "PackagerConfig":
        if not self.ladder:
            raise ValueError("bitrate ladder must contain at least one rendition")
        names = [spec.name for spec in self.ladder]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate rendition names in ladder: {duplicates}")
        return self

    @classmethod
    def from_dict(cls, data: dict) -> "PackagerConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "PackagerConfig":
        """Apply CLI overrides and return new config instance."""
        config_dict = self.model_dump()

        if "output" in cli_args:
            config_dict["jobs"]["output_root"] = cli_args["output"]
        if "segment_duration" in cli_args:
            config_dict["hls"]["segment_duration_s"] = cli_args["segment_duration"]
        if "timeout" in cli_args:
            config_dict["encoding"]["global_timeout_s"] = cli_args["timeout"]
        if "no_thumbnail" in cli_args and cli_args["no_thumbnail"]:
            config_dict["thumbnail"]["enabled"] = False
        if "cleanup_on_failure" in cli_args and cli_args["cleanup_on_failure"]:
            config_dict["jobs"]["cleanup_on_failure"] = True
        if "log_level" in cli_args:
            config_dict["logging"]["level"] = cli_args["log_level"]

        return PackagerConfig.from_dict(config_dict)


class VideoMetadata(BaseModel):
    """Best-effort source attributes.

    Every field has a default so a failed or partial probe never blocks
    the pipeline. A prober builds instances with only the fields it could
    read; ``merged_with`` copies exactly those over the current values.
    """

    duration: float = Field(default=0.0, ge=0.0, description="Duration in seconds")
    size: int = Field(default=0, ge=0, description="File size in bytes")
    width: int = Field(default=0, ge=0)
    height: int = Field(default=0, ge=0)
    bitrate: int = Field(default=0, ge=0, description="Container bitrate in bits/sec")
    codec: str = Field(default="unknown", description="Video codec name")
    audio_codec: str = Field(default="unknown", description="Audio codec name")
    frame_rate: int = Field(default=0, ge=0, description="Rounded frames per second")

    def merged_with(self, partial: "VideoMetadata") -> "VideoMetadata":
        """Return a copy with the fields explicitly set on ``partial`` applied."""
        return self.model_copy(update=partial.model_dump(exclude_unset=True))
