"""Source metadata extraction through ffprobe."""

import json
import logging
import subprocess
from typing import Any, Dict, Optional

from .errors import MetadataExtractionError
from .models import VideoMetadata

logger = logging.getLogger(__name__)


def parse_frame_rate(value: Optional[str]) -> int:
    """Convert an ffprobe rational ("30000/1001") to whole frames per second.

    Returns 0 for missing values and zero or malformed denominators.
    """
    if not value:
        return 0
    try:
        num, _, den = str(value).partition("/")
        numerator = float(num)
        denominator = float(den) if den else 1.0
    except ValueError:
        return 0
    if denominator <= 0:
        return 0
    return int(round(numerator / denominator))


def _to_int(value: Any) -> Optional[int]:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _to_float(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class MetadataProber:
    """Reads duration, dimensions, codecs and bitrate from a media file."""

    def __init__(self, ffprobe_path: str = "ffprobe", timeout_s: float = 30):
        self.ffprobe_path = ffprobe_path
        self.timeout_s = timeout_s

    def build_command(self, path: str) -> list:
        return [
            self.ffprobe_path,
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            path,
        ]

    def probe(self, path: str) -> VideoMetadata:
        """Probe ``path``.

        Only the fields ffprobe actually reported are set on the returned
        model, so ``VideoMetadata.merged_with`` leaves the rest untouched.

        Raises:
            MetadataExtractionError: ffprobe failed, timed out, returned
                unparsable output, or the file has no video stream
        """
        try:
            result = subprocess.run(
                self.build_command(path),
                capture_output=True,
                text=True,
                timeout=self.timeout_s,
            )
        except subprocess.TimeoutExpired as e:
            raise MetadataExtractionError(f"ffprobe timed out after {self.timeout_s}s") from e
        except OSError as e:
            raise MetadataExtractionError(f"Could not run ffprobe: {e}") from e

        if result.returncode != 0:
            detail = (result.stderr or "").strip() or f"exit code {result.returncode}"
            raise MetadataExtractionError(f"ffprobe failed: {detail}")

        try:
            raw = json.loads(result.stdout or "")
        except json.JSONDecodeError as e:
            raise MetadataExtractionError(f"Failed to parse ffprobe output: {e}") from e

        metadata = self.parse(raw)
        logger.debug("Probed %s: %s", path, metadata.model_dump(exclude_unset=True))
        return metadata

    @staticmethod
    def parse(raw: Dict[str, Any]) -> VideoMetadata:
        """Map ffprobe's JSON document onto VideoMetadata."""
        if not isinstance(raw, dict):
            raise MetadataExtractionError("ffprobe output is not a JSON object")

        streams = raw.get("streams") or []
        video = next((s for s in streams if s.get("codec_type") == "video"), None)
        audio = next((s for s in streams if s.get("codec_type") == "audio"), None)

        if video is None:
            raise MetadataExtractionError("No video stream found")

        fmt = raw.get("format") or {}
        fields: Dict[str, Any] = {}

        duration = _to_float(fmt.get("duration"))
        if duration is not None and duration >= 0:
            fields["duration"] = duration

        size = _to_int(fmt.get("size"))
        if size is not None and size >= 0:
            fields["size"] = size

        bitrate = _to_int(fmt.get("bit_rate"))
        if bitrate is not None and bitrate >= 0:
            fields["bitrate"] = bitrate

        width = _to_int(video.get("width"))
        if width is not None and width >= 0:
            fields["width"] = width

        height = _to_int(video.get("height"))
        if height is not None and height >= 0:
            fields["height"] = height

        if video.get("codec_name"):
            fields["codec"] = video["codec_name"]

        fields["audio_codec"] = (audio or {}).get("codec_name") or "unknown"
        fields["frame_rate"] = parse_frame_rate(video.get("r_frame_rate"))

        return VideoMetadata(**fields)
