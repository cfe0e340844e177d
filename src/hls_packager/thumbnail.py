"""Poster frame extraction."""

import logging
import os
from typing import Optional

from .errors import ThumbnailError
from .ffmpeg_runner import FfmpegRunner
from .models import EncodingConfig, ThumbnailConfig

logger = logging.getLogger(__name__)


class ThumbnailExtractor:
    """Grabs one scaled JPEG frame at a fraction of the source duration."""

    def __init__(
        self,
        config: Optional[ThumbnailConfig] = None,
        encoding: Optional[EncodingConfig] = None,
    ):
        self.config = config or ThumbnailConfig()
        self.encoding = encoding or EncodingConfig()

    def extract(
        self,
        path: str,
        output_dir: str,
        fraction: Optional[float] = None,
        duration: float = 0.0,
    ) -> str:
        """Write ``<output_dir>/<filename>`` and return its path.

        With an unknown (zero) duration the first frame is used.

        Raises:
            ThumbnailError: FFmpeg failed or wrote nothing
        """
        if fraction is None:
            fraction = self.config.fraction
        timestamp = max(0.0, duration) * min(1.0, max(0.0, fraction))
        output_path = os.path.join(output_dir, self.config.filename)

        runner = FfmpegRunner(
            global_timeout_s=self.encoding.global_timeout_s,
            no_progress_timeout_s=self.encoding.no_progress_timeout_s,
            kill_grace_period_s=self.encoding.kill_grace_period_s,
            ffmpeg_loglevel=self.encoding.ffmpeg_loglevel,
            ffmpeg_path=self.encoding.ffmpeg_path,
        )
        result = runner.extract_frame(
            path, output_path, timestamp, self.config.width, self.config.height
        )

        if not result.success:
            raise ThumbnailError(result.error_message or "frame extraction failed")
        if not os.path.isfile(output_path):
            raise ThumbnailError("ffmpeg finished without writing a thumbnail")
        return output_path

    def extract_frame(
        self,
        path: str,
        output_dir: str,
        fraction: Optional[float] = None,
        duration: float = 0.0,
    ) -> Optional[str]:
        """Like ``extract`` but returns None instead of raising."""
        try:
            return self.extract(path, output_dir, fraction, duration)
        except ThumbnailError as e:
            logger.warning("Thumbnail extraction failed for %s: %s", path, e)
            return None
