"""Per-rendition HLS encoding on top of FfmpegRunner."""

import logging
import os
import threading
from typing import Callable, Optional

from .errors import EncodeError, EncodeTimeoutError
from .ffmpeg_runner import VARIANT_PLAYLIST, FfmpegErrorType, FfmpegProgress, FfmpegRunner
from .models import EncodingConfig, HlsConfig, RenditionSpec

logger = logging.getLogger(__name__)


class HlsEncoder:
    """Encodes one rendition into ``<variant_dir>/playlist.m3u8`` plus segments.

    Stateless apart from configuration; a fresh FfmpegRunner is created per
    call so concurrent encodes never share a process handle.
    """

    def __init__(
        self,
        hls: Optional[HlsConfig] = None,
        encoding: Optional[EncodingConfig] = None,
    ):
        self.hls = hls or HlsConfig()
        self.encoding = encoding or EncodingConfig()

    def _make_runner(self, on_progress: Optional[Callable[[FfmpegProgress], None]]) -> FfmpegRunner:
        return FfmpegRunner(
            global_timeout_s=self.encoding.global_timeout_s,
            no_progress_timeout_s=self.encoding.no_progress_timeout_s,
            kill_grace_period_s=self.encoding.kill_grace_period_s,
            ffmpeg_loglevel=self.encoding.ffmpeg_loglevel,
            ffmpeg_path=self.encoding.ffmpeg_path,
            progress_callback=on_progress,
        )

    def encode(
        self,
        source: str,
        spec: RenditionSpec,
        variant_dir: str,
        progress_callback: Optional[Callable[[float], None]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> str:
        """Encode ``source`` at the rendition's size and bitrates.

        Args:
            source: Input video path
            spec: Ladder rung to produce
            variant_dir: Existing directory for this rendition's output
            progress_callback: Receives the completed fraction in [0, 1]
            cancel_event: Aborts the encode when set

        Returns:
            Path of the variant playlist

        Raises:
            EncodeTimeoutError: Deadline, stall or cancellation
            EncodeError: FFmpeg failed or produced no playlist
        """
        on_progress = None
        if progress_callback is not None:
            def on_progress(progress: FfmpegProgress) -> None:
                progress_callback(progress.fraction)

        logger.info("Encoding %s (%s @ %s)", spec.name, spec.resolution, spec.video_bitrate)
        runner = self._make_runner(on_progress)
        result = runner.encode_hls_variant(
            source, spec, variant_dir, self.hls, cancel_event=cancel_event
        )

        if not result.success:
            message = result.error_message or f"ffmpeg exited with code {result.returncode}"
            if result.error_type in (FfmpegErrorType.TIMEOUT, FfmpegErrorType.PROCESS_KILLED):
                raise EncodeTimeoutError(spec.name, message, result.error_type)
            raise EncodeError(spec.name, message, result.error_type)

        playlist_path = os.path.join(variant_dir, VARIANT_PLAYLIST)
        if not os.path.isfile(playlist_path):
            raise EncodeError(spec.name, "ffmpeg finished without writing a playlist")

        logger.info("Encoded %s in %.1fs", spec.name, result.duration_s)
        return playlist_path
