"""FFmpeg runner with process isolation, deadlines, cancellation and progress.

Every encode and frame grab goes through this module so the rest of the
pipeline never touches subprocess handling directly.

Key Features:
- Process isolation with subprocess.Popen
- Global deadline + no-progress (stall) deadline
- Cooperative cancellation via threading.Event
- Real-time progress parsing from ``-progress pipe:2`` output
- Process tree cleanup through psutil
- Error classification (permanent / transient / timeout / killed)
"""

import logging
import re
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

import imageio_ffmpeg
import psutil

from .models import HlsConfig, RenditionSpec

logger = logging.getLogger(__name__)

SEGMENT_PATTERN = "segment_%03d.ts"
VARIANT_PLAYLIST = "playlist.m3u8"

_DURATION_RE = re.compile(r"Duration:\s*(\d+):(\d+):(\d+(?:\.\d+)?)")
_OUT_TIME_RE = re.compile(r"out_time=(\d+):(\d+):(\d+(?:\.\d+)?)")
_OUT_TIME_US_RE = re.compile(r"out_time_us=(\d+)")
_FRAME_RE = re.compile(r"frame=\s*(\d+)")
_FPS_RE = re.compile(r"fps=\s*([\d.]+)")
_BITRATE_RE = re.compile(r"bitrate=\s*([\d.]+)kbits/s")
_SPEED_RE = re.compile(r"speed=\s*([\d.]+)x")


class FfmpegErrorType(Enum):
    """FFmpeg error classification."""
    PERMANENT = "permanent"     # File not found, invalid format, codec error
    TRANSIENT = "transient"     # I/O stall, resource exhaustion
    TIMEOUT = "timeout"         # Global deadline or stall deadline exceeded
    PROCESS_KILLED = "killed"   # Cancelled by the caller


@dataclass
class FfmpegProgress:
    """Real-time FFmpeg progress metrics."""
    current_time_s: float = 0.0      # Current output position in seconds
    total_duration_s: float = 0.0    # Input duration (0 = unknown)
    fps: float = 0.0
    bitrate_kbps: float = 0.0
    speed: float = 0.0               # Processing speed multiplier (e.g. 2.5x)
    frame: int = 0
    finished: bool = False           # FFmpeg reported progress=end
    last_update: float = 0.0         # time.monotonic() of the last progress line

    @property
    def fraction(self) -> float:
        """Completed share of the input in [0, 1]."""
        if self.finished:
            return 1.0
        if self.total_duration_s <= 0:
            return 0.0
        return max(0.0, min(1.0, self.current_time_s / self.total_duration_s))


@dataclass
class FfmpegResult:
    """Result of FFmpeg execution."""
    success: bool
    returncode: int
    stderr: str
    duration_s: float
    error_type: Optional[FfmpegErrorType] = None
    error_message: Optional[str] = None
    final_progress: Optional[FfmpegProgress] = None


class FfmpegRunner:
    """FFmpeg orchestration for one invocation at a time.

    A runner owns at most one child process; create one per concurrent
    encode.

    Example:
        >>> def on_progress(progress: FfmpegProgress):
        ...     print(f"{progress.fraction:.0%}")
        >>>
        >>> runner = FfmpegRunner(global_timeout_s=3600, progress_callback=on_progress)
        >>> result = runner.encode_hls_variant("input.mp4", spec, "out/360p", HlsConfig())
        >>> if not result.success:
        ...     print(result.error_type, result.error_message)
    """

    def __init__(
        self,
        global_timeout_s: float = 7200,
        no_progress_timeout_s: float = 300,
        kill_grace_period_s: float = 5,
        ffmpeg_loglevel: str = "info",
        ffmpeg_path: Optional[str] = None,
        progress_callback: Optional[Callable[[FfmpegProgress], None]] = None,
        progress_interval_s: float = 1.0,
        poll_interval_s: float = 0.5,
    ):
        """Initialize FFmpeg runner.

        Args:
            global_timeout_s: Maximum duration for one FFmpeg invocation
            no_progress_timeout_s: Kill FFmpeg if no progress line arrives for this long
            kill_grace_period_s: Grace period between SIGTERM and SIGKILL
            ffmpeg_loglevel: FFmpeg log level (must be >= info to report input duration)
            ffmpeg_path: FFmpeg binary (None = bundled imageio-ffmpeg binary)
            progress_callback: Called with FfmpegProgress as the encode advances
            progress_interval_s: Minimum seconds between progress callbacks
            poll_interval_s: How often deadlines and cancellation are checked
        """
        self.global_timeout_s = global_timeout_s
        self.no_progress_timeout_s = no_progress_timeout_s
        self.kill_grace_period_s = kill_grace_period_s
        self.ffmpeg_loglevel = ffmpeg_loglevel
        self.ffmpeg_path = ffmpeg_path
        self.progress_callback = progress_callback
        self.progress_interval_s = progress_interval_s
        self.poll_interval_s = poll_interval_s

        self._process: Optional[subprocess.Popen] = None
        self._progress = FfmpegProgress()
        self._stderr_tail: deque = deque(maxlen=40)
        self._last_callback = 0.0
        self._monitor_thread: Optional[threading.Thread] = None

    def build_hls_variant_command(
        self,
        source_path: str,
        spec: RenditionSpec,
        variant_dir: str,
        hls: HlsConfig,
    ) -> List[str]:
        """Build the segmenting encode for one rendition.

        Produces ``<variant_dir>/playlist.m3u8`` and
        ``<variant_dir>/segment_NNN.ts``.
        """
        playlist_path = f"{variant_dir}/{VARIANT_PLAYLIST}"
        segment_pattern = f"{variant_dir}/{SEGMENT_PATTERN}"

        return [
            self._get_ffmpeg_exe(),
            "-hide_banner",
            "-y",
            "-i", source_path,
            "-c:v", hls.video_codec,
            "-c:a", hls.audio_codec,
            "-b:v", spec.video_bitrate,
            "-b:a", spec.audio_bitrate,
            "-s", spec.resolution,
            "-f", "hls",
            "-hls_time", str(hls.segment_duration_s),
            "-hls_list_size", str(hls.playlist_size),
            "-hls_segment_filename", segment_pattern,
            "-progress", "pipe:2",
            "-nostats",
            "-loglevel", self.ffmpeg_loglevel,
            playlist_path,
        ]

    def build_frame_command(
        self,
        source_path: str,
        output_path: str,
        timestamp_s: float,
        width: int,
        height: int,
    ) -> List[str]:
        """Build a single-frame grab, seeking before the input for speed."""
        return [
            self._get_ffmpeg_exe(),
            "-hide_banner",
            "-y",
            "-ss", f"{max(0.0, timestamp_s):.3f}",
            "-i", source_path,
            "-frames:v", "1",
            "-s", f"{width}x{height}",
            "-q:v", "2",
            "-progress", "pipe:2",
            "-nostats",
            "-loglevel", self.ffmpeg_loglevel,
            output_path,
        ]

    def encode_hls_variant(
        self,
        source_path: str,
        spec: RenditionSpec,
        variant_dir: str,
        hls: HlsConfig,
        cancel_event: Optional[threading.Event] = None,
    ) -> FfmpegResult:
        """Encode one rendition into HLS segments."""
        cmd = self.build_hls_variant_command(source_path, spec, variant_dir, hls)
        return self.run(cmd, cancel_event=cancel_event)

    def extract_frame(
        self,
        source_path: str,
        output_path: str,
        timestamp_s: float,
        width: int,
        height: int,
    ) -> FfmpegResult:
        """Write a single still image taken at ``timestamp_s``."""
        cmd = self.build_frame_command(source_path, output_path, timestamp_s, width, height)
        return self.run(cmd)

    def run(
        self,
        cmd: List[str],
        expected_duration: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> FfmpegResult:
        """Execute FFmpeg with deadline enforcement and progress monitoring.

        Args:
            cmd: FFmpeg command as list
            expected_duration: Input duration if already known (otherwise parsed
                from FFmpeg's banner)
            cancel_event: Kill the process as soon as this is set

        Returns:
            FfmpegResult with execution details
        """
        start_time = time.monotonic()
        self._progress = FfmpegProgress(total_duration_s=expected_duration or 0.0)
        self._stderr_tail.clear()
        self._last_callback = 0.0

        try:
            self._process = subprocess.Popen(
                cmd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                bufsize=1  # Line buffered for real-time progress
            )
        except OSError as e:
            return FfmpegResult(
                success=False,
                returncode=-1,
                stderr=str(e),
                duration_s=time.monotonic() - start_time,
                error_type=FfmpegErrorType.PERMANENT,
                error_message=f"Could not start ffmpeg: {e}",
                final_progress=self._progress,
            )

        try:
            self._monitor_thread = threading.Thread(
                target=self._monitor_progress,
                args=(self._process.stderr,),
                daemon=True
            )
            self._monitor_thread.start()

            returncode, error_type, error_message = self._wait_for_exit(start_time, cancel_event)

            self._monitor_thread.join(timeout=2)
            stderr = "".join(self._stderr_tail)

            if error_type is None and returncode != 0:
                error_type = self._classify_error(stderr)
                error_message = self._summarize_stderr(stderr) or f"ffmpeg exited with code {returncode}"

            return FfmpegResult(
                success=(returncode == 0 and error_type is None),
                returncode=returncode,
                stderr=stderr,
                duration_s=time.monotonic() - start_time,
                error_type=error_type,
                error_message=error_message,
                final_progress=self._progress,
            )

        except Exception:
            # Unexpected error - ensure cleanup
            self._kill_process_tree()
            raise

        finally:
            self._process = None

    def _wait_for_exit(self, start_time: float, cancel_event: Optional[threading.Event]):
        """Poll the child until it exits or a deadline/cancellation fires.

        Returns:
            Tuple of (returncode, error_type or None, error_message or None)
        """
        while True:
            try:
                return self._process.wait(timeout=self.poll_interval_s), None, None
            except subprocess.TimeoutExpired:
                pass

            now = time.monotonic()

            if cancel_event is not None and cancel_event.is_set():
                self._kill_process_tree()
                return -1, FfmpegErrorType.PROCESS_KILLED, "cancelled"

            if now - start_time >= self.global_timeout_s:
                self._kill_process_tree()
                return -1, FfmpegErrorType.TIMEOUT, (
                    f"timed out after {self.global_timeout_s}s"
                )

            last_activity = self._progress.last_update or start_time
            if now - last_activity >= self.no_progress_timeout_s:
                self._kill_process_tree()
                return -1, FfmpegErrorType.TIMEOUT, (
                    f"no progress for {self.no_progress_timeout_s}s"
                )

    def _monitor_progress(self, stderr_stream) -> None:
        """Parse FFmpeg stderr for progress updates.

        Updates self._progress for stall detection and invokes the callback.

        FFmpeg progress format (``-progress pipe:2``):
            frame=123
            fps=25.00
            bitrate=1234.5kbits/s
            out_time_us=5123456
            out_time=00:00:05.123456
            speed=2.5x
            progress=continue
        """
        try:
            for line in stderr_stream:
                self._stderr_tail.append(line)
                self._parse_line(line)
        except (OSError, ValueError) as e:
            # Stream closed under us while killing the process
            logger.debug("Progress monitoring stopped: %s", e)

    def _parse_line(self, line: str) -> None:
        progress = self._progress

        if progress.total_duration_s <= 0 and "Duration:" in line:
            match = _DURATION_RE.search(line)
            if match:
                h, m, s = match.groups()
                progress.total_duration_s = int(h) * 3600 + int(m) * 60 + float(s)

        advanced = False
        match = _OUT_TIME_US_RE.search(line)
        if match:
            progress.current_time_s = int(match.group(1)) / 1_000_000
            advanced = True
        else:
            match = _OUT_TIME_RE.search(line)
            if match:
                h, m, s = match.groups()
                progress.current_time_s = int(h) * 3600 + int(m) * 60 + float(s)
                advanced = True

        match = _FRAME_RE.search(line)
        if match:
            progress.frame = int(match.group(1))
            advanced = True

        match = _FPS_RE.search(line)
        if match:
            progress.fps = float(match.group(1))

        match = _BITRATE_RE.search(line)
        if match:
            progress.bitrate_kbps = float(match.group(1))

        match = _SPEED_RE.search(line)
        if match:
            progress.speed = float(match.group(1))

        if line.startswith("progress="):
            advanced = True
            if line.strip() == "progress=end":
                progress.finished = True

        if advanced:
            progress.last_update = time.monotonic()
            self._maybe_notify(force=progress.finished)

    def _maybe_notify(self, force: bool = False) -> None:
        if not self.progress_callback:
            return
        now = time.monotonic()
        if not force and now - self._last_callback < self.progress_interval_s:
            return
        self._last_callback = now
        try:
            self.progress_callback(self._progress)
        except Exception:
            # A broken callback must not kill the monitor thread
            logger.exception("Progress callback failed")

    def _kill_process_tree(self) -> None:
        """Kill the FFmpeg process and all children.

        Kill sequence:
        1. SIGTERM to the process and its children
        2. Wait grace period
        3. SIGKILL any survivors
        """
        if not self._process:
            return

        try:
            parent = psutil.Process(self._process.pid)
            procs = parent.children(recursive=True) + [parent]
        except psutil.NoSuchProcess:
            procs = []

        for proc in procs:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                pass

        _, alive = psutil.wait_procs(procs, timeout=self.kill_grace_period_s)
        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass

        try:
            self._process.wait(timeout=self.kill_grace_period_s)
        except subprocess.TimeoutExpired:
            logger.warning("FFmpeg pid %s did not exit after SIGKILL", self._process.pid)

    def _classify_error(self, stderr: str) -> FfmpegErrorType:
        """Classify an FFmpeg failure from its stderr."""
        stderr_lower = stderr.lower()

        permanent_patterns = [
            "no such file or directory",
            "invalid data found",
            "invalid argument",
            "permission denied",
            "unsupported codec",
            "unknown encoder",
            "invalid codec",
            "moov atom not found",
            "could not find codec parameters",
            "corrupt",
        ]

        for pattern in permanent_patterns:
            if pattern in stderr_lower:
                return FfmpegErrorType.PERMANENT

        transient_patterns = [
            "i/o error",
            "no space left on device",
            "resource temporarily unavailable",
            "cannot allocate memory",
            "connection refused",
        ]

        for pattern in transient_patterns:
            if pattern in stderr_lower:
                return FfmpegErrorType.TRANSIENT

        return FfmpegErrorType.TRANSIENT

    @staticmethod
    def _summarize_stderr(stderr: str, max_lines: int = 3) -> str:
        """Last few non-progress stderr lines, for error messages."""
        lines = [
            line.strip()
            for line in stderr.splitlines()
            if line.strip() and "=" not in line.split(" ", 1)[0]
        ]
        return " | ".join(lines[-max_lines:])

    def _get_ffmpeg_exe(self) -> str:
        """Get FFmpeg executable path."""
        if self.ffmpeg_path:
            return self.ffmpeg_path
        return imageio_ffmpeg.get_ffmpeg_exe()


def check_ffmpeg(ffmpeg_path: Optional[str] = None) -> bool:
    """Verify ffmpeg is installed and runs."""
    try:
        exe = ffmpeg_path or imageio_ffmpeg.get_ffmpeg_exe()
        subprocess.run(
            [exe, "-version"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=True,
        )
        return True
    except (FileNotFoundError, subprocess.CalledProcessError, OSError, RuntimeError):
        return False
