"""Tests for the rendition encoder and thumbnail extractor wrappers."""

from unittest.mock import patch

import pytest

from hls_packager.encoder import HlsEncoder
from hls_packager.errors import EncodeError, EncodeTimeoutError, ThumbnailError
from hls_packager.ffmpeg_runner import FfmpegErrorType, FfmpegProgress, FfmpegResult
from hls_packager.models import EncodingConfig, RenditionSpec, ThumbnailConfig
from hls_packager.thumbnail import ThumbnailExtractor

SPEC = RenditionSpec(name="240p", width=426, height=240, video_bitrate="400k", audio_bitrate="64k")


def _result(success=True, error_type=None, message=None):
    return FfmpegResult(
        success=success,
        returncode=0 if success else 1,
        stderr="",
        duration_s=1.0,
        error_type=error_type,
        error_message=message,
    )


class TestHlsEncoder:

    def test_returns_variant_playlist(self, tmp_path):
        (tmp_path / "playlist.m3u8").write_text("#EXTM3U\n")

        with patch("hls_packager.encoder.FfmpegRunner.encode_hls_variant", return_value=_result()):
            path = HlsEncoder().encode("in.mp4", SPEC, str(tmp_path))

        assert path == str(tmp_path / "playlist.m3u8")

    def test_ffmpeg_failure_raises_encode_error(self, tmp_path):
        failed = _result(False, FfmpegErrorType.PERMANENT, "Invalid data found")

        with patch("hls_packager.encoder.FfmpegRunner.encode_hls_variant", return_value=failed):
            with pytest.raises(EncodeError) as exc_info:
                HlsEncoder().encode("in.mp4", SPEC, str(tmp_path))

        assert str(exc_info.value) == "240p: Invalid data found"
        assert exc_info.value.rendition == "240p"
        assert exc_info.value.error_type == FfmpegErrorType.PERMANENT
        assert not isinstance(exc_info.value, EncodeTimeoutError)

    @pytest.mark.parametrize("error_type", [FfmpegErrorType.TIMEOUT, FfmpegErrorType.PROCESS_KILLED])
    def test_deadline_and_cancel_raise_timeout(self, tmp_path, error_type):
        failed = _result(False, error_type, "no progress for 300s")

        with patch("hls_packager.encoder.FfmpegRunner.encode_hls_variant", return_value=failed):
            with pytest.raises(EncodeTimeoutError):
                HlsEncoder().encode("in.mp4", SPEC, str(tmp_path))

    def test_missing_playlist_is_an_error(self, tmp_path):
        with patch("hls_packager.encoder.FfmpegRunner.encode_hls_variant", return_value=_result()):
            with pytest.raises(EncodeError, match="without writing a playlist"):
                HlsEncoder().encode("in.mp4", SPEC, str(tmp_path))

    def test_progress_forwarded_as_fraction(self, tmp_path):
        fractions = []
        encoder = HlsEncoder(encoding=EncodingConfig(global_timeout_s=60, ffmpeg_path="ffmpeg"))

        with patch("hls_packager.encoder.FfmpegRunner") as runner_cls:
            runner_cls.return_value.encode_hls_variant.return_value = _result(False, None, "boom")
            with pytest.raises(EncodeError):
                encoder.encode("in.mp4", SPEC, str(tmp_path), progress_callback=fractions.append)

        kwargs = runner_cls.call_args[1]
        assert kwargs["global_timeout_s"] == 60
        assert kwargs["ffmpeg_path"] == "ffmpeg"
        kwargs["progress_callback"](FfmpegProgress(current_time_s=5.0, total_duration_s=20.0))
        assert fractions == [0.25]


class TestThumbnailExtractor:

    def test_extract_at_fraction_of_duration(self, tmp_path):
        def fake_extract(source, output_path, timestamp, width, height):
            open(output_path, "wb").close()
            calls.append((timestamp, width, height, output_path))
            return _result()

        calls = []
        with patch("hls_packager.thumbnail.FfmpegRunner.extract_frame", side_effect=fake_extract):
            path = ThumbnailExtractor().extract("in.mp4", str(tmp_path), 0.25, duration=120.0)

        assert path == str(tmp_path / "thumbnail.jpg")
        assert calls == [(30.0, 320, 180, path)]

    def test_unknown_duration_uses_first_frame(self, tmp_path):
        def fake_extract(source, output_path, timestamp, width, height):
            open(output_path, "wb").close()
            timestamps.append(timestamp)
            return _result()

        timestamps = []
        with patch("hls_packager.thumbnail.FfmpegRunner.extract_frame", side_effect=fake_extract):
            ThumbnailExtractor().extract("in.mp4", str(tmp_path))

        assert timestamps == [0.0]

    def test_custom_size_and_name(self, tmp_path):
        config = ThumbnailConfig(width=640, height=360, filename="poster.jpg")

        def fake_extract(source, output_path, timestamp, width, height):
            open(output_path, "wb").close()
            assert (width, height) == (640, 360)
            return _result()

        with patch("hls_packager.thumbnail.FfmpegRunner.extract_frame", side_effect=fake_extract):
            path = ThumbnailExtractor(config).extract("in.mp4", str(tmp_path), duration=10)

        assert path.endswith("poster.jpg")

    def test_failure_raises(self, tmp_path):
        failed = _result(False, FfmpegErrorType.PERMANENT, "Invalid data")
        with patch("hls_packager.thumbnail.FfmpegRunner.extract_frame", return_value=failed):
            with pytest.raises(ThumbnailError):
                ThumbnailExtractor().extract("in.mp4", str(tmp_path), duration=10)

    def test_extract_frame_returns_none_on_failure(self, tmp_path):
        failed = _result(False, FfmpegErrorType.PERMANENT, "Invalid data")
        with patch("hls_packager.thumbnail.FfmpegRunner.extract_frame", return_value=failed):
            assert ThumbnailExtractor().extract_frame("in.mp4", str(tmp_path), duration=10) is None
