import os
import threading

import pytest

from hls_packager.errors import EncodeError, EncodeTimeoutError, MetadataExtractionError, ThumbnailError
from hls_packager.jobs import JobRegistry
from hls_packager.models import PackagerConfig, RenditionSpec, VideoMetadata


TWO_RUNG_LADDER = [
    RenditionSpec(name="240p", width=426, height=240, video_bitrate="400k", audio_bitrate="64k"),
    RenditionSpec(name="360p", width=640, height=360, video_bitrate="800k", audio_bitrate="96k"),
]


class FakeEncoder:
    """In-memory stand-in for HlsEncoder.

    Writes a tiny playlist per rendition and reports ``steps`` as progress.
    Renditions named in ``fail`` raise EncodeError after their progress
    steps; renditions named in ``hold`` block until ``release()`` (or until
    the job's cancel event fires).
    """

    def __init__(self, steps=(0.25, 0.5, 1.0), fail=(), fail_message="encoder exploded", hold=()):
        self.steps = steps
        self.fail = set(fail)
        self.fail_message = fail_message
        self.hold = set(hold)
        self.calls = []
        self._released = threading.Event()
        self._lock = threading.Lock()

    def release(self):
        self._released.set()

    def encode(self, source, spec, variant_dir, progress_callback=None, cancel_event=None):
        with self._lock:
            self.calls.append(spec.name)

        if spec.name in self.hold:
            while not self._released.wait(0.01):
                if cancel_event is not None and cancel_event.is_set():
                    raise EncodeTimeoutError(spec.name, "cancelled")

        for step in self.steps:
            if progress_callback:
                progress_callback(step)

        if spec.name in self.fail:
            raise EncodeError(spec.name, self.fail_message)

        playlist = os.path.join(variant_dir, "playlist.m3u8")
        with open(playlist, "w") as f:
            f.write("#EXTM3U\n#EXT-X-ENDLIST\n")
        with open(os.path.join(variant_dir, "segment_000.ts"), "wb") as f:
            f.write(b"\x47")
        return playlist


class FakeProber:
    def __init__(self, metadata=None, error=None):
        self.metadata = metadata or VideoMetadata(
            duration=120.0, size=1024, width=1920, height=1080, codec="h264", frame_rate=30
        )
        self.error = error

    def probe(self, path):
        if self.error:
            raise MetadataExtractionError(self.error)
        return self.metadata


class FakeThumbnailer:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    def extract(self, path, output_dir, fraction=None, duration=0.0):
        self.calls.append({"path": path, "fraction": fraction, "duration": duration})
        if self.error:
            raise ThumbnailError(self.error)
        thumb = os.path.join(output_dir, "thumbnail.jpg")
        with open(thumb, "wb") as f:
            f.write(b"\xff\xd8\xff")
        return thumb


@pytest.fixture
def registry():
    return JobRegistry()


@pytest.fixture
def config(tmp_path):
    return PackagerConfig.from_dict({
        "ladder": [spec.model_dump() for spec in TWO_RUNG_LADDER],
        "jobs": {"output_root": str(tmp_path / "hls")},
    })


@pytest.fixture
def source_video(tmp_path):
    path = tmp_path / "source.mp4"
    path.write_bytes(b"\x00\x00\x00\x18ftypmp42")
    return str(path)
