"""Master playlist assembly."""

import os
import tempfile
from typing import Iterable

from .ffmpeg_runner import VARIANT_PLAYLIST
from .models import RenditionSpec

MASTER_PLAYLIST = "master.m3u8"

# H.264 Baseline 1.0 + AAC-LC
CODECS = "avc1.42e00a,mp4a.40.2"


def build_master_playlist(ladder: Iterable[RenditionSpec]) -> str:
    """Render the master playlist text for ``ladder``, in ladder order.

    Example:
        >>> spec = RenditionSpec(name="240p", width=426, height=240,
        ...                      video_bitrate="400k", audio_bitrate="64k")
        >>> print(build_master_playlist([spec]), end="")
        #EXTM3U
        #EXT-X-VERSION:3
        <BLANKLINE>
        #EXT-X-STREAM-INF:BANDWIDTH=464000,RESOLUTION=426x240,CODECS="avc1.42e00a,mp4a.40.2"
        240p/playlist.m3u8
    """
    lines = ["#EXTM3U", "#EXT-X-VERSION:3", ""]
    for spec in ladder:
        lines.append(
            f"#EXT-X-STREAM-INF:BANDWIDTH={spec.bandwidth},"
            f"RESOLUTION={spec.resolution},CODECS=\"{CODECS}\""
        )
        lines.append(f"{spec.name}/{VARIANT_PLAYLIST}")
        lines.append("")
    return "\n".join(lines)


def assemble_master(output_dir: str, ladder: Iterable[RenditionSpec]) -> str:
    """Atomically write ``<output_dir>/master.m3u8`` and return its path.

    Content goes to a temporary file in the same directory and is moved into
    place with os.replace, so readers see either nothing or the whole file.
    """
    content = build_master_playlist(ladder)
    final_path = os.path.join(output_dir, MASTER_PLAYLIST)

    fd, tmp_path = tempfile.mkstemp(prefix=".master-", suffix=".tmp", dir=output_dir)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, final_path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise

    return final_path
