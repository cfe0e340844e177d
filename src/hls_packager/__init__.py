"""Adaptive-bitrate HLS packaging pipeline."""

from .errors import (
    EncodeError,
    EncodeTimeoutError,
    InvalidTransitionError,
    JobNotFoundError,
    MetadataExtractionError,
    PackagerError,
    ThumbnailError,
)
from .jobs import JobRegistry, JobStatus, TranscodeJob
from .models import DEFAULT_LADDER, PackagerConfig, RenditionSpec, VideoMetadata
from .orchestrator import RenditionOrchestrator
from .playlist import assemble_master, build_master_playlist
from .service import PackagingService

__version__ = "0.1.0"

__all__ = [
    "DEFAULT_LADDER",
    "EncodeError",
    "EncodeTimeoutError",
    "InvalidTransitionError",
    "JobNotFoundError",
    "JobRegistry",
    "JobStatus",
    "MetadataExtractionError",
    "PackagerConfig",
    "PackagerError",
    "PackagingService",
    "RenditionOrchestrator",
    "RenditionSpec",
    "ThumbnailError",
    "TranscodeJob",
    "VideoMetadata",
    "assemble_master",
    "build_master_playlist",
]
