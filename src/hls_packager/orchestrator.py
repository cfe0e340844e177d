"""Rendition fan-out, progress aggregation and job finalization.

One job = one source video encoded once per ladder rung. Rungs run in
parallel on a shared encode pool; the job thread joins them fail-fast, then
writes the thumbnail and the master playlist and completes the job in a
single registry update.

Pools:
- jobs:     one thread per running job (jobs.max_concurrent_jobs)
- encodes:  one thread per running FFmpeg process (jobs.max_concurrent_encodes)
- probes:   metadata probes, never awaited by the encode path

Job threads only ever wait on encode/probe futures and those never wait on
job futures, so the pools cannot deadlock each other.
"""

import logging
import math
import os
import shutil
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from concurrent.futures import wait as wait_futures
from typing import Dict, List, Optional, Sequence

from .encoder import HlsEncoder
from .errors import EncodeError, JobNotFoundError, MetadataExtractionError, ThumbnailError
from .jobs import JobRegistry, JobStatus, JobStore, TranscodeJob
from .models import PackagerConfig, RenditionSpec
from .playlist import assemble_master
from .prober import MetadataProber
from .thumbnail import ThumbnailExtractor

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "cancelled"


def aggregate_progress(index: int, fraction: float, total: int) -> int:
    """Job-level percent for rendition ``index`` of ``total`` at ``fraction``.

    Rounds half up: aggregate_progress(0, 0.5, 4) == 13.
    """
    fraction = min(1.0, max(0.0, fraction))
    return int(math.floor(100 * (index + fraction) / total + 0.5))


class RenditionOrchestrator:
    """Drives jobs through probe, encode, thumbnail and master playlist.

    The prober, encoder and thumbnailer are duck-typed; anything with the
    same methods works (tests use in-memory fakes).

    Example:
        >>> with RenditionOrchestrator(config=PackagerConfig()) as orchestrator:
        ...     job_id = orchestrator.submit("movie.mp4", "movie-1")
        ...     job = orchestrator.wait(job_id)
        >>> job.status
        <JobStatus.COMPLETED: 'completed'>
    """

    def __init__(
        self,
        registry: Optional[JobStore] = None,
        encoder=None,
        prober=None,
        thumbnailer=None,
        config: Optional[PackagerConfig] = None,
        ladder: Optional[Sequence[RenditionSpec]] = None,
    ):
        self.config = config or PackagerConfig()
        self.registry = registry if registry is not None else JobRegistry()
        self.ladder = tuple(ladder if ladder is not None else self.config.ladder)
        if not self.ladder:
            raise ValueError("bitrate ladder must contain at least one rendition")

        self.encoder = encoder or HlsEncoder(self.config.hls, self.config.encoding)
        self.prober = prober or MetadataProber(
            self.config.probe.ffprobe_path, self.config.probe.timeout_s
        )
        self.thumbnailer = thumbnailer or ThumbnailExtractor(
            self.config.thumbnail, self.config.encoding
        )

        jobs = self.config.jobs
        self._job_pool = ThreadPoolExecutor(
            max_workers=jobs.max_concurrent_jobs, thread_name_prefix="hls-job"
        )
        self._encode_pool = ThreadPoolExecutor(
            max_workers=jobs.max_concurrent_encodes, thread_name_prefix="hls-encode"
        )
        self._probe_pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix="hls-probe")

        self._lock = threading.Lock()
        self._futures: Dict[str, Future] = {}
        self._cancel_events: Dict[str, threading.Event] = {}
        self._closed = False

    # Public API

    def run_pipeline(self, source_path: str, output_dir: str, video_id: str) -> TranscodeJob:
        """Create a job for ``source_path`` and schedule it.

        Returns the pending job snapshot immediately.
        """
        if not output_dir:
            raise ValueError("output_dir is required")
        self._ensure_open()

        job = self.registry.create_job(video_id, source_path=source_path, output_dir=output_dir)
        logger.info("Job %s created for video %s", job.id, video_id)
        self._schedule(job.id)
        return job

    def submit(self, source_path: str, video_id: str) -> str:
        """Schedule a job writing to ``<output_root>/<video_id>/<job_id>``."""
        if not video_id or video_id in (".", "..") or "/" in video_id or "\\" in video_id:
            raise ValueError(f"video_id must be a single path segment, got {video_id!r}")
        self._ensure_open()

        job = self.registry.create_job(video_id, source_path=source_path)
        output_dir = os.path.join(self.config.jobs.output_root, video_id, job.id)

        def set_output_dir(draft: TranscodeJob) -> None:
            draft.output_dir = output_dir

        self.registry.update_job(job.id, set_output_dir)
        logger.info("Job %s created for video %s -> %s", job.id, video_id, output_dir)
        self._schedule(job.id)
        return job.id

    def wait(self, job_id: str, timeout: Optional[float] = None) -> TranscodeJob:
        """Block until the job's worker returns, then return its snapshot.

        Raises:
            concurrent.futures.TimeoutError: If ``timeout`` elapses first
            JobNotFoundError: If the job is unknown (or already evicted)
        """
        with self._lock:
            future = self._futures.get(job_id)
        if future is not None:
            future.result(timeout=timeout)
        return self.registry.require_job(job_id)

    def cancel(self, job_id: str) -> bool:
        """Request cancellation; False if the job can no longer be stopped.

        A pending job fails immediately. A processing job fails once its
        running encodes notice the cancellation token. Once every rendition
        has finished the job is past the point of cancellation, so this
        returns False and the job goes on to complete.
        """
        job = self.registry.get_job(job_id)
        if job is None or job.is_finished:
            return False

        with self._lock:
            event = self._cancel_events.get(job_id)
        if event is None:
            if job.status == JobStatus.PROCESSING:
                return False
        else:
            event.set()

        def fail_if_pending(draft: TranscodeJob) -> None:
            if draft.status == JobStatus.PENDING:
                draft.mark_failed(CANCELLED_MESSAGE)

        try:
            self.registry.update_job(job_id, fail_if_pending)
        except JobNotFoundError:
            return False

        logger.info("Job %s cancellation requested", job_id)
        return True

    def shutdown(self, wait: bool = True, cancel_running: bool = False) -> None:
        """Stop accepting jobs and release the worker pools."""
        with self._lock:
            self._closed = True
            events = list(self._cancel_events.values())

        if cancel_running:
            for event in events:
                event.set()

        self._job_pool.shutdown(wait=wait)
        self._encode_pool.shutdown(wait=wait)
        self._probe_pool.shutdown(wait=wait)

    def __enter__(self) -> "RenditionOrchestrator":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown(wait=True, cancel_running=exc_type is not None)

    # Job execution

    def _ensure_open(self) -> None:
        with self._lock:
            if self._closed:
                raise RuntimeError("orchestrator has been shut down")

    def _schedule(self, job_id: str) -> None:
        cancel_event = threading.Event()
        with self._lock:
            if self._closed:
                raise RuntimeError("orchestrator has been shut down")
            # Drop finished futures so the map does not grow without bound
            for done_id in [k for k, f in self._futures.items() if f.done()]:
                del self._futures[done_id]
            self._cancel_events[job_id] = cancel_event
            self._futures[job_id] = self._job_pool.submit(
                self._process_job, job_id, cancel_event
            )

    def _process_job(self, job_id: str, cancel_event: threading.Event) -> None:
        try:
            self._run_job(job_id, cancel_event)
        except JobNotFoundError:
            logger.warning("Job %s was evicted while running", job_id)
        except Exception as e:
            logger.exception("Job %s crashed", job_id)
            self._fail(job_id, f"internal error: {e}")
        finally:
            with self._lock:
                self._cancel_events.pop(job_id, None)

    def _run_job(self, job_id: str, cancel_event: threading.Event) -> None:
        def start(draft: TranscodeJob) -> None:
            if draft.status == JobStatus.PENDING:
                draft.mark_processing()

        job = self.registry.update_job(job_id, start)
        if job.status != JobStatus.PROCESSING:
            # Cancelled while queued
            return

        logger.info("Job %s processing %s (%d renditions)", job_id, job.source_path, len(self.ladder))
        source, output_dir = job.source_path, job.output_dir

        probe_future = self._probe_pool.submit(self._probe, job_id, source)

        futures: Dict[Future, RenditionSpec] = {}
        for index, spec in enumerate(self.ladder):
            variant_dir = os.path.join(output_dir, spec.name)
            os.makedirs(variant_dir, exist_ok=True)
            future = self._encode_pool.submit(
                self._encode_rendition, job_id, index, spec, source, variant_dir, cancel_event
            )
            futures[future] = spec

        failure = self._join_renditions(job_id, futures)
        if failure is not None:
            self._handle_failure(job_id, output_dir, failure, futures, cancel_event)
            return

        # Every encode is done; cancel() no longer applies
        with self._lock:
            self._cancel_events.pop(job_id, None)

        # Thumbnail position needs the probed duration. Bounded so a hung
        # ffprobe cannot hold up completion.
        wait_futures([probe_future], timeout=self.config.probe.timeout_s)

        if self.config.thumbnail.enabled:
            thumbnail_path = self._extract_thumbnail(job_id, source, output_dir)
            if thumbnail_path:
                self._record_output(job_id, thumbnail_path)

        try:
            master_path = assemble_master(output_dir, self.ladder)
        except OSError as e:
            logger.error("Job %s: could not write master playlist: %s", job_id, e)
            self._fail(job_id, f"master playlist: {e}")
            return

        def complete(draft: TranscodeJob) -> None:
            if draft.status == JobStatus.PROCESSING:
                draft.mark_completed(master_path)

        job = self.registry.update_job(job_id, complete)
        logger.info("Job %s %s: %s", job_id, job.status.value, master_path)

    def _join_renditions(
        self, job_id: str, futures: Dict[Future, RenditionSpec]
    ) -> Optional[EncodeError]:
        """Collect variant playlists in completion order; stop at the first failure."""
        for future in as_completed(futures):
            spec = futures[future]
            try:
                playlist_path = future.result()
            except EncodeError as e:
                return e
            except Exception as e:
                logger.exception("Job %s: rendition %s crashed", job_id, spec.name)
                return EncodeError(spec.name, str(e) or type(e).__name__)
            self._record_output(job_id, playlist_path)
        return None

    def _handle_failure(
        self,
        job_id: str,
        output_dir: str,
        failure: EncodeError,
        futures: Dict[Future, RenditionSpec],
        cancel_event: threading.Event,
    ) -> None:
        logger.error("Job %s failed: %s", job_id, failure)
        self._fail(job_id, str(failure))

        # Renditions still queued behind other jobs will never be used
        for future in futures:
            future.cancel()

        if not self.config.jobs.cleanup_on_failure:
            return

        cancel_event.set()
        wait_futures(list(futures))
        for spec in futures.values():
            variant_dir = os.path.join(output_dir, spec.name)
            shutil.rmtree(variant_dir, ignore_errors=True)
        logger.info("Job %s: removed partial rendition output", job_id)

    def _encode_rendition(
        self,
        job_id: str,
        index: int,
        spec: RenditionSpec,
        source: str,
        variant_dir: str,
        cancel_event: threading.Event,
    ) -> str:
        total = len(self.ladder)

        def on_progress(fraction: float) -> None:
            self._report_progress(job_id, aggregate_progress(index, fraction, total))

        return self.encoder.encode(
            source,
            spec,
            variant_dir,
            progress_callback=on_progress,
            cancel_event=cancel_event,
        )

    def _report_progress(self, job_id: str, percent: int) -> None:
        def bump(draft: TranscodeJob) -> None:
            draft.record_progress(percent)

        try:
            job = self.registry.update_job(job_id, bump)
        except JobNotFoundError:
            return
        logger.debug("Job %s progress %d%%", job_id, job.progress_percent)

    def _record_output(self, job_id: str, path: str) -> None:
        def add(draft: TranscodeJob) -> None:
            if draft.status == JobStatus.PROCESSING:
                draft.add_output(path)

        self.registry.update_job(job_id, add)

    def _fail(self, job_id: str, message: str) -> None:
        def fail(draft: TranscodeJob) -> None:
            if not draft.is_finished:
                draft.mark_failed(message)

        try:
            self.registry.update_job(job_id, fail)
        except JobNotFoundError:
            pass

    def _probe(self, job_id: str, source: str) -> None:
        try:
            partial = self.prober.probe(source)
        except MetadataExtractionError as e:
            logger.warning("Job %s: metadata extraction failed: %s", job_id, e)
            return
        except Exception:
            logger.exception("Job %s: prober crashed", job_id)
            return

        def merge(draft: TranscodeJob) -> None:
            draft.metadata = draft.metadata.merged_with(partial)

        try:
            self.registry.update_job(job_id, merge)
        except JobNotFoundError:
            return

    def _extract_thumbnail(self, job_id: str, source: str, output_dir: str) -> Optional[str]:
        job = self.registry.require_job(job_id)
        try:
            return self.thumbnailer.extract(
                source,
                output_dir,
                self.config.thumbnail.fraction,
                duration=job.metadata.duration,
            )
        except ThumbnailError as e:
            logger.warning("Job %s: thumbnail generation failed: %s", job_id, e)
        except Exception:
            logger.exception("Job %s: thumbnail generation crashed", job_id)
        return None

    def active_jobs(self) -> List[str]:
        """Ids of jobs currently holding a worker or waiting for one."""
        with self._lock:
            return [job_id for job_id, f in self._futures.items() if not f.done()]
