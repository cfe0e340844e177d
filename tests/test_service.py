"""Tests for the packaging service facade."""

import threading
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest

from hls_packager.orchestrator import RenditionOrchestrator
from hls_packager.service import PackagingService

from conftest import FakeEncoder, FakeProber, FakeThumbnailer


@pytest.fixture
def service(config, registry):
    orchestrator = RenditionOrchestrator(
        registry,
        encoder=FakeEncoder(),
        prober=FakeProber(),
        thumbnailer=FakeThumbnailer(),
        config=config,
    )
    svc = PackagingService(config, orchestrator=orchestrator)
    yield svc
    svc.stop()


def _backdate(registry, job_id, hours):
    def mutate(draft):
        draft.completed_at = datetime.now() - timedelta(hours=hours)

    registry.update_job(job_id, mutate)


class TestSubmitAndQuery:

    def test_submit_missing_source(self, service, tmp_path):
        with pytest.raises(FileNotFoundError):
            service.submit(str(tmp_path / "nope.mp4"), "v")

    def test_job_summary(self, service, source_video):
        job_id = service.submit(source_video, "video-9")
        summary = service.wait(job_id, timeout=10)

        assert summary["id"] == job_id
        assert summary["videoId"] == "video-9"
        assert summary["status"] == "completed"
        assert summary["progressPercent"] == 100
        assert summary["outputPaths"][-1].endswith("master.m3u8")
        assert "completedAt" in summary
        assert "errorMessage" not in summary
        assert summary["metadata"]["duration"] == 120.0
        assert service.get_job(job_id) == summary

    def test_unknown_job_is_none(self, service):
        assert service.get_job("missing") is None

    def test_list_jobs(self, service, source_video):
        first = service.submit(source_video, "a")
        second = service.submit(source_video, "b")
        service.wait(first, timeout=10)
        service.wait(second, timeout=10)

        assert [j["id"] for j in service.list_jobs()] == [first, second]
        assert len(service.list_jobs("completed")) == 2
        assert service.list_jobs("failed") == []

    def test_stats(self, service, source_video):
        service.wait(service.submit(source_video, "a"), timeout=10)

        stats = service.stats()
        assert stats["completed"] == 1
        assert stats["total"] == 1

    def test_cancel_unknown(self, service):
        assert service.cancel("missing") is False


class TestCleanup:

    def test_eviction_boundary(self, service, registry, source_video):
        old = service.submit(source_video, "old")
        recent = service.submit(source_video, "recent")
        service.wait(old, timeout=10)
        service.wait(recent, timeout=10)
        _backdate(registry, old, hours=25)
        _backdate(registry, recent, hours=23)

        assert service.cleanup(max_age_hours=24) == 1
        assert service.get_job(old) is None
        assert service.get_job(recent) is not None

    def test_running_jobs_survive_cleanup(self, config, registry, source_video):
        encoder = FakeEncoder(hold={"240p", "360p"})
        orchestrator = RenditionOrchestrator(
            registry, encoder=encoder, prober=FakeProber(),
            thumbnailer=FakeThumbnailer(), config=config,
        )
        service = PackagingService(config, orchestrator=orchestrator)
        try:
            job_id = service.submit(source_video, "v")
            assert service.cleanup(max_age_hours=0.0001) == 0
            assert service.get_job(job_id) is not None
        finally:
            encoder.release()
            service.stop()

    def test_periodic_cleanup_thread(self, service):
        called = threading.Event()

        with patch.object(service, "cleanup", side_effect=lambda hours: called.set()) as cleanup:
            service.config.jobs.cleanup_interval_s = 1
            service.start()
            assert called.wait(5)
            service.stop()

        cleanup.assert_called_with(service.config.jobs.retention_hours)

    def test_start_is_idempotent(self, service):
        service.start()
        thread = service._cleanup_thread
        service.start()
        assert service._cleanup_thread is thread

    def test_context_manager_stops_thread(self, config, registry):
        orchestrator = RenditionOrchestrator(
            registry, encoder=FakeEncoder(), prober=FakeProber(),
            thumbnailer=FakeThumbnailer(), config=config,
        )
        with PackagingService(config, orchestrator=orchestrator) as service:
            thread = service._cleanup_thread
            assert thread.is_alive()

        assert not thread.is_alive()
