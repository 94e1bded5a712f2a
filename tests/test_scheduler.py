from __future__ import annotations

from concurrent.futures import Future
from concurrent.futures.process import BrokenProcessPool

import pytest

import wave_data_pipeline
from wave_data_pipeline import (
    CacheKey,
    DatasetType,
    FetchScheduler,
    MonthJob,
    MonthlyCache,
    MonthlyFetcher,
    WorkerPool,
    month_url,
)

VARIABLES = ("t02", "hs", "dir")


def make_jobs(location, months=(201501, 201502, 201503)):
    return [MonthJob(ym, month_url(DatasetType.WAVE, "aus_10m", ym), CacheKey.for_month(location, ym))
            for ym in months]


class BrokenExecutor:
    """Executor whose workers all die"""

    def __init__(self, max_workers=None):
        self.max_workers = max_workers

    def submit(self, fn, *args):
        future = Future()
        future.set_exception(BrokenProcessPool("worker died"))
        return future

    def shutdown(self, wait=True):
        pass


def run(scheduler, jobs, location, archive, cache):
    return scheduler.run(jobs, location, VARIABLES, MonthlyFetcher(opener=archive), cache)


def test_sequential_run_fetches_every_month(tmp_path, wave_archive, ocean_location):
    cache = MonthlyCache(tmp_path)
    jobs = make_jobs(ocean_location)

    report = run(FetchScheduler(parallel=False), jobs, ocean_location, wave_archive, cache)

    assert report.fetched == [201501, 201502, 201503]
    assert report.mode == "sequential"
    assert all(cache.has(job.key) for job in jobs)


def test_rerun_over_cached_months_fetches_nothing(tmp_path, wave_archive, ocean_location):
    cache = MonthlyCache(tmp_path)
    jobs = make_jobs(ocean_location)
    run(FetchScheduler(parallel=False), jobs, ocean_location, wave_archive, cache)
    wave_archive.calls.clear()

    report = run(FetchScheduler(parallel=False), jobs, ocean_location, wave_archive, cache)

    assert report.fetched == []
    assert report.skipped == [201501, 201502, 201503]
    assert wave_archive.calls == []


def test_failed_month_does_not_stop_the_run(tmp_path, wave_archive, ocean_location, caplog):
    cache = MonthlyCache(tmp_path)
    jobs = make_jobs(ocean_location)
    wave_archive.fail(jobs[1].url)

    report = run(FetchScheduler(parallel=False), jobs, ocean_location, wave_archive, cache)

    assert report.fetched == [201501, 201503]
    assert list(report.failed) == [201502]
    assert not cache.has(jobs[1].key)
    assert "Month 201502 failed" in caplog.text


def test_thread_pool_run(tmp_path, wave_archive, ocean_location):
    cache = MonthlyCache(tmp_path)
    jobs = make_jobs(ocean_location)
    wave_archive.fail(jobs[2].url)

    report = run(FetchScheduler(parallel=True, max_workers=3, backend="thread"),
                 jobs, ocean_location, wave_archive, cache)

    assert report.mode == "parallel:thread"
    assert report.fetched == [201501, 201502]
    assert list(report.failed) == [201503]


def test_pool_init_failure_falls_back_to_sequential(tmp_path, wave_archive, ocean_location,
                                                     monkeypatch, caplog):
    def no_processes(max_workers=None):
        raise OSError("no semaphore support")

    monkeypatch.setattr(wave_data_pipeline, "ProcessPoolExecutor", no_processes)
    cache = MonthlyCache(tmp_path)

    report = run(FetchScheduler(parallel=True), make_jobs(ocean_location), ocean_location, wave_archive, cache)

    assert report.mode == "sequential"
    assert report.fetched == [201501, 201502, 201503]
    assert "[parallel] disabled" in caplog.text


def test_broken_pool_finishes_sequentially(tmp_path, wave_archive, ocean_location, monkeypatch):
    monkeypatch.setattr(wave_data_pipeline, "ProcessPoolExecutor", BrokenExecutor)
    cache = MonthlyCache(tmp_path)

    report = run(FetchScheduler(parallel=True), make_jobs(ocean_location), ocean_location, wave_archive, cache)

    assert report.fetched == [201501, 201502, 201503]
    assert report.failed == {}


def test_progress_logged_per_year(tmp_path, archive, make_gridded_month, ocean_location, caplog):
    months = [201412, 201501]
    for ym in months:
        archive.add(month_url(DatasetType.WAVE, "aus_10m", ym), make_gridded_month(ym))

    with caplog.at_level("INFO", logger="wave_data_pipeline"):
        run(FetchScheduler(parallel=False), make_jobs(ocean_location, months),
            ocean_location, archive, MonthlyCache(tmp_path))

    assert "Starting year 2014: Loading 201412 (1 of 2)" in caplog.text


def test_worker_pool_width_is_clamped(monkeypatch):
    monkeypatch.setattr(wave_data_pipeline, "available_workers", lambda: 2)

    assert WorkerPool(max_workers=6).width == 2
    assert WorkerPool(max_workers=1).width == 1


@pytest.mark.parametrize("kwargs", [{"max_workers": 0}, {"backend": "mpi"}])
def test_worker_pool_rejects_bad_arguments(kwargs):
    with pytest.raises(ValueError):
        WorkerPool(**kwargs)
