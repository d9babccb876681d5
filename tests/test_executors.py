import os

from fezlacrypt import executors
from fezlacrypt import pipeline as pipeline_mod
from fezlacrypt.executors import (CooperativeExecutor, ParallelExecutor, default_workers, select_executor,
                                  threads_available)
from fezlacrypt.pipeline import Pipeline
from fezlacrypt.sources import BufferSource


def test_threads_are_detected_here():
    assert threads_available()
    executor = select_executor(2)
    assert isinstance(executor, ParallelExecutor)
    executor.shutdown()


def test_falls_back_without_threads(monkeypatch):
    monkeypatch.setattr(executors, 'threads_available', lambda: False)
    assert isinstance(select_executor(4), CooperativeExecutor)


def test_pipeline_runs_cooperatively_without_threads(monkeypatch):
    monkeypatch.setattr(executors, 'threads_available', lambda: False)
    chosen = []
    real_select = pipeline_mod.select_executor

    def recording(*args, **kwargs):
        executor = real_select(*args, **kwargs)
        chosen.append(executor)
        return executor

    monkeypatch.setattr(pipeline_mod, 'select_executor', recording)
    data = os.urandom(4000)
    pipe = Pipeline(512, 4)
    env = pipe.encrypt(BufferSource(data), 'pw')
    assert pipe.decrypt(env, 'pw') == data
    assert len(chosen) == 2
    assert all(isinstance(e, CooperativeExecutor) for e in chosen)


def test_cooperative_executor_reports_errors_through_future():
    def fails():
        raise ValueError('bad chunk')

    fut = CooperativeExecutor().submit(fails)
    assert isinstance(fut.exception(), ValueError)
    assert CooperativeExecutor().submit(pow, 2, 5).result() == 32


def test_default_workers_is_at_least_one():
    assert default_workers() >= 1
