from __future__ import annotations

import random
import threading
import time

import pytest

from casefolio.application.services.engine_pool import RecognitionEnginePool
from casefolio.core.errors import ConfigurationError


class CountingEngine:
    instances = 0
    lock = threading.Lock()

    def __init__(self, delay: float = 0.0, tracker: dict[str, int] | None = None) -> None:
        with CountingEngine.lock:
            CountingEngine.instances += 1
        self.delay = delay
        self.tracker = tracker if tracker is not None else {"current": 0, "peak": 0}
        self.started = False
        self.terminated = False
        self.busy = False

    def start(self) -> None:
        time.sleep(0.05)
        self.started = True

    def recognize(self, image_bytes: bytes) -> str:
        assert not self.busy, "engine handed to two callers at once"
        self.busy = True
        with CountingEngine.lock:
            self.tracker["current"] += 1
            self.tracker["peak"] = max(self.tracker["peak"], self.tracker["current"])
        try:
            time.sleep(self.delay)
            return image_bytes.decode("utf-8").upper()
        finally:
            with CountingEngine.lock:
                self.tracker["current"] -= 1
            self.busy = False

    def terminate(self) -> None:
        self.terminated = True


@pytest.fixture(autouse=True)
def _reset_counter():
    CountingEngine.instances = 0
    yield


def test_pool_size_must_be_positive() -> None:
    with pytest.raises(ConfigurationError):
        RecognitionEnginePool(CountingEngine, size=0)


def test_engines_are_built_once_under_concurrent_first_use() -> None:
    pool = RecognitionEnginePool(CountingEngine, size=2)
    barrier = threading.Barrier(8)
    results: list[str] = []

    def first_use() -> None:
        barrier.wait()
        results.append(pool.recognize(b"abc"))

    threads = [threading.Thread(target=first_use) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    assert CountingEngine.instances == 2
    assert results == ["ABC"] * 8
    assert pool.initialized is True


def test_concurrent_recognition_is_bounded_by_pool_size() -> None:
    tracker = {"current": 0, "peak": 0}
    pool = RecognitionEnginePool(lambda: CountingEngine(delay=0.05, tracker=tracker), size=2)
    pool.initialize()

    threads = [threading.Thread(target=pool.recognize, args=(b"page",)) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    assert tracker["peak"] <= 2
    assert tracker["current"] == 0


def test_checkout_picks_among_idle_engines() -> None:
    pool = RecognitionEnginePool(CountingEngine, size=3, rng=random.Random(7))
    pool.initialize()

    with pool.checkout() as first, pool.checkout() as second, pool.checkout() as third:
        assert len({id(first), id(second), id(third)}) == 3


def test_shutdown_terminates_engines_and_allows_restart() -> None:
    engines: list[CountingEngine] = []

    def factory() -> CountingEngine:
        engine = CountingEngine()
        engines.append(engine)
        return engine

    pool = RecognitionEnginePool(factory, size=2)
    pool.initialize()
    assert all(engine.started for engine in engines)

    pool.shutdown()

    assert pool.initialized is False
    assert all(engine.terminated for engine in engines)

    assert pool.recognize(b"again") == "AGAIN"
    assert len(engines) == 4


def test_failed_initialization_cleans_up_and_can_be_retried() -> None:
    built: list[CountingEngine] = []
    calls = {"n": 0}

    def flaky_factory() -> CountingEngine:
        calls["n"] += 1
        if calls["n"] == 2:
            raise RuntimeError("second engine failed to start")
        engine = CountingEngine()
        built.append(engine)
        return engine

    pool = RecognitionEnginePool(flaky_factory, size=2)

    with pytest.raises(RuntimeError):
        pool.initialize()

    assert pool.initialized is False
    assert built[0].terminated is True

    pool.initialize()
    assert pool.initialized is True
