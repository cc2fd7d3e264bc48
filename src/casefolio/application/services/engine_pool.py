from __future__ import annotations

import logging
import random
import threading
from contextlib import contextmanager
from typing import Callable, Iterator, Protocol

from casefolio.core.errors import ConfigurationError

logger = logging.getLogger(__name__)


class Recognizer(Protocol):
    def recognize(self, image_bytes: bytes) -> str: ...


class RecognitionEnginePool:
    """Fixed set of long-lived recognizers shared by every document worker.

    Engines are built lazily on first use, exactly once even when several
    workers race for the first page. Each engine serves one caller at a time;
    callers beyond the pool size block until an engine is returned.
    """

    def __init__(
        self,
        factory: Callable[[], Recognizer],
        *,
        size: int = 1,
        rng: random.Random | None = None,
    ) -> None:
        if size < 1:
            raise ConfigurationError(f"Recognition engine pool size must be >= 1 (got {size})")
        self._factory = factory
        self.size = int(size)
        self._rng = rng or random.Random()
        self._init_lock = threading.Lock()
        self._idle_lock = threading.Lock()
        self._slots = threading.BoundedSemaphore(self.size)
        self._engines: list[Recognizer] = []
        self._idle: set[int] = set()
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> None:
        if self._initialized:
            return
        with self._init_lock:
            if self._initialized:
                return
            engines: list[Recognizer] = []
            try:
                for _ in range(self.size):
                    engine = self._factory()
                    start = getattr(engine, "start", None)
                    if callable(start):
                        start()
                    engines.append(engine)
            except Exception:
                for engine in engines:
                    self._terminate_engine(engine)
                raise
            with self._idle_lock:
                self._engines = engines
                self._idle = set(range(len(engines)))
            self._initialized = True
            logger.info("Recognition engine pool initialized (%s engines)", self.size)

    def recognize(self, image_bytes: bytes) -> str:
        self.initialize()
        with self.checkout() as engine:
            return engine.recognize(image_bytes)

    @contextmanager
    def checkout(self) -> Iterator[Recognizer]:
        self._slots.acquire()
        try:
            with self._idle_lock:
                index = self._rng.choice(sorted(self._idle))
                self._idle.discard(index)
                engine = self._engines[index]
            try:
                yield engine
            finally:
                with self._idle_lock:
                    if index < len(self._engines) and self._engines[index] is engine:
                        self._idle.add(index)
        finally:
            self._slots.release()

    def shutdown(self) -> None:
        with self._init_lock:
            if not self._initialized:
                return
            with self._idle_lock:
                engines = list(self._engines)
                self._engines = []
                self._idle = set()
            for engine in engines:
                self._terminate_engine(engine)
            self._initialized = False
            logger.info("Recognition engine pool shut down")

    @staticmethod
    def _terminate_engine(engine: Recognizer) -> None:
        terminate = getattr(engine, "terminate", None)
        if not callable(terminate):
            return
        try:
            terminate()
        except Exception:
            logger.exception("Failed to terminate recognition engine")
