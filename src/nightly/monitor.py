"""Background activities: periodic checkpoint timer and process resource sampler.

Both run on daemon threads and never block task execution; failures inside a
tick are logged and the loop keeps going.
"""

from __future__ import annotations

import threading
import time
from typing import Any, Callable

import psutil

from nightly import log

CPU_WARNING_PERCENT = 90.0
MEMORY_WARNING_BYTES = 2 * 1024 * 1024 * 1024


class PeriodicTimer:
    """Call *callback* every *interval* seconds until :meth:`stop`."""

    def __init__(self, interval: float, callback: Callable[[], None], name: str = "nightly-timer") -> None:
        self.interval = interval
        self.callback = callback
        self.name = name
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        with self._lock:
            if self._thread and self._thread.is_alive():
                return
            self._stop.clear()
            self._thread = threading.Thread(target=self._loop, daemon=True, name=self.name)
            self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        with self._lock:
            self._stop.set()
            thread = self._thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=max(timeout, 0.0))
        self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.callback()
            except Exception as exc:  # keep the timer alive; the next tick retries
                log.warn(f"{self.name} tick failed: {exc}")


class ResourceSampler:
    """Record CPU and memory usage of this process every *interval* seconds."""

    def __init__(
        self,
        on_sample: Callable[[dict[str, Any]], None],
        interval: float = 30.0,
        process: psutil.Process | None = None,
    ) -> None:
        self.on_sample = on_sample
        self._process = process or psutil.Process()
        self._timer = PeriodicTimer(interval, self.sample_once, name="nightly-resources")

    def sample_once(self) -> dict[str, Any]:
        with self._process.oneshot():
            cpu = self._process.cpu_percent(interval=None)
            memory = self._process.memory_info().rss
        sample = {"timestamp": int(time.time() * 1000), "cpu": cpu, "memory": memory}
        self.on_sample(sample)

        if cpu > CPU_WARNING_PERCENT:
            log.warn(f"High CPU usage detected: {cpu:.1f}%")
        if memory > MEMORY_WARNING_BYTES:
            log.warn(f"High memory usage detected: {memory / (1024 * 1024):.0f} MB")
        return sample

    def start(self) -> None:
        # Prime cpu_percent so the first real sample has a baseline.
        self._process.cpu_percent(interval=None)
        self._timer.start()

    def stop(self) -> None:
        self._timer.stop()
