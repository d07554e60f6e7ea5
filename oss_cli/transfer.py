from __future__ import annotations
"""Progress reporting and throttling for streamed uploads."""
import os
import sys
import time
from typing import BinaryIO, Callable, Optional, TextIO

ProgressFn = Callable[[int, int, bool], None]

PROGRESS_INTERVAL_MS = 1000


def _now_ms(clock: Callable[[], float]) -> int:
    return int(clock() * 1000)


class AppendProgressListener:
    """Prints a transient status line roughly once per second."""

    def __init__(
        self,
        stream: TextIO | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._stream = stream or sys.stdout
        self._clock = clock
        self.last_ms: int | None = None
        self.last_size = 0
        self.curr_size = 0

    def __call__(self, consumed: int, total: int, completed: bool) -> None:
        self.progress_changed(consumed, total, completed)

    def progress_changed(self, consumed: int, total: int, completed: bool = False) -> None:
        if self.last_ms is None:
            self.last_size = self.curr_size
            self.curr_size = consumed
            self.last_ms = _now_ms(self._clock)
            return

        now_ms = _now_ms(self._clock)
        cost = now_ms - self.last_ms
        if cost <= PROGRESS_INTERVAL_MS and not completed:
            return

        self.last_size = self.curr_size
        self.curr_size = consumed
        self.last_ms = now_ms

        speed = (self.curr_size - self.last_size) / cost if cost > 0 else 0.0
        rate = self.curr_size * 100 / total if total > 0 else 100.0
        self._stream.write(f"\rtotal append {consumed}({rate:.2f}%) byte,speed is {speed:.2f}(KB/s)")
        self._stream.flush()


class ProgressReader:
    """File wrapper that reports consumed bytes and optionally caps throughput.

    Reads made while the reader is inactive (for example when the signer
    hashes the payload) are neither counted nor throttled. botocore may
    rewind the body; the consumed counter follows :meth:`seek`.
    """

    def __init__(
        self,
        fileobj: BinaryIO,
        total: int,
        *,
        callback: Optional[ProgressFn] = None,
        max_speed_kb: int = 0,
        active: bool = True,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._fileobj = fileobj
        self._total = total
        self._callback = callback
        self._max_bytes_per_second = max(int(max_speed_kb), 0) * 1024
        self._active = active
        self._clock = clock
        self._sleep = sleep
        self._consumed = 0
        self._completed = False
        self._started_at: float | None = None

    def __len__(self) -> int:
        return self._total

    def activate(self) -> None:
        self._active = True

    def read(self, amt: int | None = -1) -> bytes:
        chunk = self._fileobj.read(amt if amt is not None else -1)
        if not self._active:
            return chunk
        if self._started_at is None:
            self._started_at = self._clock()
        if not chunk:
            self._finish()
            return chunk
        self._consumed += len(chunk)
        self._throttle()
        if self._callback:
            self._callback(self._consumed, self._total, False)
        if self._consumed >= self._total:
            self._finish()
        return chunk

    def seek(self, offset: int, whence: int = os.SEEK_SET) -> int:
        position = self._fileobj.seek(offset, whence)
        self._consumed = position
        self._completed = False
        self._started_at = None
        return position

    def tell(self) -> int:
        return self._fileobj.tell()

    def _finish(self) -> None:
        if self._completed:
            return
        self._completed = True
        if self._callback:
            self._callback(self._consumed, self._total, True)

    def _throttle(self) -> None:
        if not self._max_bytes_per_second or self._started_at is None:
            return
        expected = self._consumed / self._max_bytes_per_second
        elapsed = self._clock() - self._started_at
        if expected > elapsed:
            self._sleep(expected - elapsed)
