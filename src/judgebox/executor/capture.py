from __future__ import annotations

import threading
from typing import BinaryIO


class BoundedCapture(threading.Thread):
    """
    Drain a child's pipe on a background thread, keeping at most ``limit`` bytes.

    Everything past the cap is read and discarded so the child never blocks
    on a full pipe; ``truncated`` and the ``overflow`` event report that it
    happened. Memory held by the judge stays bounded by ``limit``.
    """

    def __init__(self, stream: BinaryIO, limit: int, *, chunk_size: int = 64 * 1024, name: str = "capture"):
        super().__init__(name=name, daemon=True)
        self._stream = stream
        self._limit = limit
        self._chunk_size = chunk_size
        self._buf = bytearray()
        self.truncated = False
        self.overflow = threading.Event()

    def run(self) -> None:
        try:
            while True:
                chunk = self._stream.read1(self._chunk_size)
                if not chunk:
                    break
                room = self._limit - len(self._buf)
                if room > 0:
                    self._buf += chunk[:room]
                if len(chunk) > room:
                    self.truncated = True
                    self.overflow.set()
        except (OSError, ValueError):
            # pipe closed underneath us after the child was killed
            pass
        finally:
            self._stream.close()

    def value(self) -> bytes:
        return bytes(self._buf)
