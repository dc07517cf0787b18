import threading


class ByteRingBuffer:
    """
    Bounded byte store that keeps the newest max_len bytes. One thread
    appends; any thread may take a snapshot copy.
    """

    def __init__(self, max_len: int = 10000):
        if max_len <= 0:
            raise ValueError(f"max_len must be positive, got {max_len}")
        self._max_len = max_len
        self._data = bytearray()
        self._lock = threading.Lock()
        self._total = 0
        self._dropped = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def __repr__(self) -> str:
        return f"ByteRingBuffer({len(self)}/{self._max_len})"

    @property
    def max_len(self) -> int:
        return self._max_len

    @property
    def total(self) -> int:
        """Bytes ever appended, including evicted ones"""
        with self._lock:
            return self._total

    @property
    def dropped(self) -> int:
        with self._lock:
            return self._dropped

    def append(self, chunk: bytes) -> int:
        """Appends, evicting the oldest overflow; returns bytes evicted."""

        with self._lock:
            if len(chunk) >= self._max_len:
                excess = len(self._data) + len(chunk) - self._max_len
                self._data[:] = chunk[-self._max_len :]
            else:
                self._data.extend(chunk)
                excess = max(0, len(self._data) - self._max_len)
                if excess:
                    # bytearray trims its head without copying the rest
                    del self._data[:excess]
            self._total += len(chunk)
            self._dropped += excess
            return excess

    def snapshot(self) -> bytes:
        with self._lock:
            return bytes(self._data)

    def tail(self, size: int) -> bytes:
        with self._lock:
            return bytes(self._data[-size:]) if size > 0 else b""

    def clear(self) -> None:
        with self._lock:
            self._data.clear()
