import asyncio
import contextlib
import dataclasses
import enum
import logging
import threading
import typing

from serialmon import _exceptions
from serialmon import _handle
from serialmon import _ring_buffer
from serialmon import _scanning
from serialmon import _stats
from serialmon import _timeout_math

log = logging.getLogger("serialmon.readloop")
data_log = logging.getLogger(log.name + ".data")


class LoopState(enum.Enum):
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


@dataclasses.dataclass(frozen=True)
class MonitorEvent:
    """Notification from a read loop: new data, a read error, or loop exit"""

    kind: typing.Literal["data", "error", "closed"]
    port: _scanning.SerialPort
    size: int = 0
    error: Exception | None = None


Listener = typing.Callable[[MonitorEvent], None]


class ReadLoop(contextlib.AbstractContextManager):
    """
    Pulls bytes from an open PortHandle into a ByteRingBuffer on a
    dedicated thread until stopped, the device goes away, or reads keep
    failing. The handle is closed when the thread exits, however it exits.
    """

    def __init__(
        self,
        port: _scanning.SerialPort,
        handle: _handle.PortHandle,
        buffer: _ring_buffer.ByteRingBuffer,
        *,
        rate: _stats.RateEstimator,
        stats: _stats.StatsAggregator,
        pause: threading.Event,
        pause_poll: float = 0.2,
        max_errors: int = 3,
        error_backoff: float | int = 0.1,
        listener: Listener | None = None,
        on_exit: typing.Callable[["ReadLoop"], None] | None = None,
    ):
        self.port = port
        self.handle = handle
        self.buffer = buffer
        self.monitor = threading.Condition()
        self.exception: Exception | None = None

        self._rate = rate
        self._stats = stats
        self._pause = pause
        self._pause_poll = pause_poll
        self._max_errors = max_errors
        self._error_backoff = error_backoff
        self._listener = listener
        self._on_exit = on_exit

        self._state = LoopState.RUNNING
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._futures: list[asyncio.Future[None]] = []

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.stop()

    def __repr__(self) -> str:
        return f"ReadLoop({self.port.name!r}, {self.state.value})"

    @property
    def state(self) -> LoopState:
        with self.monitor:
            return self._state

    def start(self) -> None:
        name = f"{self.port.name} reader"
        self._thread = threading.Thread(
            target=self._run, name=name, daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        """Requests cancellation and waits for the handle to be released."""

        self._stop.set()
        self.handle.cancel_read()
        thread = self._thread
        if thread and thread is not threading.current_thread():
            log.debug("Joining %s read loop", self.port.name)
            thread.join()

    def wait_for_data(
        self, total: int, timeout: float | int | None = None
    ) -> bool:
        """Waits until more than 'total' bytes have ever been received."""

        deadline = _timeout_math.to_deadline(timeout)
        with self.monitor:
            while self.buffer.total <= total:
                if self._state is LoopState.STOPPED:
                    return False
                wait = _timeout_math.from_deadline(deadline)
                if wait <= 0:
                    return False
                self.monitor.wait(timeout=wait)
            return True

    async def wait_for_data_async(self, total: int) -> bool:
        while True:
            future = self._create_future()  # BEFORE checking
            if self.buffer.total > total:
                return True
            if self.state is LoopState.STOPPED:
                return False
            await future

    def _run(self) -> None:
        log.debug("Starting %s read loop", self.port.name)
        try:
            self._read_until_stopped()
        except Exception as exc:
            self._stats.record_error()
            with self.monitor:
                self.exception = exc
            self._emit("error", error=exc)
            raise
        finally:
            try:
                self.handle.close()
            except _exceptions.SerialCloseException:
                log.warning("Can't close %s", self.port.name, exc_info=True)

            with self.monitor:
                if self.exception is None:
                    message = "Serial port was closed"
                    self.exception = _exceptions.SerialIoClosed(
                        message, self.port.name
                    )
                self._state = LoopState.STOPPED
                self._notify_all_locked()

            log.debug("Stopped %s read loop", self.port.name)
            self._emit("closed", error=self.exception)
            if self._on_exit:
                self._on_exit(self)

    def _read_until_stopped(self) -> None:
        errors = 0
        while not self._stop.is_set():
            if self._pause.is_set():
                self._set_state(LoopState.PAUSED)
                self._stop.wait(self._pause_poll)
                continue

            self._set_state(LoopState.RUNNING)
            try:
                incoming = self.handle.read(None)
            except _exceptions.SerialIoException as exc:
                if self._stop.is_set():
                    return  # read torn down by cancellation

                errors += 1
                self._stats.record_error()
                data_log.warning("%s", exc, exc_info=True)
                self._emit("error", error=exc)
                gone = isinstance(exc, _exceptions.SerialDeviceGone)
                if gone or errors >= self._max_errors:
                    with self.monitor:
                        self.exception = exc
                    return
                self._stop.wait(self._error_backoff)
                continue

            errors = 0
            if incoming:
                evicted = self.buffer.append(incoming)
                self._rate.add(len(incoming))
                data_log.debug(
                    "%s: Read %db buf=%db evicted=%db",
                    self.port.name,
                    len(incoming),
                    len(self.buffer),
                    evicted,
                )
                with self.monitor:
                    self._notify_all_locked()
                self._emit("data", size=len(incoming))

    def _set_state(self, state: LoopState) -> None:
        with self.monitor:
            if self._state is not state:
                log.debug("%s read loop %s", self.port.name, state.value)
                self._state = state
                self._notify_all_locked()

    def _emit(
        self,
        kind: typing.Literal["data", "error", "closed"],
        size: int = 0,
        error: Exception | None = None,
    ) -> None:
        if self._listener:
            self._listener(MonitorEvent(kind, self.port, size, error))

    def _notify_all_locked(self) -> None:
        """Must be run with self.monitor lock held."""

        self.monitor.notify_all()
        futures, self._futures = self._futures, []
        for future in futures:
            try:
                future.get_loop().call_soon_threadsafe(_resolve, future)
            except RuntimeError:
                data_log.debug("Dropping future for closed event loop")

    def _create_future(self) -> asyncio.Future[None]:
        """Must be run from an asyncio event loop."""

        future = asyncio.get_running_loop().create_future()
        with self.monitor:
            if self._state is LoopState.STOPPED:
                future.set_result(None)
            else:
                self._futures.append(future)
        return future


def _resolve(future: asyncio.Future[None]) -> None:
    if not future.done():
        future.set_result(None)
