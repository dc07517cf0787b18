import contextlib
import enum
import itertools
import logging
import threading
import time
import typing

import pydantic

from serialmon import _exceptions
from serialmon import _handle
from serialmon import _prober
from serialmon import _read_loop
from serialmon import _ring_buffer
from serialmon import _scanning
from serialmon import _stats

log = logging.getLogger("serialmon.registry")

Opener = typing.Callable[[_scanning.SerialPort], _handle.PortHandle]
PortName = typing.Annotated[str, pydantic.StringConstraints(min_length=1)]
PortRef = pydantic.InstanceOf[_scanning.SerialPort] | PortName


class MonitorOptions(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(frozen=True)

    buffer_size: pydantic.PositiveInt = 10000
    connect_delay: float = pydantic.Field(0.5, ge=0.5)
    pause_poll: float = pydantic.Field(0.2, gt=0, le=0.25)
    max_read_errors: pydantic.PositiveInt = 3
    error_backoff: float = pydantic.Field(0.1, ge=0)
    probe: _prober.ProbeOptions = _prober.ProbeOptions()


class ConnectionState(enum.Enum):
    CLOSED = "closed"
    OPENING = "opening"
    OPEN = "open"
    CLOSING = "closing"
    ERRORED = "errored"


class BulkResult(typing.NamedTuple):
    succeeded: list[_scanning.SerialPort]
    failed: dict[str, _exceptions.SerialException]

    @property
    def count(self) -> int:
        return len(self.succeeded)


class Connection:
    """One open port: its parameters, its buffer, and its read loop."""

    _next_id = itertools.count(1)

    def __init__(
        self,
        port: _scanning.SerialPort,
        params: _handle.ConnectionParams,
        handle: _handle.PortHandle,
        buffer: _ring_buffer.ByteRingBuffer,
    ):
        self.id = next(Connection._next_id)
        self.port = port
        self.params = params
        self.handle = handle
        self.buffer = buffer
        self.loop: _read_loop.ReadLoop | None = None

        self._lock = threading.Lock()
        self._retired = False
        self._closed = threading.Event()

    def __repr__(self) -> str:
        return f"Connection(#{self.id} {self.port.name!r} {self.state.value})"

    @property
    def state(self) -> ConnectionState:
        with self._lock:
            retired = self._retired
        if self._closed.is_set():
            return ConnectionState.CLOSED
        if retired:
            return ConnectionState.CLOSING
        if self.loop is None:
            return ConnectionState.OPENING
        if self.loop.state is _read_loop.LoopState.STOPPED:
            return ConnectionState.ERRORED
        return ConnectionState.OPEN

    def retire(self) -> bool:
        """Claims the job of closing; True for exactly one caller."""

        with self._lock:
            if self._retired:
                return False
            self._retired = True
            return True

    def close(self) -> None:
        try:
            if self.loop is not None:
                self.loop.stop()  # joins the thread, which closes the handle
            self.handle.close()
        finally:
            self._closed.set()

    def wait_closed(self, timeout: float | int | None = None) -> bool:
        return self._closed.wait(timeout)

    def wait_for_data(
        self, total: int = 0, timeout: float | int | None = None
    ) -> bool:
        return self.loop is not None and self.loop.wait_for_data(total, timeout)

    async def wait_for_data_async(self, total: int = 0) -> bool:
        if self.loop is None:
            return False
        return await self.loop.wait_for_data_async(total)


class ConnectionRegistry(contextlib.AbstractContextManager):
    """
    Owns every open connection: opens ports, runs one read loop per
    port, and tears them down again. At most one connection per port.
    """

    def __init__(
        self,
        opts: MonitorOptions = MonitorOptions(),
        *,
        scanner: _scanning.PortScanner | None = None,
        opener: Opener = _handle.PyserialHandle,
    ):
        self._opts = opts
        self._scanner = scanner or _scanning.SystemPortScanner()
        self._opener = opener
        self._prober = _prober.BaudProber(opener, opts.probe)

        self._lock = threading.Lock()
        self._known: dict[str, _scanning.SerialPort] = {}
        self._connections: dict[str, Connection] = {}
        self._port_locks: dict[str, threading.Lock] = {}
        self._listeners: list[_read_loop.Listener] = []
        self._last_probe = _prober.ProbeResult()

        self._pause = threading.Event()
        self.rate = _stats.RateEstimator()
        self.stats = _stats.StatsAggregator()

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.disconnect_all()

    def __repr__(self) -> str:
        return f"ConnectionRegistry(opts={self._opts!r})"

    #
    # Enumeration
    #

    def scan(self) -> list[_scanning.SerialPort]:
        """Re-enumerates ports, replacing the known set by identity."""

        found = self._scanner.list_authorized_ports()
        with self._lock:
            self._known = {p.key: p for p in found}
            connected = sum(p.key in self._connections for p in found)
        log.debug("%d ports known, %d connected", len(found), connected)
        return found

    @pydantic.validate_call
    def request_port(self, name: PortName) -> _scanning.SerialPort:
        port = self._scanner.request_port_access(name)
        with self._lock:
            self._known.setdefault(port.key, port)
        return port

    def list_known_ports(self) -> list[_scanning.SerialPort]:
        with self._lock:
            return list(self._known.values())

    #
    # Connect / disconnect
    #

    @pydantic.validate_call
    def connect(
        self,
        port: PortRef,
        params: _handle.ConnectionParams | int = _handle.ConnectionParams(),
    ) -> Connection:
        port = self._resolve(port)
        if isinstance(params, int):
            try:
                params = _handle.ConnectionParams(baud=params)
            except pydantic.ValidationError as ex:
                message = f"Invalid baud rate {params}"
                raise _exceptions.SerialOpenInvalid(message, port.name) from ex

        with self._port_lock(port.key):
            self._discard_stale(port.key)
            with self._lock:
                if port.key in self._connections:
                    message = "Already connected"
                    raise _exceptions.SerialAlreadyConnected(message, port.name)

            handle = self._opener(port)
            handle.open(params)

            conn = Connection(
                port=port,
                params=params,
                handle=handle,
                buffer=_ring_buffer.ByteRingBuffer(self._opts.buffer_size),
            )
            conn.loop = _read_loop.ReadLoop(
                port,
                handle,
                conn.buffer,
                rate=self.rate,
                stats=self.stats,
                pause=self._pause,
                pause_poll=self._opts.pause_poll,
                max_errors=self._opts.max_read_errors,
                error_backoff=self._opts.error_backoff,
                listener=self._emit,
                on_exit=lambda _loop: self._reclaim(conn),
            )
            with self._lock:
                self._connections[port.key] = conn
            conn.loop.start()

        log.info("Connected %s (%s)", port.label, params)
        return conn

    @pydantic.validate_call
    def disconnect(self, port: PortRef) -> None:
        """Closes the port's connection, if any, and waits for cleanup."""

        key = self._resolve(port).key
        with self._port_lock(key):
            with self._lock:
                conn = self._connections.get(key)
            if conn is None:
                log.debug("%s not connected", key)
                return

            try:
                if conn.retire():
                    conn.close()
                else:
                    conn.wait_closed()
            finally:
                self._forget(conn)

        log.info("Disconnected %s", conn.port.label)

    @pydantic.validate_call
    def connect_all(
        self,
        params: _handle.ConnectionParams | int = _handle.ConnectionParams(),
    ) -> BulkResult:
        """Connects every enumerated port, pausing between open attempts."""

        result = BulkResult([], {})
        attempts = 0
        for port in self.scan():
            if self.is_connected(port):
                continue
            if attempts:
                time.sleep(self._opts.connect_delay)
            attempts += 1
            try:
                self.connect(port, params)
                result.succeeded.append(port)
            except _exceptions.SerialException as exc:
                log.warning("Can't connect %s (%s)", port, exc)
                result.failed[port.name] = exc

        log.info("Connected %d/%d ports", result.count, attempts)
        return result

    @pydantic.validate_call
    def disconnect_all(self) -> BulkResult:
        result = BulkResult([], {})
        with self._lock:
            conns = list(self._connections.values())
        for conn in conns:
            try:
                self.disconnect(conn.port)
                result.succeeded.append(conn.port)
            except _exceptions.SerialException as exc:
                log.warning("Can't disconnect %s (%s)", conn.port, exc)
                result.failed[conn.port.name] = exc

        if conns:
            log.info("Disconnected %d/%d ports", result.count, len(conns))
        return result

    #
    # Baud rate detection
    #

    @pydantic.validate_call
    def detect_baud(self, port: PortRef) -> _prober.ProbeResult:
        port = self._resolve(port)
        with self._port_lock(port.key):
            self._discard_stale(port.key)
            with self._lock:
                if port.key in self._connections:
                    message = "Can't probe a connected port"
                    raise _exceptions.SerialAlreadyConnected(message, port.name)
            result = self._prober.detect(port)

        with self._lock:
            self._last_probe = result
        return result

    @pydantic.validate_call
    def detect_and_connect(self, port: PortRef) -> Connection:
        port = self._resolve(port)
        result = self.detect_baud(port)
        if result.baud is None:
            message = "No plausible baud rate found"
            raise _exceptions.SerialProbeExhausted(message, port.name)
        return self.connect(port, _handle.ConnectionParams.probe(result.baud))

    @property
    def last_probe_result(self) -> _prober.ProbeResult:
        with self._lock:
            return self._last_probe

    #
    # Monitoring controls and snapshots
    #

    @property
    def paused(self) -> bool:
        return self._pause.is_set()

    def pause(self) -> None:
        self._pause.set()
        log.info("Monitoring paused")

    def resume(self) -> None:
        self._pause.clear()
        log.info("Monitoring resumed")

    def clear_buffers(self) -> None:
        for conn in self._open_connections():
            conn.buffer.clear()

    @pydantic.validate_call
    def is_connected(self, port: PortRef) -> bool:
        conn = self.get_connection(port)
        return conn is not None and conn.state is ConnectionState.OPEN

    @pydantic.validate_call
    def get_connection(self, port: PortRef) -> Connection | None:
        key = port.key if isinstance(port, _scanning.SerialPort) else port
        with self._lock:
            return self._connections.get(key)

    def get_active_connections(self) -> list[_scanning.SerialPort]:
        return [conn.port for conn in self._open_connections()]

    @pydantic.validate_call
    def get_buffer_snapshot(self, port: PortRef) -> bytes:
        conn = self.get_connection(port)
        return conn.buffer.snapshot() if conn else b""

    def get_stats(self) -> _stats.Stats:
        return self.stats.snapshot(len(self._open_connections()))

    def tick_rate(self) -> float:
        return self.rate.tick()

    def add_listener(self, listener: _read_loop.Listener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: _read_loop.Listener) -> None:
        with self._lock:
            self._listeners.remove(listener)

    #
    # Internals
    #

    def _resolve(self, port: PortRef) -> _scanning.SerialPort:
        if isinstance(port, _scanning.SerialPort):
            return port
        with self._lock:
            if known := self._known.get(port):
                return known
        return _scanning.SerialPort(name=port, attr={"device": port})

    @contextlib.contextmanager
    def _port_lock(self, key: str):
        with self._lock:
            lock = self._port_locks.setdefault(key, threading.Lock())
        with lock:
            yield

    def _open_connections(self) -> list[Connection]:
        with self._lock:
            conns = list(self._connections.values())
        return [c for c in conns if c.state is ConnectionState.OPEN]

    def _discard_stale(self, key: str) -> None:
        """Waits out a connection whose read loop already ended."""

        with self._lock:
            conn = self._connections.get(key)
        if conn and conn.state is not ConnectionState.OPEN:
            log.debug("Waiting for %s to finish closing", key)
            conn.wait_closed()
            self._forget(conn)

    def _forget(self, conn: Connection) -> None:
        with self._lock:
            if self._connections.get(conn.port.key) is conn:
                del self._connections[conn.port.key]

    def _reclaim(self, conn: Connection) -> None:
        """Runs on the read loop thread after the loop has ended."""

        if not conn.retire():
            return  # disconnect() is already closing it

        exc = conn.loop.exception if conn.loop else None
        log.info("%s connection ended (%s)", conn.port.label, exc)
        try:
            conn.close()
        except _exceptions.SerialCloseException:
            log.warning("Can't close %s", conn.port, exc_info=True)
        finally:
            self._forget(conn)

    def _emit(self, event: _read_loop.MonitorEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                log.warning("Listener failed on %s", event, exc_info=True)
