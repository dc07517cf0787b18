import contextlib
import io
import json
import ok_logging_setup
import os
import pty
import pytest
import queue
import threading
import time
import typing

import serialmon

ok_logging_setup.install(
    {
        "OK_LOGGING_LEVEL": "serialmon=DEBUG,WARNING",
        "OK_LOGGING_OUTPUT": "stdout",
    }
)


class PseudoTtySerial(typing.NamedTuple):
    path: str
    control: io.FileIO
    simulated: io.FileIO


@pytest.fixture
def pty_serial():
    with contextlib.ExitStack() as cleanup:
        ctrl_fd, sim_fd = pty.openpty()
        path = os.ttyname(sim_fd)
        ctrl = cleanup.enter_context(os.fdopen(ctrl_fd, "r+b", buffering=0))
        sim = cleanup.enter_context(os.fdopen(sim_fd, "r+b", buffering=0))
        yield PseudoTtySerial(path=path, control=ctrl, simulated=sim)


@pytest.fixture
def set_scan_override(monkeypatch, tmp_path):
    path = tmp_path / "scan.json"
    path.write_text("{}")
    monkeypatch.setenv("SERIALMON_SCAN_OVERRIDE", str(path))

    def set_ports(ports: dict[str, dict[str, str]]):
        path.write_text(json.dumps(ports))

    return set_ports


_CANCEL = object()


class FakeHandle:
    """In-memory PortHandle; tests push data or errors with feed()/fail()"""

    def __init__(self, port: serialmon.SerialPort):
        self.port = port
        self.params: serialmon.ConnectionParams | None = None
        self.open_error: Exception | None = None
        self.open_gate: threading.Event | None = None
        self.open_entered = threading.Event()
        self.close_count = 0
        self._incoming: queue.Queue = queue.Queue()
        self._open = False

    @property
    def name(self) -> str:
        return self.port.name

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self, params):
        self.open_entered.set()
        if self.open_gate:
            self.open_gate.wait()
        if self.open_error:
            raise self.open_error
        self.params = params
        self._open = True

    def close(self):
        self.close_count += 1
        self._open = False

    def read(self, timeout=None):
        if not self._open:
            raise serialmon.SerialIoClosed("closed", self.name)
        try:
            item = self._incoming.get(timeout=timeout)
        except queue.Empty:
            return b""
        if item is _CANCEL:
            return b""
        if isinstance(item, Exception):
            raise item
        return item

    def cancel_read(self):
        self._incoming.put(_CANCEL)

    def identity(self):
        return {}

    def feed(self, data: bytes):
        self._incoming.put(data)

    def fail(self, exc: Exception):
        self._incoming.put(exc)


class FakeSystem:
    """Scanner plus opener over a settable list of fake ports"""

    def __init__(self):
        self.ports: list[serialmon.SerialPort] = []
        self.handles: dict[str, FakeHandle] = {}
        self.open_errors: dict[str, Exception] = {}

    def add_port(self, name: str, **attr: str) -> serialmon.SerialPort:
        port = serialmon.SerialPort(name=name, attr={"device": name, **attr})
        self.ports.append(port)
        return port

    def list_authorized_ports(self):
        return list(self.ports)

    def request_port_access(self, name):
        for port in self.ports:
            if port.name == name:
                return port
        raise serialmon.SerialScanException("No such device", name)

    def opener(self, port):
        handle = FakeHandle(port)
        handle.open_error = self.open_errors.get(port.name)
        self.handles[port.name] = handle
        return handle


@pytest.fixture
def fake_system():
    return FakeSystem()


@pytest.fixture
def registry(fake_system):
    opts = serialmon.MonitorOptions(error_backoff=0)
    reg = serialmon.ConnectionRegistry(
        opts, scanner=fake_system, opener=fake_system.opener
    )
    with reg:
        yield reg


def wait_until(condition, timeout=2.0):
    deadline = time.monotonic() + timeout
    while not condition():
        if time.monotonic() > deadline:
            return False
        time.sleep(0.01)
    return True
