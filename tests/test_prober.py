"""Unit tests for serialmon._prober."""

import threading
import time

import pytest

import serialmon
from serialmon import _prober

TEXT = b"temp=21.5C hum=40%\r\n"
GARBAGE = b"\x80\xfe\x00\x13\x9f\xff\x01\xc3\x88"


class SimulatedDevice:
    """A device that talks at one baud rate and is noise at all others"""

    def __init__(self, baud: int | None, reply: bytes = TEXT):
        self.baud = baud
        self.reply = reply
        self.tried: list[int] = []
        self.reads: list[int] = []
        self.open_handles = 0
        self.max_open_handles = 0
        self.reject: set[int] = set()

    def opener(self, port):
        return _SimulatedHandle(self, port)


class _SimulatedHandle:
    def __init__(self, device: SimulatedDevice, port: serialmon.SerialPort):
        self.device = device
        self.port = port
        self.baud: int | None = None
        self.quiet = True

    @property
    def name(self):
        return self.port.name

    @property
    def is_open(self):
        return self.baud is not None

    def open(self, params):
        assert (params.data_bits, params.stop_bits) == (8, 1)
        assert (params.parity, params.flow_control) == ("none", "none")
        self.device.tried.append(params.baud)
        if params.baud in self.device.reject:
            raise serialmon.SerialOpenInvalid("bad baud", self.name)
        self.baud = params.baud
        self.quiet = True
        self.device.open_handles += 1
        self.device.max_open_handles = max(
            self.device.max_open_handles, self.device.open_handles
        )

    def close(self):
        if self.baud is not None:
            self.baud = None
            self.device.open_handles -= 1

    def read(self, timeout=None):
        # one burst per window, then silence until the window ends
        assert 0 < timeout <= 0.2
        self.device.reads.append(self.baud)
        self.quiet = not self.quiet
        if self.quiet:
            return b""
        return self.device.reply if self.baud == self.device.baud else GARBAGE

    def cancel_read(self):
        pass

    def identity(self):
        return {}


PORT = serialmon.SerialPort(name="/dev/ttySIM", attr={})


def test_tier_ordering_stops_at_57600():
    device = SimulatedDevice(baud=57600)
    result = serialmon.BaudProber(device.opener).detect(PORT)

    assert result == serialmon.ProbeResult(baud=57600, sample=TEXT)
    assert result.found
    assert device.tried == [115200, 9600, 57600]
    assert not set(device.tried) & set(serialmon.UNCOMMON_BAUD_RATES)
    assert device.open_handles == 0


def test_three_windows_per_failed_candidate():
    device = SimulatedDevice(baud=9600)
    serialmon.BaudProber(device.opener).detect(PORT)
    assert device.reads == [115200] * 6 + [9600] * 2


def test_tier_two_after_tier_one():
    device = SimulatedDevice(baud=1800)
    result = serialmon.BaudProber(device.opener).detect(PORT)

    assert result.baud == 1800
    tier1 = list(serialmon.COMMON_BAUD_RATES)
    assert device.tried[: len(tier1)] == tier1
    assert device.tried[len(tier1) :] == [
        3000000, 2000000, 1500000, 1000000, 7200, 1800
    ]


def test_exhausted_returns_empty_result():
    device = SimulatedDevice(baud=None)
    prober = serialmon.BaudProber(device.opener)
    result = prober.detect(PORT)

    assert result == serialmon.ProbeResult(baud=None, sample=None)
    assert not result.found
    assert device.tried == prober.candidates()
    assert len(device.tried) == 24
    assert device.open_handles == 0
    assert device.max_open_handles == 1


def test_open_failures_are_skipped():
    device = SimulatedDevice(baud=57600)
    device.reject = {115200, 9600}
    result = serialmon.BaudProber(device.opener).detect(PORT)

    assert result.baud == 57600
    assert device.tried == [115200, 9600, 57600]
    assert device.reads == [57600, 57600]


def test_read_errors_move_on_and_close():
    closed = []

    class FailingHandle(_SimulatedHandle):
        def read(self, timeout=None):
            if self.baud == 115200:
                raise serialmon.SerialIoException("glitch", self.name)
            return super().read(timeout)

        def close(self):
            closed.append(self.baud)
            super().close()

    device = SimulatedDevice(baud=9600)
    prober = serialmon.BaudProber(lambda port: FailingHandle(device, port))
    assert prober.detect(PORT).baud == 9600
    assert closed == [115200, 9600]


def test_binary_protocol_is_not_detected():
    device = SimulatedDevice(baud=115200, reply=GARBAGE)
    assert not serialmon.BaudProber(device.opener).detect(PORT).found


def test_custom_candidates():
    device = SimulatedDevice(baud=250000)
    opts = serialmon.ProbeOptions(common_bauds=(250000,), uncommon_bauds=())
    prober = serialmon.BaudProber(device.opener, opts)
    assert prober.candidates() == [250000]
    assert prober.detect(PORT).baud == 250000


def test_trickling_device_is_sampled_per_window():
    class TricklingHandle(_SimulatedHandle):
        def open(self, params):
            super().open(params)
            self.pending = TEXT

        def read(self, timeout=None):
            assert 0 < timeout <= 0.2
            self.device.reads.append(self.baud)
            if self.baud != self.device.baud:
                return b""
            chunk, self.pending = self.pending[:1], self.pending[1:]
            return chunk

    device = SimulatedDevice(baud=9600)
    prober = serialmon.BaudProber(lambda port: TricklingHandle(device, port))
    result = prober.detect(PORT)

    assert result == serialmon.ProbeResult(baud=9600, sample=TEXT)
    assert device.reads.count(9600) == len(TEXT) + 1


def test_sample_size_caps_window():
    class FloodingHandle(_SimulatedHandle):
        def read(self, timeout=None):
            return b"abcdefgh"

    device = SimulatedDevice(baud=None)
    opts = serialmon.ProbeOptions(sample_size=20)
    prober = serialmon.BaudProber(lambda p: FloodingHandle(device, p), opts)
    assert prober.detect(PORT).sample == b"abcdefghabcdefghabcd"


@pytest.mark.parametrize(
    "sample, plausible",
    [
        (b"abc\x00\x00\x00\x00\x00\x00", True),  # 3 of 9 printable
        (b"ab\x00\x00\x00\x00\x00\x00\x00", False),  # 2 of 9
        (b"ok", True),
        (b"k", False),  # fewer than 2 printable
        (b"", False),
        (b"\x7f\x1f~ ", True),  # 126 and 32 are printable; 127, 31 not
        (b"\x7f\x1f\x7f\x1f~", False),
    ],
)
def test_is_plausible(sample, plausible):
    assert serialmon.is_plausible(sample) is plausible


def test_preview():
    assert serialmon.ProbeResult().preview() == ""
    short = serialmon.ProbeResult(baud=9600, sample=b"OK\r\n")
    assert short.preview() == "OK.."
    long = serialmon.ProbeResult(baud=9600, sample=b"0123456789abcdefXYZ")
    assert long.preview() == "0123456789abcdef ..."


#
# Against a real pseudo-terminal
#


def test_detect_on_pty(pty_serial):
    stop = threading.Event()

    def chatter():
        while not stop.is_set():
            pty_serial.control.write(b"hello from device\r\n")
            time.sleep(0.02)

    port = serialmon.SerialPort(name=pty_serial.path, attr={})
    writer = threading.Thread(target=chatter)
    writer.start()
    try:
        result = _prober.BaudProber(serialmon.PyserialHandle).detect(port)
    finally:
        stop.set()
        writer.join()

    assert result.baud == 115200
    assert serialmon.is_plausible(result.sample)


def test_detect_trickling_pty(pty_serial):
    stop = threading.Event()

    def trickle():
        while not stop.is_set():
            for byte in b"hello from device\r\n":
                pty_serial.control.write(bytes([byte]))
                time.sleep(0.005)

    port = serialmon.SerialPort(name=pty_serial.path, attr={})
    opts = serialmon.ProbeOptions(
        common_bauds=(115200, 9600), uncommon_bauds=()
    )
    writer = threading.Thread(target=trickle)
    writer.start()
    try:
        prober = serialmon.BaudProber(serialmon.PyserialHandle, opts)
        result = prober.detect(port)
    finally:
        stop.set()
        writer.join()

    assert result.baud == 115200
    assert len(result.sample) > 2
    assert serialmon.is_plausible(result.sample)
