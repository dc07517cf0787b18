"""
Serial port monitor library: keeps several ports open at once, buffers
what they send, and detects unknown baud rates.
"""

from beartype.claw import beartype_this_package as _beartype_me

# ruff: noqa: E402
_beartype_me()

from serialmon._exceptions import (
    SerialAlreadyConnected,
    SerialCloseException,
    SerialDeviceGone,
    SerialException,
    SerialIoClosed,
    SerialIoException,
    SerialOpenBusy,
    SerialOpenDenied,
    SerialOpenException,
    SerialOpenInvalid,
    SerialProbeExhausted,
    SerialScanException,
)

from serialmon._handle import ConnectionParams, PortHandle, PyserialHandle
from serialmon._locking import SharingMode
from serialmon._prober import (
    COMMON_BAUD_RATES,
    UNCOMMON_BAUD_RATES,
    BaudProber,
    ProbeOptions,
    ProbeResult,
    is_plausible,
)
from serialmon._read_loop import LoopState, MonitorEvent, ReadLoop
from serialmon._registry import (
    BulkResult,
    Connection,
    ConnectionRegistry,
    ConnectionState,
    MonitorOptions,
)
from serialmon._ring_buffer import ByteRingBuffer
from serialmon._scanning import (
    PortScanner,
    SerialPort,
    SystemPortScanner,
    scan_serial_ports,
)
from serialmon._stats import (
    RateEstimator,
    RateSample,
    Stats,
    StatsAggregator,
    format_bytes,
)

__all__ = [n for n in dir() if not n.startswith("_")]
