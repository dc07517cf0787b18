import contextlib
import errno
import logging
import serial
import typing
from typing import Literal

import pydantic

from serialmon import _exceptions
from serialmon import _locking
from serialmon import _scanning

log = logging.getLogger("serialmon.handle")

_PARITY = {
    "none": serial.PARITY_NONE,
    "even": serial.PARITY_EVEN,
    "odd": serial.PARITY_ODD,
}

_STOPBITS = {1: serial.STOPBITS_ONE, 2: serial.STOPBITS_TWO}

# errno values meaning the device itself is gone (unplugged, hung up)
_GONE_ERRNOS = frozenset((errno.EIO, errno.ENXIO, errno.ENODEV, errno.EBADF))


class ConnectionParams(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(frozen=True)

    baud: pydantic.PositiveInt = 115200
    data_bits: Literal[7, 8] = 8
    stop_bits: Literal[1, 2] = 1
    parity: Literal["none", "even", "odd"] = "none"
    flow_control: Literal["none", "hardware"] = "none"
    sharing: _locking.SharingMode = "exclusive"

    @classmethod
    def probe(cls, baud: int) -> "ConnectionParams":
        """Fixed 8N1 framing, no flow control, as used for baud detection"""
        return cls(baud=baud)

    def __str__(self) -> str:
        p = self.parity[0].upper()
        flow = " rtscts" if self.flow_control == "hardware" else ""
        return f"{self.baud} {self.data_bits}{p}{self.stop_bits}{flow}"


@typing.runtime_checkable
class PortHandle(typing.Protocol):
    """One physical serial endpoint that can be opened, read and closed."""

    @property
    def name(self) -> str: ...

    @property
    def is_open(self) -> bool: ...

    def open(self, params: ConnectionParams) -> None: ...

    def close(self) -> None: ...

    def read(self, timeout: float | int | None = None) -> bytes: ...

    def cancel_read(self) -> None: ...

    def identity(self) -> dict[str, str]: ...


class PyserialHandle:
    """PortHandle on top of pyserial, with lock-file/flock exclusivity"""

    def __init__(self, port: _scanning.SerialPort):
        self._port = port
        self._pyserial: serial.Serial | None = None
        self._cleanup = contextlib.ExitStack()

    def __repr__(self) -> str:
        return f"PyserialHandle({self._port.name!r})"

    @property
    def name(self) -> str:
        return self._port.name

    @property
    def is_open(self) -> bool:
        return self._pyserial is not None

    def open(self, params: ConnectionParams) -> None:
        if self._pyserial is not None:
            raise _exceptions.SerialOpenBusy("Handle already open", self.name)

        port = self.name
        with contextlib.ExitStack() as cleanup:
            sharing = params.sharing
            cleanup.enter_context(_locking.using_lock_file(port, sharing))

            log.debug("Opening %s (%s)", port, params)
            try:
                pyserial = cleanup.enter_context(
                    serial.Serial(
                        port=port,
                        baudrate=params.baud,
                        bytesize=params.data_bits,
                        parity=_PARITY[params.parity],
                        stopbits=_STOPBITS[params.stop_bits],
                        rtscts=params.flow_control == "hardware",
                        timeout=None,
                        write_timeout=0.1,
                    )
                )
            except ValueError as ex:
                message = f"Invalid parameters ({params})"
                raise _exceptions.SerialOpenInvalid(message, port) from ex
            except OSError as ex:
                if ex.errno == errno.EBUSY:
                    message = "Serial port busy (EBUSY)"
                    raise _exceptions.SerialOpenBusy(message, port) from ex
                elif ex.errno in (errno.EACCES, errno.EPERM):
                    message = "Serial port permission denied"
                    raise _exceptions.SerialOpenDenied(message, port) from ex
                else:
                    message = "Serial port open error"
                    raise _exceptions.SerialOpenException(message, port) from ex

            if hasattr(pyserial, "fileno"):
                fd = pyserial.fileno()
                cleanup.enter_context(_locking.using_fd_lock(port, fd, sharing))

            self._pyserial = pyserial
            self._cleanup = cleanup.pop_all()

    def close(self) -> None:
        if self._pyserial is None:
            return  # already closed counts as closed

        self._pyserial = None
        try:
            self._cleanup.close()
            log.debug("Closed %s", self.name)
        except OSError as ex:
            message = "Serial port close error"
            raise _exceptions.SerialCloseException(message, self.name) from ex

    def read(self, timeout: float | int | None = None) -> bytes:
        pyserial = self._pyserial
        if pyserial is None:
            raise _exceptions.SerialIoClosed("Serial port is closed", self.name)

        try:
            if pyserial.timeout != timeout:
                pyserial.timeout = timeout

            # Block for at least one byte, then grab all available
            incoming = pyserial.read(size=1)
            if incoming:
                waiting = pyserial.in_waiting
                if waiting > 0:
                    incoming += pyserial.read(size=waiting)
            return bytes(incoming)
        except OSError as ex:
            # pyserial reports hangup as SerialException without errno
            if _is_device_gone(ex) or self._pyserial is None:
                message = "Serial device disconnected"
                raise _exceptions.SerialDeviceGone(message, self.name) from ex
            message = "Serial read error"
            raise _exceptions.SerialIoException(message, self.name) from ex

    def cancel_read(self) -> None:
        if (pyserial := self._pyserial) is not None:
            try:
                pyserial.cancel_read()
                log.debug("Cancelled %s read", self.name)
            except (OSError, AttributeError):
                log.warning("Can't cancel %s read", self.name, exc_info=True)

    def identity(self) -> dict[str, str]:
        keys = ("vid", "pid", "serial_number")
        return {k: v for k, v in self._port.attr.items() if k in keys}


def _is_device_gone(ex: BaseException | None) -> bool:
    # pyserial wraps the errno-bearing OSError in a bare SerialException
    while ex is not None:
        if isinstance(ex, OSError) and ex.errno in _GONE_ERRNOS:
            return True
        if "disconnected" in str(ex) or "returned no data" in str(ex):
            return True
        ex = ex.__cause__ or ex.__context__
    return False
