import dataclasses
import json
import logging
import natsort
import os
import pathlib
import typing
from serial.tools import list_ports
from serial.tools import list_ports_common

from serialmon import _exceptions

log = logging.getLogger("serialmon.scanning")

SCAN_OVERRIDE_ENV = "SERIALMON_SCAN_OVERRIDE"


@dataclasses.dataclass(frozen=True)
class SerialPort:
    """What we know about a potentially available serial port on the system"""

    name: str
    attr: dict[str, str]

    def __str__(self):
        return self.name

    @property
    def key(self) -> str:
        """Identity across rescans; attributes may change, the path does not"""
        return self.name

    @property
    def vid(self) -> int | None:
        return _int_attr(self.attr.get("vid"))

    @property
    def pid(self) -> int | None:
        return _int_attr(self.attr.get("pid"))

    @property
    def serial_number(self) -> str | None:
        return self.attr.get("serial_number") or None

    @property
    def label(self) -> str:
        if name := self.attr.get("product") or self.serial_number:
            return name
        if self.vid is not None and self.pid is not None:
            return f"VID:{self.vid} PID:{self.pid}"
        return self.name


def scan_serial_ports() -> list[SerialPort]:
    """Returns a list of serial ports found on the current system"""

    if ov := os.getenv(SCAN_OVERRIDE_ENV):
        try:
            ov_data = json.loads(pathlib.Path(ov).read_text())
            if not isinstance(ov_data, dict) or not all(
                isinstance(attr, dict)
                and all(isinstance(aval, str) for aval in attr.values())
                for attr in ov_data.values()
            ):
                raise ValueError("Override data is not a dict of dicts")
        except (OSError, ValueError) as ex:
            msg = f"Can't read ${SCAN_OVERRIDE_ENV} {ov}"
            raise _exceptions.SerialScanException(msg) from ex

        out = [SerialPort(name=p, attr=a) for p, a in ov_data.items()]
        log.debug("$%s (%s): %d ports", SCAN_OVERRIDE_ENV, ov, len(out))
    else:
        try:
            ports = list_ports.comports()
        except OSError as ex:
            raise _exceptions.SerialScanException("Can't scan serial") from ex

        out = [_convert_port(p) for p in ports]

    out.sort(key=natsort.natsort_keygen(key=lambda p: p.name, alg=natsort.ns.P))
    log.debug("Found %d ports", len(out))
    return out


@typing.runtime_checkable
class PortScanner(typing.Protocol):
    """Source of ports the current user may open"""

    def list_authorized_ports(self) -> list[SerialPort]: ...

    def request_port_access(self, name: str) -> SerialPort: ...


class SystemPortScanner:
    """
    Port discovery and access checks against the local system. There is
    no permission prompt on a desktop OS, so "requesting access" means
    verifying that this process may open the device.
    """

    def list_authorized_ports(self) -> list[SerialPort]:
        return scan_serial_ports()

    def request_port_access(self, name: str) -> SerialPort:
        for port in self.list_authorized_ports():
            if port.name == name:
                break
        else:
            if not os.path.exists(name):
                raise _exceptions.SerialScanException("No such device", name)
            port = SerialPort(name=name, attr={"device": name})

        if os.path.exists(name) and not os.access(name, os.R_OK | os.W_OK):
            message = "Permission denied (check group membership)"
            raise _exceptions.SerialOpenDenied(message, name)

        return port


def _convert_port(p: list_ports_common.ListPortInfo) -> SerialPort:
    _NA = (None, "", "n/a")
    attr = {k.lower(): str(v) for k, v in vars(p).items() if v not in _NA}
    return SerialPort(name=p.device, attr=attr)


def _int_attr(value: str | None) -> int | None:
    try:
        return int(value, 0) if value else None
    except ValueError:
        return None
