"""
Baud rate detection: open a port at successive candidate rates with
8N1 framing, sample a few reads, and accept the first rate whose data
looks like printable text. This is a heuristic; mostly-binary protocols
will not be recognized.
"""

import dataclasses
import logging
import typing

import pydantic

from serialmon import _exceptions
from serialmon import _handle
from serialmon import _scanning
from serialmon import _timeout_math

log = logging.getLogger("serialmon.prober")

# Most likely first
COMMON_BAUD_RATES = (
    115200, 9600, 57600, 38400, 19200, 4800, 2400, 1200,
    230400, 460800, 921600, 256000, 128000, 76800, 14400, 31250,
)  # fmt: skip

UNCOMMON_BAUD_RATES = (
    3000000, 2000000, 1500000, 1000000, 7200, 1800, 600, 300,
)  # fmt: skip

PREVIEW_LEN = 16


class ProbeOptions(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(frozen=True)

    read_timeout: float = pydantic.Field(0.2, gt=0)
    read_attempts: pydantic.PositiveInt = 3
    sample_size: pydantic.PositiveInt = 256
    common_bauds: tuple[pydantic.PositiveInt, ...] = COMMON_BAUD_RATES
    uncommon_bauds: tuple[pydantic.PositiveInt, ...] = UNCOMMON_BAUD_RATES


@dataclasses.dataclass(frozen=True)
class ProbeResult:
    baud: int | None = None
    sample: bytes | None = None

    @property
    def found(self) -> bool:
        return self.baud is not None

    def preview(self) -> str:
        """Printable rendering of the start of the sample"""

        if not self.sample:
            return ""
        text = "".join(
            chr(b) if 32 <= b <= 126 else "." for b in self.sample[:PREVIEW_LEN]
        )
        return text + (" ..." if len(self.sample) > PREVIEW_LEN else "")


def is_plausible(sample: bytes) -> bool:
    """True if at least a third (and at least 2) of the bytes are printable"""

    printable = sum(1 for b in sample if 32 <= b <= 126)
    return printable >= max(2, len(sample) / 3)


class BaudProber:
    def __init__(
        self,
        opener: typing.Callable[[_scanning.SerialPort], _handle.PortHandle],
        opts: ProbeOptions = ProbeOptions(),
    ):
        self._opener = opener
        self._opts = opts

    def __repr__(self) -> str:
        return f"BaudProber(opts={self._opts!r})"

    def candidates(self) -> list[int]:
        return [*self._opts.common_bauds, *self._opts.uncommon_bauds]

    def detect(self, port: _scanning.SerialPort) -> ProbeResult:
        """Tries candidates one at a time; never leaves the port open."""

        log.info("Detecting baud rate of %s", port)
        tiers = (
            ("common", self._opts.common_bauds),
            ("uncommon", self._opts.uncommon_bauds),
        )
        for tier, bauds in tiers:
            log.debug("Trying %d %s baud rates", len(bauds), tier)
            for baud in bauds:
                if (sample := self._try_baud(port, baud)) is not None:
                    result = ProbeResult(baud=baud, sample=sample)
                    log.info("%s: %d baud (%r)", port, baud, result.preview())
                    return result

        log.info("%s: No plausible baud rate found", port)
        return ProbeResult()

    def _try_baud(self, port: _scanning.SerialPort, baud: int) -> bytes | None:
        handle = self._opener(port)
        try:
            handle.open(_handle.ConnectionParams.probe(baud))
        except _exceptions.SerialOpenException as exc:
            log.debug("Can't open %s at %d baud (%s)", port, baud, exc)
            return None

        try:
            for attempt in range(self._opts.read_attempts):
                sample = self._sample(handle)
                if sample and is_plausible(sample):
                    return sample
                log.debug(
                    "%s @%d #%d: %db implausible",
                    port,
                    baud,
                    attempt + 1,
                    len(sample),
                )
            return None
        except _exceptions.SerialIoException as exc:
            log.debug("Read failed on %s at %d baud (%s)", port, baud, exc)
            return None
        finally:
            try:
                handle.close()
            except _exceptions.SerialCloseException:
                log.warning("Can't close %s after probe", port, exc_info=True)

    def _sample(self, handle: _handle.PortHandle) -> bytes:
        """Gathers bytes for one whole read window, up to sample_size"""

        deadline = _timeout_math.to_deadline(self._opts.read_timeout)
        sample = b""
        while len(sample) < self._opts.sample_size:
            wait = _timeout_math.from_deadline(deadline)
            if wait <= 0:
                break
            incoming = handle.read(timeout=wait)
            if not incoming:
                break  # quiet for the rest of the window
            sample += incoming
        return sample[: self._opts.sample_size]
