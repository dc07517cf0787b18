"""Exception hierarchy for serialmon"""


class SerialException(OSError):
    def __init__(
        self,
        message: str,
        port: str | None = None,
    ):
        super().__init__(f"{port}: {message}" if port else message)
        self.port = port


class SerialOpenException(SerialException):
    pass


class SerialOpenBusy(SerialOpenException):
    pass


class SerialOpenDenied(SerialOpenException):
    pass


class SerialOpenInvalid(SerialOpenException):
    pass


class SerialAlreadyConnected(SerialOpenException):
    pass


class SerialIoException(SerialException):
    pass


class SerialIoClosed(SerialIoException):
    pass


class SerialDeviceGone(SerialIoException):
    pass


class SerialCloseException(SerialException):
    pass


class SerialScanException(SerialException):
    pass


class SerialProbeExhausted(SerialException):
    pass
