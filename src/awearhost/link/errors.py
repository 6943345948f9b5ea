from __future__ import annotations

from typing import Optional


class LinkError(Exception):
    """Base class for failures raised by the serial link layer."""


class ProbeError(LinkError):
    def __init__(self, port: str, message: str = "") -> None:
        super().__init__(f"{port}: {message}" if message else port)
        self.port = port


class TransientOpenFailure(ProbeError):
    """Port could not be opened (busy or already claimed). Retry on a later scan."""


class ConfigurationFailure(ProbeError):
    """Hardware rejected the requested line parameters."""


class ProbeTimeout(ProbeError):
    """No handshake was recognised within the probe window."""


class ProbeCancelled(ProbeError):
    """The port disappeared while the probe was still running."""


class StreamFault(LinkError):
    def __init__(self, port: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(f"{port}: {cause}" if cause is not None else f"{port}: end of stream")
        self.port = port
        self.cause = cause


class PairingError(LinkError):
    pass
