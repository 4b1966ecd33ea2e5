"""Exception hierarchy for the Tesy bridge.

Poll-path errors are logged by their callers and never change state, broker
errors never end the session, and only ``QueueFullError`` (or a
``TransportError`` raised by an immediate send) reaches a command issuer.
"""

from __future__ import annotations


class TesyBridgeError(Exception):
    """Base class for all bridge errors."""


class TransportError(TesyBridgeError):
    """Network failure talking to the cloud directory or the broker.

    Attributes:
        reason: Specific failure reason
        status: HTTP status when the failure came from an HTTP response

    """

    def __init__(self, reason: str, status: int | None = None) -> None:
        """Initialize transport error with reason and optional HTTP status."""
        self.reason: str = reason
        self.status: int | None = status
        msg = f"Transport error: {reason}"
        if status is not None:
            msg = f"{msg} (HTTP {status})"
        super().__init__(msg)


class DirectoryTimeoutError(TransportError):
    """The directory request did not complete within the configured bound.

    Attributes:
        timeout: The bound that was exceeded, in seconds

    """

    def __init__(self, timeout: float) -> None:
        """Initialize timeout error with the exceeded bound."""
        self.timeout: float = timeout
        super().__init__(f"directory request timed out after {timeout}s")


class DirectoryParseError(TesyBridgeError):
    """The directory returned a body that is not a JSON object."""

    def __init__(self, reason: str) -> None:
        """Initialize parse error with reason."""
        self.reason: str = reason
        super().__init__(f"Directory parse failed: {reason}")


class DeviceNotFoundError(TesyBridgeError):
    """A device id or MAC address is not known.

    Attributes:
        device: The id or MAC that could not be resolved

    """

    def __init__(self, device: str | int) -> None:
        """Initialize not-found error with the missing device key."""
        self.device: str | int = device
        super().__init__(f"Device not found: {device}")


class NotConnectedError(TesyBridgeError):
    """The broker session closed before a queued command could be sent.

    Attributes:
        state: Session state when the error occurred

    """

    def __init__(self, state: str = "unknown") -> None:
        """Initialize not-connected error with session state."""
        self.state: str = state
        super().__init__(f"Broker session not connected (state: {state})")


class QueueFullError(TesyBridgeError):
    """The outbound command queue is at capacity.

    Attributes:
        capacity: Queue capacity that was reached

    """

    def __init__(self, capacity: int) -> None:
        """Initialize queue-full error with the capacity reached."""
        self.capacity: int = capacity
        super().__init__(f"Outbound queue full ({capacity} pending commands)")


class ConfigError(TesyBridgeError):
    """Configuration is missing or invalid."""
