"""
Error taxonomy for the device link and command pipeline.

Every failure reaching a caller of connect() or a command future is one of
these types. None of them is raised while the canonical state lock is held.
"""

from typing import Optional


class BridgeError(Exception):
    """Base class for all elegoo-bridge errors."""


class PrinterConnectionError(BridgeError, ConnectionError):
    """Socket could not be opened or the handshake did not complete."""


class DeviceUnavailable(BridgeError):
    """The device link dropped mid-session, or no link is open."""


class MalformedMessage(BridgeError):
    """An inbound frame failed to parse or lacks required fields."""


class CommandRejected(BridgeError):
    """The device answered a command with a non-zero result."""

    def __init__(self, cmd: int, error_code: Optional[int] = None):
        self.cmd = cmd
        self.error_code = error_code
        detail = f"Command {cmd} rejected by printer"
        if error_code:
            detail += f" (error code {error_code})"
        super().__init__(detail)


class CommandTimeout(BridgeError):
    """No result arrived for a command within the timeout window."""

    def __init__(self, cmd: int, request_id: str, timeout: float):
        self.cmd = cmd
        self.request_id = request_id
        self.timeout = timeout
        super().__init__(f"Command {cmd} ({request_id}) timed out after {timeout:.1f}s")


class ReconnectExhausted(BridgeError):
    """A bounded reconnect policy ran out of attempts."""

    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(f"Gave up after {attempts} reconnect attempts")
