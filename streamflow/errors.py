"""Errors raised by the orchestration core."""

from __future__ import annotations

from typing import Optional


class OrchestratorError(Exception):
    """Base error; the message is safe to show to a user."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AlreadyLive(OrchestratorError):
    def __init__(self, key: str):
        super().__init__(f"Stream {key} is already live")
        self.key = key


class NoContent(OrchestratorError):
    pass


class SpawnFailed(OrchestratorError):
    pass


class NotFound(OrchestratorError):
    pass


class NotAuthorized(OrchestratorError):
    pass


class CrashDetected(OrchestratorError):
    def __init__(self, key: str, returncode: Optional[int] = None, signal: Optional[int] = None):
        if signal is not None:
            detail = f"signal {signal}"
        else:
            detail = f"exit code {returncode}"
        super().__init__(f"Encoder for {key} crashed ({detail})")
        self.key = key
        self.returncode = returncode
        self.signal = signal


class InvalidRotation(OrchestratorError):
    pass


class RotationActive(OrchestratorError):
    pass


class StreamLive(OrchestratorError):
    pass


class PersistenceError(OrchestratorError):
    pass
