from __future__ import annotations

from typing import Optional


EXIT_OK = 0
EXIT_RUN_FAILED = 1
EXIT_PERSISTENCE_FAILED = 2
EXIT_CONFIG_INVALID = 3


class AutomailerError(RuntimeError):
    """
    Base class for every failure that aborts a run.

    Carries optional diagnostic context (HTTP status, statement id, delivery channel) so the
    single top-level handler can log it without reaching into the raw document payload.
    """

    exit_code: int = EXIT_RUN_FAILED

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        record_id: Optional[str] = None,
        channel: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.record_id = record_id
        self.channel = channel

    def context(self) -> str:
        parts = []
        if self.record_id:
            parts.append(f"record_id={self.record_id}")
        if self.channel:
            parts.append(f"channel={self.channel}")
        if self.status_code is not None:
            parts.append(f"status={self.status_code}")
        return " ".join(parts)


class AuthError(AutomailerError):
    """Login handshake or session establishment against the portal failed."""


class FetchError(AutomailerError):
    """Statement listing or statement download failed."""


class DocumentError(AutomailerError):
    """Stamping the cover page or merging documents failed."""


class DeliveryError(AutomailerError):
    """A delivery channel (email, letter, SMS) failed."""


class PersistenceError(AutomailerError):
    exit_code = EXIT_PERSISTENCE_FAILED


class ConfigError(AutomailerError):
    exit_code = EXIT_CONFIG_INVALID
