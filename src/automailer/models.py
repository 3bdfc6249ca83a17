from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class StatementRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    created_at: datetime
    cursor_id: str

    # Populated by StatementSync.download(); never logged.
    raw_document: bytes = Field(default=b"", repr=False)

    def log_context(self) -> dict[str, str]:
        return {
            "id": self.id,
            "created_at": self.created_at.isoformat(),
            "cursor_id": self.cursor_id,
        }


class ChannelResult(BaseModel):
    channel: str
    ok: bool
    error: Optional[str] = None
    status_code: Optional[int] = None


class DeliveryReport(BaseModel):
    record_id: str = ""
    results: list[ChannelResult] = Field(default_factory=list)

    @property
    def attempted(self) -> list[str]:
        return [r.channel for r in self.results]

    @property
    def failed(self) -> list[ChannelResult]:
        return [r for r in self.results if not r.ok]

    @property
    def ok(self) -> bool:
        return not self.failed
