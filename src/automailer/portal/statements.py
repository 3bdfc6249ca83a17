from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable, Optional
from urllib.parse import quote

import requests

from ..errors import FetchError
from ..models import StatementRecord
from ..util.dates import ensure_aware, format_timestamp, parse_timestamp
from .client import OK_STATUSES, PortalClient, PortalSession
from .endpoints import PortalEndpoints


logger = logging.getLogger(__name__)

_PDF_MAGIC = b"%PDF-"


def select_new(records: Iterable[StatementRecord], watermark: datetime) -> list[StatementRecord]:
    """Keep records created strictly after `watermark`, in their original order."""
    cutoff = ensure_aware(watermark)
    return [r for r in records if r.created_at > cutoff]


def _parse_listing_item(item: Any) -> StatementRecord:
    if not isinstance(item, dict):
        raise ValueError(f"unexpected listing item: {type(item).__name__}")
    attrs = item.get("attributes") or {}
    created_raw = attrs.get("createdAt")
    cursor_id = attrs.get("cursorId")
    if not created_raw:
        raise ValueError(f"statement {item.get('id')!r} has no createdAt")
    if not cursor_id:
        raise ValueError(f"statement {item.get('id')!r} has no cursorId")
    return StatementRecord(
        id=str(item.get("id") or cursor_id),
        created_at=parse_timestamp(created_raw),
        cursor_id=str(cursor_id),
    )


class StatementSync:
    def __init__(self, portal: PortalClient, endpoints: Optional[PortalEndpoints] = None) -> None:
        self.portal = portal
        self.endpoints = endpoints or portal.endpoints

    def list_statements(self, session: PortalSession) -> list[StatementRecord]:
        ep = self.endpoints
        logger.info("Fetching statements")
        try:
            resp = self.portal.get(
                session,
                ep.billing_items_path,
                headers=ep.api_headers(),
                params=ep.statement_listing_params(),
            )
        except requests.RequestException as e:
            raise FetchError(f"failed to get statements: {e}") from e

        if resp.status_code not in OK_STATUSES:
            raise FetchError(
                f"failed to get statements, got unexpected status code: {resp.status_code}",
                status_code=resp.status_code,
            )

        try:
            payload = resp.json()
            items = payload.get("data") if isinstance(payload, dict) else None
            if not isinstance(items, list):
                raise ValueError("listing response has no 'data' list")
            records = [_parse_listing_item(item) for item in items]
        except ValueError as e:
            raise FetchError(f"failed to parse statements listing: {e}", status_code=resp.status_code) from e

        # The browser app sets this before any billing download; mirror it.
        session.set_cookie(ep.redirect_target_cookie, ep.redirect_target)

        logger.info("Found %d statements", len(records))
        return records

    def download_path(self, record: StatementRecord) -> str:
        return f"{self.endpoints.billing_items_path}/{quote(record.cursor_id, safe='')}.pdf"

    def download(self, session: PortalSession, record: StatementRecord) -> StatementRecord:
        path = self.download_path(record)
        logger.info("Downloading statement pdf (id=%s path=%s)", record.id, path)
        try:
            resp = self.portal.get(session, path, headers=self.endpoints.api_headers())
        except requests.RequestException as e:
            raise FetchError(f"failed to download statement: {e}", record_id=record.id) from e

        if resp.status_code not in OK_STATUSES:
            raise FetchError(
                f"failed to download statement, got unexpected status code: {resp.status_code}",
                status_code=resp.status_code,
                record_id=record.id,
            )

        # Always the raw body; decoding it as text corrupts the PDF.
        content = resp.content or b""
        if not content.startswith(_PDF_MAGIC):
            content_type = resp.headers.get("Content-Type", "") if resp.headers else ""
            raise FetchError(
                f"statement download is not a PDF (content-type={content_type!r}, bytes={len(content)})",
                status_code=resp.status_code,
                record_id=record.id,
            )
        return record.model_copy(update={"raw_document": content})

    def fetch_new(self, session: PortalSession, watermark: datetime) -> list[StatementRecord]:
        records = self.list_statements(session)
        new = select_new(records, watermark)
        logger.info("Found %d new statements, last check was %s", len(new), format_timestamp(watermark))
        return [self.download(session, r) for r in new]
