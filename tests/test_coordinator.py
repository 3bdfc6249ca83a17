from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import pytest
import yaml

from automailer.config import load_config
from automailer.coordinator import RunCoordinator, RunPhase
from automailer.delivery.dispatcher import DeliveryDispatcher
from automailer.errors import AuthError, PersistenceError
from automailer.models import StatementRecord
from automailer.portal.client import PortalCredentials, PortalSession
from automailer.portal.statements import select_new

from helpers import PORTAL_URL, FakeProvider


NOW = datetime(2023, 1, 10, tzinfo=timezone.utc)

CONFIG = """\
portal:
  base_url: "https://acme.clientsecure.me"
  email: "me@example.com"
  password: "p"
clicksend:
  username: "u"
  api_key: "k"
channels:
  email:
    enabled: {email}
    from:
      id: 42
    to:
      email: "claims@insurer.example"
  letter:
    enabled: {letter}
    name: "Claims Dept"
    line1: "PO Box 1"
    city: "Springfield"
    postal_code: "62701"
state:
{state}
"""


def _write_config(
    tmp_path: Path,
    *,
    email: bool = True,
    letter: bool = False,
    last_date: Optional[str] = "2023-01-01T00:00:00.000Z",
    strategy: str = "run_time",
) -> Path:
    state = f"  watermark_strategy: {strategy}\n"
    if last_date:
        state += f'  last_date: "{last_date}"\n'
    p = tmp_path / "config.yaml"
    p.write_text(
        CONFIG.format(email=str(email).lower(), letter=str(letter).lower(), state=state.rstrip("\n")),
        encoding="utf-8",
    )
    return p


class FakePortal:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.logins: List[PortalCredentials] = []

    def login(self, creds: PortalCredentials) -> PortalSession:
        self.logins.append(creds)
        if self.fail:
            raise AuthError("Portal login failed (POST sign_in).", status_code=401)
        return PortalSession(base_url=PORTAL_URL)


class FakeSync:
    def __init__(self, records: List[StatementRecord]) -> None:
        self.records = records
        self.watermarks: List[datetime] = []

    def fetch_new(self, session: PortalSession, watermark: datetime) -> List[StatementRecord]:
        self.watermarks.append(watermark)
        return select_new(self.records, watermark)


class FakeComposer:
    def __init__(self) -> None:
        self.composed: List[bytes] = []

    def compose(self, statement_pdf: bytes) -> bytes:
        self.composed.append(statement_pdf)
        return b"%PDF-composed " + statement_pdf


def _records() -> List[StatementRecord]:
    def rec(item_id: str, day: int, month: int = 1, year: int = 2023) -> StatementRecord:
        return StatementRecord(
            id=item_id,
            created_at=datetime(year, month, day, tzinfo=timezone.utc),
            cursor_id=f"cur-{item_id}",
            raw_document=f"statement-{item_id}-body".encode(),
        )

    return [rec("a", 31, month=12, year=2022), rec("b", 2), rec("c", 3)]


def _coordinator(
    cfg_path: Path,
    *,
    provider: Optional[FakeProvider] = None,
    portal: Optional[FakePortal] = None,
    composer: Optional[FakeComposer] = None,
    dry_run: bool = False,
    output_dir: Optional[Path] = None,
) -> RunCoordinator:
    cfg = load_config(cfg_path)
    dispatcher = None
    if provider is not None:
        dispatcher = DeliveryDispatcher(provider, fail_fast=cfg.delivery.fail_fast)
    return RunCoordinator(
        cfg,
        config_path=cfg_path,
        portal=portal or FakePortal(),  # type: ignore[arg-type]
        composer=composer or FakeComposer(),  # type: ignore[arg-type]
        dispatcher=dispatcher,
        sync=FakeSync(_records()),  # type: ignore[arg-type]
        clock=lambda: NOW,
        dry_run=dry_run,
        output_dir=output_dir,
    )


def _persisted_last_date(cfg_path: Path) -> str:
    return yaml.safe_load(cfg_path.read_text(encoding="utf-8"))["state"]["last_date"]


def test_new_statements_are_delivered_in_order_and_watermark_committed(tmp_path: Path) -> None:
    cfg_path = _write_config(tmp_path)
    provider = FakeProvider()
    composer = FakeComposer()

    result = _coordinator(cfg_path, provider=provider, composer=composer).run()

    assert result.exit_code == 0
    assert result.phase is RunPhase.DONE
    assert result.processed == ["b", "c"]
    assert composer.composed == [b"statement-b-body", b"statement-c-body"]
    assert provider.calls == ["send_email", "send_email"]

    assert result.watermark == NOW
    assert _persisted_last_date(cfg_path) == "2023-01-10T00:00:00.000Z"
    assert (tmp_path / "config.yaml.bak").exists()


def test_no_new_statements_leaves_config_untouched(tmp_path: Path) -> None:
    cfg_path = _write_config(tmp_path, last_date="2023-01-05T00:00:00.000Z")
    before = cfg_path.read_text(encoding="utf-8")
    provider = FakeProvider()

    result = _coordinator(cfg_path, provider=provider).run()

    assert result.exit_code == 0
    assert result.phase is RunPhase.DONE
    assert result.processed == []
    assert provider.calls == []
    assert cfg_path.read_text(encoding="utf-8") == before
    assert not (tmp_path / "config.yaml.bak").exists()


def test_missing_watermark_starts_from_now(tmp_path: Path) -> None:
    cfg_path = _write_config(tmp_path, last_date=None)
    provider = FakeProvider()
    coordinator = _coordinator(cfg_path, provider=provider)

    result = coordinator.run()

    assert result.exit_code == 0
    assert coordinator.sync.watermarks == [NOW]  # type: ignore[attr-defined]
    assert provider.calls == []


def test_delivery_failure_aborts_run_without_committing(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)
    cfg_path = _write_config(tmp_path, email=False, letter=True)
    before = cfg_path.read_text(encoding="utf-8")
    provider = FakeProvider(fail={"send_letter"})
    coordinator = _coordinator(cfg_path, provider=provider)

    result = coordinator.run()

    assert result.exit_code == 1
    assert result.phase is RunPhase.FAILED
    assert result.failed_in is RunPhase.PROCESSING_ITEMS
    assert result.processed == []
    assert result.error is not None and result.error.record_id == "b"
    # Statement c is never attempted once b fails.
    assert provider.calls == ["upload_file", "get_return_address", "price_letter", "send_letter"]
    assert cfg_path.read_text(encoding="utf-8") == before

    assert "record_id=b" in caplog.text
    assert "statement-b-body" not in caplog.text


def test_login_failure_delivers_nothing(tmp_path: Path) -> None:
    cfg_path = _write_config(tmp_path)
    provider = FakeProvider()
    coordinator = _coordinator(cfg_path, provider=provider, portal=FakePortal(fail=True))

    result = coordinator.run()

    assert result.exit_code == 1
    assert result.failed_in is RunPhase.AUTHENTICATING
    assert isinstance(result.error, AuthError)
    assert coordinator.sync.watermarks == []  # type: ignore[attr-defined]
    assert provider.calls == []


def test_persistence_failure_has_its_own_exit_code(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    cfg_path = _write_config(tmp_path)
    provider = FakeProvider()

    def fail_save(*_args: object, **_kwargs: object) -> None:
        raise PersistenceError("disk full")

    monkeypatch.setattr("automailer.coordinator.save_watermark", fail_save)

    result = _coordinator(cfg_path, provider=provider).run()

    assert result.exit_code == 2
    assert result.failed_in is RunPhase.COMMITTING
    # Deliveries already happened; the next run will repeat them.
    assert provider.calls == ["send_email", "send_email"]


def test_max_created_at_strategy_commits_newest_statement_time(tmp_path: Path) -> None:
    cfg_path = _write_config(tmp_path, strategy="max_created_at")

    result = _coordinator(cfg_path, provider=FakeProvider()).run()

    assert result.exit_code == 0
    assert result.watermark == datetime(2023, 1, 3, tzinfo=timezone.utc)
    assert _persisted_last_date(cfg_path) == "2023-01-03T00:00:00.000Z"


def test_dry_run_writes_documents_without_delivering_or_committing(tmp_path: Path) -> None:
    cfg_path = _write_config(tmp_path)
    before = cfg_path.read_text(encoding="utf-8")
    out_dir = tmp_path / "out"

    result = _coordinator(cfg_path, dry_run=True, output_dir=out_dir).run()

    assert result.exit_code == 0
    assert result.processed == ["b", "c"]
    assert (out_dir / "statement_b.pdf").read_bytes() == b"%PDF-composed statement-b-body"
    assert (out_dir / "statement_c.pdf").exists()
    assert cfg_path.read_text(encoding="utf-8") == before


def test_dispatcher_required_outside_dry_run(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        _coordinator(_write_config(tmp_path))


def test_dry_run_never_uses_a_supplied_dispatcher(tmp_path: Path) -> None:
    cfg_path = _write_config(tmp_path)
    before = cfg_path.read_text(encoding="utf-8")
    provider = FakeProvider()

    result = _coordinator(cfg_path, provider=provider, dry_run=True).run()

    assert result.exit_code == 0
    assert result.processed == ["b", "c"]
    assert provider.calls == []
    assert cfg_path.read_text(encoding="utf-8") == before


def test_run_time_watermark_is_read_at_commit(tmp_path: Path) -> None:
    cfg_path = _write_config(tmp_path)
    coordinator = _coordinator(cfg_path, provider=FakeProvider())
    ticks = [datetime(2023, 1, 10, 9, tzinfo=timezone.utc), datetime(2023, 1, 10, 9, 5, tzinfo=timezone.utc)]
    coordinator.clock = lambda: ticks.pop(0) if len(ticks) > 1 else ticks[0]

    result = coordinator.run()

    assert result.exit_code == 0
    assert result.watermark == datetime(2023, 1, 10, 9, 5, tzinfo=timezone.utc)
    assert _persisted_last_date(cfg_path) == "2023-01-10T09:05:00.000Z"
