from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Union

from .config import AppConfig
from .delivery.dispatcher import DeliveryDispatcher
from .document import DocumentComposer
from .errors import EXIT_OK, AutomailerError, DeliveryError, PersistenceError
from .logging_config import StatementLogAdapter
from .models import StatementRecord
from .portal.client import PortalClient, PortalCredentials
from .portal.statements import StatementSync
from .state import RunState, save_watermark
from .util.dates import format_timestamp, utc_now


logger = logging.getLogger(__name__)


class RunPhase(str, Enum):
    IDLE = "idle"
    AUTHENTICATING = "authenticating"
    SYNCING = "syncing"
    NO_NEW_ITEMS = "no_new_items"
    PROCESSING_ITEMS = "processing_items"
    COMMITTING = "committing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class RunResult:
    phase: RunPhase = RunPhase.IDLE
    processed: list[str] = field(default_factory=list)
    watermark: Optional[datetime] = None
    error: Optional[AutomailerError] = None
    # Phase the run was in when it failed.
    failed_in: Optional[RunPhase] = None

    @property
    def exit_code(self) -> int:
        if self.error is not None:
            return self.error.exit_code
        return EXIT_OK


class RunCoordinator:
    """
    One run: login, find new statements, compose + deliver each in order, then commit the watermark.

    Precondition: only one run at a time per config artifact. There is no lock; two concurrent
    runs against the same file may both deliver the same statements.
    """

    def __init__(
        self,
        cfg: AppConfig,
        *,
        config_path: Union[str, Path],
        portal: PortalClient,
        composer: DocumentComposer,
        dispatcher: Optional[DeliveryDispatcher],
        sync: Optional[StatementSync] = None,
        clock: Callable[[], datetime] = utc_now,
        dry_run: bool = False,
        output_dir: Optional[Union[str, Path]] = None,
    ) -> None:
        if dispatcher is None and not dry_run:
            raise ValueError("dispatcher is required unless dry_run is set")
        self.cfg = cfg
        self.config_path = Path(config_path)
        self.portal = portal
        self.sync = sync or StatementSync(portal)
        self.composer = composer
        self.dispatcher = dispatcher
        self.clock = clock
        self.dry_run = dry_run
        self.output_dir = Path(output_dir) if output_dir else None

        self.result = RunResult()

    @property
    def phase(self) -> RunPhase:
        return self.result.phase

    def _enter(self, phase: RunPhase) -> None:
        logger.debug("Run phase %s -> %s", self.result.phase.value, phase.value)
        self.result.phase = phase

    def run(self) -> RunResult:
        t0 = time.time()
        state = RunState.from_config(self.cfg)
        try:
            self._run(state)
        except AutomailerError as e:
            self.result.failed_in = self.result.phase
            self.result.error = e
            self._enter(RunPhase.FAILED)
            if isinstance(e, PersistenceError):
                logger.error("Failed to persist state (seconds=%.2f): %s", time.time() - t0, e)
            else:
                ctx = e.context()
                logger.error(
                    "Run failed during %s%s (seconds=%.2f): %s",
                    self.result.failed_in.value,
                    f" ({ctx})" if ctx else "",
                    time.time() - t0,
                    e,
                )
            return self.result

        logger.info(
            "Run finished (processed=%d seconds=%.2f)",
            len(self.result.processed),
            time.time() - t0,
        )
        return self.result

    def _run(self, state: RunState) -> None:
        started_at = self.clock()
        watermark = state.watermark
        if watermark is None:
            logger.info("No watermark recorded yet; only statements created after %s will be picked up", format_timestamp(started_at))
            watermark = started_at

        self._enter(RunPhase.AUTHENTICATING)
        portal_cfg = self.cfg.portal
        session = self.portal.login(
            PortalCredentials(email=portal_cfg.email, password=portal_cfg.password, url_name=portal_cfg.url_name)
        )

        self._enter(RunPhase.SYNCING)
        statements = self.sync.fetch_new(session, watermark)

        if not statements:
            self._enter(RunPhase.NO_NEW_ITEMS)
            logger.info("No new statements")
            self.result.watermark = state.watermark
            self._enter(RunPhase.DONE)
            return

        self._enter(RunPhase.PROCESSING_ITEMS)
        for record in statements:
            self._process(record)
            self.result.processed.append(record.id)

        if self.dry_run:
            logger.info("Dry-run: not committing watermark (would advance past %s)", format_timestamp(watermark))
            self.result.watermark = state.watermark
            self._enter(RunPhase.DONE)
            return

        self._enter(RunPhase.COMMITTING)
        committed = state.advance(self._candidate_watermark(statements))
        if committed.watermark is not None and committed != state:
            save_watermark(self.config_path, committed.watermark)
        self.result.watermark = committed.watermark
        self._enter(RunPhase.DONE)

    def _candidate_watermark(self, statements: list[StatementRecord]) -> datetime:
        if self.cfg.state.watermark_strategy == "max_created_at":
            return max(r.created_at for r in statements)
        return self.clock()

    def _process(self, record: StatementRecord) -> None:
        log = StatementLogAdapter(logger, record.log_context())
        try:
            log.info("Creating template pdf and merging statement")
            document = self.composer.compose(record.raw_document)

            if self.dry_run or self.dispatcher is None:
                self._write_dry_run_output(record, document, log)
                return

            report = self.dispatcher.dispatch(document, self.cfg.channels, record_id=record.id)
            if not report.ok:
                failed = report.failed
                raise DeliveryError(
                    "; ".join(f"{r.channel}: {r.error}" for r in failed),
                    status_code=failed[0].status_code,
                    channel=",".join(r.channel for r in failed),
                )
            log.info("Done (channels=%s)", ",".join(report.attempted) or "none")
        except AutomailerError as e:
            if e.record_id is None:
                e.record_id = record.id
            log.error("Failed to process statement: %s", e)
            raise

    def _write_dry_run_output(self, record: StatementRecord, document: bytes, log: StatementLogAdapter) -> None:
        channels = self.cfg.channels.enabled_names()
        log.info("Dry-run: would deliver %d bytes via %s", len(document), ",".join(channels) or "(no channels enabled)")
        if self.output_dir is None:
            return
        self.output_dir.mkdir(parents=True, exist_ok=True)
        safe_id = "".join(ch if ch.isalnum() or ch in "-_" else "_" for ch in record.id)
        out = self.output_dir / f"statement_{safe_id}.pdf"
        out.write_bytes(document)
        log.info("Dry-run: wrote composed document to %s", out)
