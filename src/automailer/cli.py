from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from .config import AppConfig, load_config
from .coordinator import RunCoordinator
from .delivery.clicksend import ClickSendClient
from .delivery.dispatcher import DeliveryDispatcher
from .document import DateStamp, DocumentComposer
from .errors import EXIT_OK, EXIT_RUN_FAILED, AutomailerError, DeliveryError
from .logging_config import configure_logging
from .portal.client import PortalClient, PortalCredentials
from .portal.statements import StatementSync
from .util.dates import format_timestamp


logger = logging.getLogger("automailer")


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="automailer")
    p.add_argument(
        "--env-file",
        default=".env",
        help="Path to a dotenv file (default: .env). If missing, env vars must already be set.",
    )

    sub = p.add_subparsers(dest="cmd", required=True)

    run = sub.add_parser("run", help="Fetch new statements, compose them and deliver them to the enabled channels")
    run.add_argument("--config", default="config.yaml", help="Path to the config artifact (default: config.yaml)")
    run.add_argument(
        "--dry-run",
        action="store_true",
        help="Login, download and compose, but do not deliver anything or move the watermark",
    )
    run.add_argument(
        "--output-dir",
        default="",
        help="In dry-run mode, write each composed PDF here for inspection.",
    )

    preflight = sub.add_parser(
        "preflight",
        help="Validate configuration, the cover template, portal login and ClickSend credentials. Sends nothing.",
    )
    preflight.add_argument("--config", default="config.yaml", help="Path to the config artifact (default: config.yaml)")
    preflight.add_argument("--skip-portal", action="store_true", help="Skip the portal login check")
    preflight.add_argument("--skip-clicksend", action="store_true", help="Skip the ClickSend account check")

    list_statements = sub.add_parser(
        "list-statements",
        help="Log into the portal and list available statements, marking the ones newer than the watermark.",
    )
    list_statements.add_argument("--config", default="config.yaml", help="Path to the config artifact (default: config.yaml)")
    return p


def _portal_client(cfg: AppConfig) -> PortalClient:
    return PortalClient(base_url=cfg.portal.base_url, timeout_seconds=cfg.portal.timeout_seconds)


def _clicksend_client(cfg: AppConfig) -> ClickSendClient:
    return ClickSendClient(
        username=cfg.clicksend.username,
        api_key=cfg.clicksend.api_key,
        base_url=cfg.clicksend.base_url,
        timeout_seconds=cfg.clicksend.timeout_seconds,
    )


def _composer(cfg: AppConfig) -> DocumentComposer:
    d = cfg.document
    return DocumentComposer(
        d.template_path,
        stamp=DateStamp(
            date_format=d.date_format,
            x_from_right=d.date_x_from_right,
            y=d.date_y,
            font_size=d.font_size,
        ),
    )


def _credentials(cfg: AppConfig) -> PortalCredentials:
    return PortalCredentials(email=cfg.portal.email, password=cfg.portal.password, url_name=cfg.portal.url_name)


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    env_path = Path(args.env_file)
    if env_path.exists():
        load_dotenv(env_path)

    # Default logging: can be overridden once config is loaded.
    configure_logging(level=os.getenv("LOG_LEVEL", "INFO"))

    try:
        cfg = load_config(args.config)
        configure_logging(level=cfg.logging.level, file_path=cfg.logging.file_path)

        if args.cmd == "run":
            return _cmd_run(cfg, args)
        if args.cmd == "preflight":
            return _cmd_preflight(cfg, args)
        if args.cmd == "list-statements":
            return _cmd_list_statements(cfg)
    except AutomailerError as e:
        ctx = e.context()
        logger.error("%s: %s%s", type(e).__name__, e, f" ({ctx})" if ctx else "")
        return e.exit_code
    except Exception:
        logger.exception("Unexpected failure")
        return EXIT_RUN_FAILED

    raise AssertionError("Unhandled command")


def _cmd_run(cfg: AppConfig, args: argparse.Namespace) -> int:
    logger.info("Starting run (dry_run=%s channels=%s)", args.dry_run, ",".join(cfg.channels.enabled_names()) or "none")
    if args.output_dir and not args.dry_run:
        raise SystemExit("--output-dir only applies with --dry-run")

    portal = _portal_client(cfg)
    provider = None if args.dry_run else _clicksend_client(cfg)
    try:
        dispatcher = None
        if provider is not None:
            dispatcher = DeliveryDispatcher(provider, fail_fast=cfg.delivery.fail_fast)
        coordinator = RunCoordinator(
            cfg,
            config_path=args.config,
            portal=portal,
            composer=_composer(cfg),
            dispatcher=dispatcher,
            dry_run=args.dry_run,
            output_dir=args.output_dir or None,
        )
        result = coordinator.run()
    finally:
        portal.close()
        if provider is not None:
            provider.close()

    return result.exit_code


def _cmd_preflight(cfg: AppConfig, args: argparse.Namespace) -> int:
    logger.info("Starting preflight checks")

    # Cover template must load and accept the date stamp.
    composer = _composer(cfg)
    composer.stamp_template()
    logger.info("Template OK (%s)", composer.template_path)

    if not args.skip_portal:
        portal = _portal_client(cfg)
        try:
            session = portal.login(_credentials(cfg))
        finally:
            portal.close()
        logger.info("Portal preflight OK (cookies=%d)", len(session.cookie_names()))

    enabled = cfg.channels.enabled_names()
    if not args.skip_clicksend and enabled:
        client = _clicksend_client(cfg)
        try:
            account = client.get_account()
        except DeliveryError as e:
            raise DeliveryError(
                "ClickSend preflight failed. Check CLICKSEND_USERNAME/CLICKSEND_API_KEY.",
                status_code=e.status_code,
            ) from e
        finally:
            client.close()
        logger.info("ClickSend preflight OK (account=%s)", account.get("username") or account.get("user_id") or "?")
    elif not enabled:
        logger.warning("No delivery channels are enabled; runs will only advance the watermark")

    logger.info("Preflight OK")
    return EXIT_OK


def _cmd_list_statements(cfg: AppConfig) -> int:
    portal = _portal_client(cfg)
    try:
        session = portal.login(_credentials(cfg))
        records = StatementSync(portal).list_statements(session)
    finally:
        portal.close()

    watermark = cfg.state.last_date
    print(f"Watermark: {format_timestamp(watermark) if watermark else '(none)'}")
    if not records:
        print("No statements found.")
        return EXIT_OK

    for r in records:
        is_new = watermark is not None and r.created_at > watermark
        print(f"- {r.id}\t{format_timestamp(r.created_at)}\t{r.cursor_id}\t{'new' if is_new else 'seen'}")
    return EXIT_OK
