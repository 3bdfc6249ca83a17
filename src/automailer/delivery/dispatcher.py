from __future__ import annotations

import base64
import logging
from typing import Any, Callable, Dict, List, Mapping, Protocol

import requests

from ..config import ChannelsConfig, EmailChannelConfig, LetterChannelConfig, SmsChannelConfig
from ..errors import DeliveryError
from ..models import ChannelResult, DeliveryReport


logger = logging.getLogger(__name__)


class DeliveryProvider(Protocol):
    def send_email(self, email: Mapping[str, Any]) -> Dict[str, Any]: ...

    def upload_file(self, content: bytes, *, convert: str = "post") -> str: ...

    def get_return_address(self) -> Dict[str, Any]: ...

    def price_letter(self, letter: Mapping[str, Any]) -> Dict[str, Any]: ...

    def send_letter(self, letter: Mapping[str, Any]) -> Dict[str, Any]: ...

    def send_sms(self, messages: List[Mapping[str, Any]]) -> Dict[str, Any]: ...


def build_email(document: bytes, cfg: EmailChannelConfig) -> Dict[str, Any]:
    return {
        "to": [{"email": cfg.to.email, "name": cfg.to.name}],
        "from": {"email_address_id": cfg.sender.id, "name": cfg.sender.name},
        "subject": cfg.subject,
        "body": cfg.body,
        "attachments": [
            {
                "content": base64.b64encode(document).decode("ascii"),
                "type": "application/pdf",
                "filename": cfg.attachment_filename,
                "disposition": "attachment",
            }
        ],
    }


def build_letter(file_url: str, cfg: LetterChannelConfig, *, return_address_id: Any) -> Dict[str, Any]:
    recipient = {
        "address_name": cfg.name,
        "address_line_1": cfg.line1,
        "address_city": cfg.city,
        "address_state": cfg.state,
        "address_postal_code": cfg.postal_code,
        "address_country": cfg.country,
        "return_address_id": return_address_id,
    }
    if cfg.line2:
        recipient["address_line_2"] = cfg.line2
    # Standard priority, black and white, single-sided.
    return {
        "file_url": file_url,
        "template_used": 0,
        "colour": 0,
        "duplex": 0,
        "priority_post": 0,
        "recipients": [recipient],
    }


SMS_LETTER_SENT = (
    "Hello! Automailer has sent a letter to your insurance company due to a new statement being available."
)
SMS_STATEMENT_FORWARDED = "Hello! Automailer has forwarded a new statement to your insurance company."


def build_sms(cfg: SmsChannelConfig, *, letter_sent: bool) -> List[Dict[str, Any]]:
    body = cfg.body or (SMS_LETTER_SENT if letter_sent else SMS_STATEMENT_FORWARDED)
    return [{"to": cfg.number, "body": body, "source": "automailer"}]


def _letter_sent(report: DeliveryReport) -> bool:
    return any(r.channel == "letter" and r.ok for r in report.results)


class DeliveryDispatcher:
    """
    Fan a composed document out to every enabled channel (email, then letter, then SMS).

    With `fail_fast=False` a failing channel is recorded in the report and the remaining channels
    are still attempted, except that the SMS is skipped when the letter it announces failed.
    With `fail_fast=True` the first failure raises.
    """

    def __init__(self, provider: DeliveryProvider, *, fail_fast: bool = False) -> None:
        self.provider = provider
        self.fail_fast = fail_fast

    def dispatch(self, document: bytes, channels: ChannelsConfig, *, record_id: str = "") -> DeliveryReport:
        report = DeliveryReport(record_id=record_id)

        plan: list[tuple[str, bool, Callable[[], None]]] = [
            ("email", channels.email.enabled, lambda: self.send_email(document, channels.email)),
            ("letter", channels.letter.enabled, lambda: self.send_letter(document, channels.letter)),
            ("sms", channels.sms.enabled, lambda: self.send_sms(channels.sms, letter_sent=_letter_sent(report))),
        ]
        for channel, enabled, send in plan:
            if not enabled:
                continue
            if channel == "sms" and channels.letter.enabled and not _letter_sent(report):
                # Only reachable with fail_fast off; the letter for this statement was not sent.
                logger.warning("Skipping sms notification: letter delivery failed")
                continue
            try:
                send()
            except (DeliveryError, requests.RequestException) as e:
                status = getattr(e, "status_code", None)
                if self.fail_fast:
                    raise DeliveryError(
                        f"{channel} delivery failed: {e}",
                        status_code=status,
                        record_id=record_id or None,
                        channel=channel,
                    ) from e
                logger.error("Delivery failed (channel=%s status=%s): %s", channel, status, e)
                report.results.append(ChannelResult(channel=channel, ok=False, error=str(e), status_code=status))
                continue
            report.results.append(ChannelResult(channel=channel, ok=True))

        return report

    def send_email(self, document: bytes, cfg: EmailChannelConfig) -> None:
        logger.info("Sending email to %s", cfg.to.email)
        resp = self.provider.send_email(build_email(document, cfg))
        logger.debug("Email response: %s", resp)

    def send_letter(self, document: bytes, cfg: LetterChannelConfig) -> None:
        logger.info("Uploading pdf to delivery provider")
        file_url = self.provider.upload_file(document, convert="post")

        logger.info("Getting return address")
        return_addr = self.provider.get_return_address()
        return_address_id = return_addr.get("return_address_id")
        logger.info("Using return address id=%s", return_address_id)

        letter = build_letter(file_url, cfg, return_address_id=return_address_id)

        logger.info("Getting letter cost")
        price = self.provider.price_letter(letter)
        currency = (price.get("_currency") or {}).get("currency_prefix_d", "")
        logger.info("Sending letter will cost %s%s", currency, price.get("total_price", "?"))

        logger.info("Sending letter to %s, %s", cfg.name, cfg.city)
        resp = self.provider.send_letter(letter)
        logger.debug("Letter response: %s", resp)

    def send_sms(self, cfg: SmsChannelConfig, *, letter_sent: bool = False) -> None:
        logger.info("Sending sms notification")
        resp = self.provider.send_sms(build_sms(cfg, letter_sent=letter_sent))
        logger.debug("SMS response: %s", resp)
