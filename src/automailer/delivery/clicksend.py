from __future__ import annotations

import base64
import logging
from typing import Any, Dict, List, Mapping, Optional

import requests

from ..errors import DeliveryError


logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://rest.clicksend.com/v3"


class ClickSendClient:
    """
    Thin wrapper over the ClickSend v3 REST API: one method per call we use.

    Every method returns the response's `data` object or raises DeliveryError.
    """

    def __init__(
        self,
        *,
        username: str,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout_seconds: float = 30.0,
        http: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._http = http or requests.Session()
        self._auth = (username, api_key)

    def close(self) -> None:
        self._http.close()

    def _call(
        self,
        op: str,
        method: str,
        path: str,
        *,
        json: Optional[Any] = None,
        params: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            resp = self._http.request(
                method,
                url,
                json=json,
                params=params,
                auth=self._auth,
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as e:
            raise DeliveryError(f"ClickSend {op} request failed: {e}") from e

        try:
            body = resp.json()
        except ValueError:
            body = None

        response_code = body.get("response_code") if isinstance(body, dict) else None
        if resp.status_code >= 400 or (response_code and response_code != "SUCCESS"):
            msg = body.get("response_msg") if isinstance(body, dict) else ""
            raise DeliveryError(
                f"ClickSend {op} failed: {response_code or 'HTTP error'} {msg or ''}".strip(),
                status_code=resp.status_code,
            )
        if not isinstance(body, dict):
            raise DeliveryError(f"ClickSend {op} returned a non-JSON response", status_code=resp.status_code)

        logger.debug("ClickSend %s -> %s %s", op, resp.status_code, response_code)
        return body.get("data")

    def get_account(self) -> Dict[str, Any]:
        return self._call("get_account", "GET", "account") or {}

    def send_email(self, email: Mapping[str, Any]) -> Dict[str, Any]:
        return self._call("send_email", "POST", "email/send", json=dict(email)) or {}

    def upload_file(self, content: bytes, *, convert: str = "post") -> str:
        data = self._call(
            "upload_file",
            "POST",
            "uploads",
            json={"content": base64.b64encode(content).decode("ascii")},
            params={"convert": convert},
        ) or {}
        url = data.get("_url")
        if not url:
            raise DeliveryError("ClickSend upload_file returned no file url")
        return str(url)

    def get_return_address(self) -> Dict[str, Any]:
        data = self._call("list_return_addresses", "GET", "post/return-addresses", params={"page": 1, "limit": 1}) or {}
        addresses: List[Dict[str, Any]] = data.get("data") or []
        if not addresses:
            raise DeliveryError("ClickSend account has no return address configured")
        total = data.get("total")
        if isinstance(total, int) and total > 1:
            logger.warning("ClickSend account has %d return addresses; using the first one", total)
        return addresses[0]

    def price_letter(self, letter: Mapping[str, Any]) -> Dict[str, Any]:
        return self._call("price_letter", "POST", "post/letters/price", json=dict(letter)) or {}

    def send_letter(self, letter: Mapping[str, Any]) -> Dict[str, Any]:
        return self._call("send_letter", "POST", "post/letters/send", json=dict(letter)) or {}

    def send_sms(self, messages: List[Mapping[str, Any]]) -> Dict[str, Any]:
        return self._call("send_sms", "POST", "sms/send", json={"messages": [dict(m) for m in messages]}) or {}
