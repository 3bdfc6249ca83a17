"""Offline stand-ins for HTTP transports and small PDF builders shared by the tests."""

from __future__ import annotations

import io
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple, Union
from urllib.parse import urlparse

from reportlab.lib.pagesizes import A4, LETTER
from reportlab.pdfgen import canvas
from requests.cookies import RequestsCookieJar

from automailer.errors import DeliveryError


PORTAL_URL = "https://acme.clientsecure.me"
PORTAL_HOST = "acme.clientsecure.me"


def make_pdf(labels: List[str], *, pagesize: Tuple[float, float] = LETTER) -> bytes:
    """One page per label, each page showing its label."""
    buf = io.BytesIO()
    c = canvas.Canvas(buf, pagesize=pagesize)
    for label in labels:
        c.setFont("Helvetica", 14)
        c.drawString(72, pagesize[1] - 72, label)
        c.showPage()
    c.save()
    return buf.getvalue()


def make_a4_pdf(labels: List[str]) -> bytes:
    return make_pdf(labels, pagesize=A4)


class FakeResponse:
    def __init__(
        self,
        status_code: int = 200,
        *,
        text: str = "",
        content: Optional[bytes] = None,
        json_data: Any = None,
        cookies: Optional[Dict[str, str]] = None,
        headers: Optional[Dict[str, str]] = None,
        history: Optional[List["FakeResponse"]] = None,
    ) -> None:
        self.status_code = status_code
        self.text = text
        self.content = content if content is not None else text.encode("utf-8")
        self.headers = headers or {}
        self.history = history or []
        self._json = json_data
        self.cookies = RequestsCookieJar()
        for name, value in (cookies or {}).items():
            self.cookies.set(name, value, domain=PORTAL_HOST, path="/")

    def json(self) -> Any:
        if self._json is None:
            raise ValueError("response body is not JSON")
        return self._json


Route = Union[FakeResponse, Callable[..., FakeResponse]]


class FakeHttp:
    """
    Minimal `requests.Session` stand-in: routes by (method, path) and records every call,
    including a snapshot of the cookies sent with it.
    """

    def __init__(self, routes: Optional[Dict[Tuple[str, str], Route]] = None) -> None:
        self.routes: Dict[Tuple[str, str], Route] = dict(routes or {})
        self.calls: List[Dict[str, Any]] = []
        self.closed = False

    def request(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        path = urlparse(url).path
        jar = kwargs.pop("cookies", None)
        call = {"method": method, "url": url, "path": path, "cookies": jar.get_dict() if jar is not None else {}}
        call.update(kwargs)
        self.calls.append(call)

        route = self.routes.get((method, path))
        if route is None:
            return FakeResponse(404, text="not found")
        if callable(route):
            return route(method=method, url=url, **kwargs)
        return route

    def paths(self) -> List[Tuple[str, str]]:
        return [(c["method"], c["path"]) for c in self.calls]

    def close(self) -> None:
        self.closed = True


class FakeProvider:
    """Records ClickSend calls in order; names listed in `fail` raise DeliveryError."""

    def __init__(self, *, fail: Optional[Set[str]] = None) -> None:
        self.fail = fail or set()
        self.calls: List[str] = []
        self.payloads: Dict[str, Any] = {}

    def _record(self, name: str, payload: Any) -> None:
        self.calls.append(name)
        self.payloads[name] = payload
        if name in self.fail:
            raise DeliveryError(f"simulated {name} failure", status_code=500)

    def send_email(self, email: Mapping[str, Any]) -> Dict[str, Any]:
        self._record("send_email", email)
        return {"queued": 1}

    def upload_file(self, content: bytes, *, convert: str = "post") -> str:
        self._record("upload_file", (content, convert))
        return "https://files.example/letter.pdf"

    def get_return_address(self) -> Dict[str, Any]:
        self._record("get_return_address", None)
        return {"return_address_id": 77, "address_name": "Me"}

    def price_letter(self, letter: Mapping[str, Any]) -> Dict[str, Any]:
        self._record("price_letter", letter)
        return {"total_price": 1.23, "_currency": {"currency_prefix_d": "$"}}

    def send_letter(self, letter: Mapping[str, Any]) -> Dict[str, Any]:
        self._record("send_letter", letter)
        return {}

    def send_sms(self, messages: List[Mapping[str, Any]]) -> Dict[str, Any]:
        self._record("send_sms", messages)
        return {}
