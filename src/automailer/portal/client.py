from __future__ import annotations

import logging
from dataclasses import dataclass, field
from http.cookiejar import DefaultCookiePolicy
from typing import Any, Mapping, Optional
from urllib.parse import urlparse

import requests
from bs4 import BeautifulSoup
from requests.cookies import RequestsCookieJar

from ..errors import AuthError
from .endpoints import PortalEndpoints


logger = logging.getLogger(__name__)

# The portal answers gated steps with either a page (200) or a redirect (302).
OK_STATUSES = (200, 302)


@dataclass(frozen=True)
class PortalCredentials:
    email: str
    password: str = field(repr=False)
    url_name: str = ""


@dataclass
class PortalSession:
    """
    Authentication state for one run: accumulated cookies plus the CSRF token from the login page.

    Cookies only accumulate; their lifetime is up to the server.
    """

    base_url: str
    csrf_token: str = field(default="", repr=False)
    cookies: RequestsCookieJar = field(default_factory=RequestsCookieJar, repr=False)

    @property
    def host(self) -> str:
        return (urlparse(self.base_url).hostname or "").lower()

    def set_cookie(self, name: str, value: str) -> None:
        self.cookies.set(name, value, domain=self.host, path="/")

    def absorb(self, response: requests.Response) -> None:
        # Set-Cookie can arrive on any hop of a redirect chain, not just the final response.
        for hop in [*(getattr(response, "history", None) or []), response]:
            self.cookies.update(hop.cookies)

    def cookie_names(self) -> list[str]:
        return sorted({c.name for c in self.cookies})


def extract_csrf_token(html: str, meta_name: str = "csrf-token") -> Optional[str]:
    soup = BeautifulSoup(html or "", "html.parser")
    tag = soup.find("meta", attrs={"name": meta_name})
    if tag is None:
        return None
    token = (tag.get("content") or "").strip()
    return token or None


class PortalClient:
    """
    Plain-HTTP client for the client portal. Every call takes the PortalSession explicitly,
    sends its cookies and merges whatever cookies the portal hands back.
    """

    def __init__(
        self,
        *,
        base_url: str,
        endpoints: Optional[PortalEndpoints] = None,
        timeout_seconds: float = 30.0,
        http: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.endpoints = endpoints or PortalEndpoints()
        self.timeout_seconds = timeout_seconds

        if http is None:
            http = requests.Session()
            # Cookie state lives on PortalSession; the transport keeps none of its own.
            http.cookies.set_policy(DefaultCookiePolicy(allowed_domains=[]))
        self._http = http

    def close(self) -> None:
        self._http.close()

    def login(self, creds: PortalCredentials) -> PortalSession:
        ep = self.endpoints
        session = PortalSession(base_url=self.base_url)
        session.set_cookie(ep.session_expiration_cookie, str(ep.session_expiration_seconds))

        try:
            logger.info("Opening portal login page (url_name=%s)", creds.url_name)
            resp = self.get(session, ep.login_path, allow_redirects=False)

            token = extract_csrf_token(resp.text, ep.csrf_meta_name)
            if not token:
                raise AuthError(
                    f"failed to get {ep.csrf_meta_name} from login page",
                    status_code=resp.status_code,
                )
            session.csrf_token = token
            logger.info("Got CSRF token (len=%d)", len(token))

            scope = ep.login_form_scope
            form = {
                "utf8": "✓",
                f"{scope}[email]": creds.email,
                f"{scope}[password]": creds.password,
                f"{scope}[url_name]": creds.url_name,
                "authenticity_token": token,
                "commit": ep.submit_label,
            }
            resp = self.post(session, ep.login_path, data=form)
            if resp.status_code not in OK_STATUSES:
                raise AuthError(
                    f"failed to auth, got unexpected status code: {resp.status_code}",
                    status_code=resp.status_code,
                )

            logger.info("Selecting client for session")
            resp = self.get(session, ep.client_selection_path, allow_redirects=False)
            if resp.status_code not in OK_STATUSES:
                raise AuthError(
                    f"failed to get client_id set in session, got unexpected status code: {resp.status_code}",
                    status_code=resp.status_code,
                )
        except requests.RequestException as e:
            raise AuthError(f"portal login request failed: {e}") from e

        logger.info("Portal login OK (cookies=%s)", ",".join(session.cookie_names()))
        return session

    def get(
        self,
        session: PortalSession,
        path: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
        params: Optional[Mapping[str, Any]] = None,
        allow_redirects: bool = True,
    ) -> requests.Response:
        return self._request(session, "GET", path, headers=headers, params=params, allow_redirects=allow_redirects)

    def post(
        self,
        session: PortalSession,
        path: str,
        *,
        data: Optional[Mapping[str, Any]] = None,
        json: Optional[Any] = None,
        headers: Optional[Mapping[str, str]] = None,
        allow_redirects: bool = False,
    ) -> requests.Response:
        return self._request(
            session,
            "POST",
            path,
            headers=headers,
            data=data,
            json=json,
            allow_redirects=allow_redirects,
        )

    def _url(self, session: PortalSession, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return session.base_url.rstrip("/") + "/" + path.lstrip("/")

    def _request(
        self,
        session: PortalSession,
        method: str,
        path: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
        params: Optional[Mapping[str, Any]] = None,
        data: Optional[Mapping[str, Any]] = None,
        json: Optional[Any] = None,
        allow_redirects: bool = True,
    ) -> requests.Response:
        url = self._url(session, path)
        resp = self._http.request(
            method,
            url,
            headers=dict(headers or {}),
            params=params,
            data=data,
            json=json,
            cookies=session.cookies,
            timeout=self.timeout_seconds,
            allow_redirects=allow_redirects,
        )
        session.absorb(resp)
        logger.debug("%s %s -> %s", method, path, resp.status_code)
        return resp
