from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class PortalEndpoints:
    """
    The client portal has no published API contract; paths, header values and form field
    names may change over time. Keep all of them here for easy maintenance.
    """

    # Login handshake
    login_path: str = "/client_portal/client_accesses/sign_in"
    client_selection_path: str = "/client_portal/client_selection"
    csrf_meta_name: str = "csrf-token"
    login_form_scope: str = "client_portal_client_access"
    submit_label: str = "Log in"

    # Statements API
    billing_items_path: str = "/client-portal-api/billing-items"
    statement_type: str = "superbill"
    page_size: int = 10

    # Static client identification the API insists on.
    api_version: str = "2019-01-17"
    application_platform: str = "web"
    application_build_version: str = "0.0.0+85ec7a61"

    # Cookies the browser app would set itself.
    session_expiration_cookie: str = "client-portal-session-expiration_time"
    session_expiration_seconds: int = 86400
    redirect_target_cookie: str = "ember_simple_auth-redirectTarget"
    redirect_target: str = "%2Fbilling"

    def api_headers(self) -> dict[str, str]:
        return {
            "api-version": self.api_version,
            "application-platform": self.application_platform,
            "application-build-version": self.application_build_version,
        }

    def statement_listing_params(self) -> dict[str, str]:
        return {
            "filter[thisType]": self.statement_type,
            "page[size]": str(self.page_size),
        }
