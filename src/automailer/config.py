from __future__ import annotations

import json
import os
import re
from datetime import date, datetime, time, timezone
from pathlib import Path
from typing import Literal, Optional, Union
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigError
from .util.dates import ensure_aware, parse_timestamp


_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z0-9_]+)\}")
_URL_NAME_RE = re.compile(r"^[a-z0-9-]+$")


def _expand_env_vars(value: object) -> object:
    if isinstance(value, str):
        def repl(match: re.Match[str]) -> str:
            var = match.group(1)
            return os.getenv(var, "")

        return _ENV_VAR_PATTERN.sub(repl, value)
    if isinstance(value, list):
        return [_expand_env_vars(v) for v in value]
    if isinstance(value, dict):
        return {k: _expand_env_vars(v) for k, v in value.items()}
    return value


def _derive_url_name_from_base_url(base_url: str) -> str:
    parsed = urlparse(base_url)
    host = (parsed.netloc or parsed.path or "").strip().lower()
    if ":" in host:
        host = host.split(":", 1)[0]
    # e.g. "acme.clientsecure.me" -> "acme"
    if "." in host:
        return host.split(".", 1)[0]
    return host


def _deep_merge(base: object, override: object) -> object:
    if isinstance(base, dict) and isinstance(override, dict):
        out = dict(base)
        for k, v in override.items():
            if k in out:
                out[k] = _deep_merge(out[k], v)
            else:
                out[k] = v
        return out
    return override


def _is_json_path(path: Path) -> bool:
    return path.suffix.lower() == ".json"


def read_config_document(path: Union[str, Path]) -> dict:
    """
    Read the raw (unexpanded, unvalidated) configuration artifact.

    `.json` files are parsed as JSON; anything else as YAML. A missing file reads as `{}`.
    """
    p = Path(path)
    if not p.exists():
        return {}
    text = p.read_text(encoding="utf-8")
    data = json.loads(text) if _is_json_path(p) else yaml.safe_load(text)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{p} must contain a mapping at the top level")
    return data


def dump_config_document(path: Union[str, Path], data: dict) -> str:
    if _is_json_path(Path(path)):
        return json.dumps(data, indent=2, ensure_ascii=False, default=str) + "\n"
    return yaml.safe_dump(data, sort_keys=False, allow_unicode=True)


def _default_config_from_env() -> dict:
    """
    Env-only defaults so secrets can live in `.env` instead of the config artifact.

    Values from the config file always win over these.
    """
    return {
        "portal": {
            "base_url": os.getenv("PORTAL_URL", ""),
            "email": os.getenv("PORTAL_EMAIL", ""),
            "password": os.getenv("PORTAL_PASSWORD", ""),
        },
        "clicksend": {
            "username": os.getenv("CLICKSEND_USERNAME", ""),
            "api_key": os.getenv("CLICKSEND_API_KEY", ""),
        },
        "document": {
            "template_path": os.getenv("TEMPLATE_PATH", "template.pdf"),
        },
        "logging": {
            "level": os.getenv("LOG_LEVEL", "INFO"),
            "file_path": os.getenv("LOG_FILE", "data/automailer.log"),
        },
    }


class PortalConfig(BaseModel):
    """
    Client portal account. `url_name` is the practice slug the portal expects in the login form;
    it defaults to the first label of the portal host.
    """

    base_url: str
    email: str
    password: str = Field(repr=False)
    url_name: str = ""
    timeout_seconds: float = 30.0

    @model_validator(mode="after")
    def _fill_defaults_and_validate(self) -> "PortalConfig":
        base_url = (self.base_url or "").strip().rstrip("/")
        parsed = urlparse(base_url)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError("portal.base_url must be a full URL like 'https://acme.clientsecure.me'")

        url_name = (self.url_name or "").strip().lower() or _derive_url_name_from_base_url(base_url)
        if not _URL_NAME_RE.match(url_name):
            raise ValueError("portal.url_name must be a slug (lowercase letters, numbers, hyphen only)")

        if not (self.email or "").strip() or not self.password:
            raise ValueError("portal.email and portal.password are required")
        if self.timeout_seconds <= 0:
            raise ValueError("portal.timeout_seconds must be positive")

        self.base_url = base_url
        self.url_name = url_name
        return self


class ClickSendConfig(BaseModel):
    username: str = ""
    api_key: str = Field(default="", repr=False)
    base_url: str = "https://rest.clicksend.com/v3"
    timeout_seconds: float = 30.0


class EmailSender(BaseModel):
    # ClickSend "allowed email address" id, see the provider dashboard.
    id: Union[int, str] = ""
    name: str = ""


class EmailRecipient(BaseModel):
    email: str = ""
    name: str = ""


class EmailChannelConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    enabled: bool = False
    sender: EmailSender = Field(default_factory=EmailSender, alias="from")
    to: EmailRecipient = Field(default_factory=EmailRecipient)
    subject: str = "New Statement"
    body: str = "A new statement has been generated."
    attachment_filename: str = "statement.pdf"

    @model_validator(mode="after")
    def _validate_enabled(self) -> "EmailChannelConfig":
        if self.enabled and (self.sender.id in ("", None) or not self.to.email):
            raise ValueError("channels.email requires from.id and to.email when enabled")
        return self


class LetterChannelConfig(BaseModel):
    enabled: bool = False
    name: str = ""
    line1: str = ""
    line2: str = ""
    city: str = ""
    state: str = ""
    postal_code: str = ""
    country: str = "US"

    @model_validator(mode="after")
    def _validate_enabled(self) -> "LetterChannelConfig":
        if not self.enabled:
            return self
        missing = [k for k in ("name", "line1", "city", "postal_code", "country") if not getattr(self, k)]
        if missing:
            raise ValueError(f"channels.letter requires {', '.join(missing)} when enabled")
        return self


class SmsChannelConfig(BaseModel):
    enabled: bool = False
    number: str = ""
    # Unset: the text depends on whether a letter went out with the statement.
    body: Optional[str] = None

    @model_validator(mode="after")
    def _validate_enabled(self) -> "SmsChannelConfig":
        if self.enabled and not self.number:
            raise ValueError("channels.sms requires number when enabled")
        return self


class ChannelsConfig(BaseModel):
    email: EmailChannelConfig = Field(default_factory=EmailChannelConfig)
    letter: LetterChannelConfig = Field(default_factory=LetterChannelConfig)
    sms: SmsChannelConfig = Field(default_factory=SmsChannelConfig)

    def enabled_names(self) -> list[str]:
        return [name for name in ("email", "letter", "sms") if getattr(self, name).enabled]


class DeliveryConfig(BaseModel):
    # False: every enabled channel is attempted even if an earlier one fails.
    # True: the first failing channel aborts the statement immediately.
    fail_fast: bool = False


class DocumentConfig(BaseModel):
    template_path: str = "template.pdf"
    date_format: str = "%m/%d/%Y"
    date_x_from_right: float = 90.0
    date_y: float = 80.0
    font_size: float = 9.0


class StateConfig(BaseModel):
    last_date: Optional[datetime] = None
    watermark_strategy: Literal["run_time", "max_created_at"] = "run_time"

    @field_validator("last_date", mode="before")
    @classmethod
    def _parse_last_date(cls, value: object) -> object:
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        if isinstance(value, (str, datetime)):
            return parse_timestamp(value)
        if isinstance(value, date):
            # Unquoted YAML dates (`last_date: 2023-01-01`) load as date objects.
            return datetime.combine(value, time.min, tzinfo=timezone.utc)
        return value

    @field_validator("last_date")
    @classmethod
    def _require_aware(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_aware(value) if value is not None else None


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file_path: str = "data/automailer.log"


class AppConfig(BaseModel):
    portal: PortalConfig
    clicksend: ClickSendConfig = ClickSendConfig()
    channels: ChannelsConfig = ChannelsConfig()
    delivery: DeliveryConfig = DeliveryConfig()
    document: DocumentConfig = DocumentConfig()
    state: StateConfig = StateConfig()
    logging: LoggingConfig = LoggingConfig()

    @model_validator(mode="before")
    @classmethod
    def _migrate_legacy_keys(cls, data: object) -> object:
        """
        Accept the older single-file JSON layout:

            {"website": {"url": ..., "login": {"email": ..., "password": ...}},
             "email": {...}, "mailing": {..., "postalCode": ...}, "sms": {...},
             "state": {"lastDate": ...}}
        """
        if not isinstance(data, dict):
            return data
        data = dict(data)

        website = data.pop("website", None)
        if isinstance(website, dict):
            portal = dict(data.get("portal") or {})
            if website.get("url"):
                portal["base_url"] = website["url"]
            login = website.get("login") or {}
            for key in ("email", "password"):
                if login.get(key):
                    portal[key] = login[key]
            data["portal"] = portal

        channels = dict(data.get("channels") or {})
        for legacy, name in (("email", "email"), ("mailing", "letter"), ("sms", "sms")):
            block = data.pop(legacy, None)
            if isinstance(block, dict):
                channels[name] = _deep_merge(channels.get(name) or {}, block)
        letter = channels.get("letter")
        if isinstance(letter, dict) and "postalCode" in letter:
            letter = dict(letter)
            letter.setdefault("postal_code", letter.pop("postalCode"))
            letter.pop("postalCode", None)
            channels["letter"] = letter
        if channels:
            data["channels"] = channels

        state = data.get("state")
        if isinstance(state, dict) and "lastDate" in state:
            state = dict(state)
            state.setdefault("last_date", state.pop("lastDate"))
            state.pop("lastDate", None)
            data["state"] = state

        return data

    @model_validator(mode="after")
    def _validate_provider_auth(self) -> "AppConfig":
        if self.channels.enabled_names() and not (self.clicksend.username and self.clicksend.api_key):
            raise ValueError("clicksend.username and clicksend.api_key are required when any channel is enabled")
        return self


def load_config(path: Union[str, Path]) -> AppConfig:
    p = Path(path)
    try:
        raw = read_config_document(p)
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to read config {p}: {e}") from e
    raw = _expand_env_vars(raw)  # supports ${ENV_VAR} in the config file

    merged = _deep_merge(_default_config_from_env(), raw)
    try:
        return AppConfig.model_validate(merged)
    except ValidationError as e:
        raise ConfigError(f"Invalid config {p}: {e}") from e
