from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

import yaml

from .config import AppConfig, dump_config_document, read_config_document
from .errors import PersistenceError
from .util.dates import ensure_aware, format_timestamp


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunState:
    """
    Checkpoint owned by one run: loaded at start, advanced in memory, written back once.
    """

    watermark: Optional[datetime] = None

    @classmethod
    def from_config(cls, cfg: AppConfig) -> "RunState":
        last = cfg.state.last_date
        return cls(watermark=ensure_aware(last) if last else None)

    def advance(self, candidate: datetime) -> "RunState":
        # The watermark only ever moves forward.
        candidate = ensure_aware(candidate)
        if self.watermark is not None and candidate <= self.watermark:
            return self
        return RunState(watermark=candidate)


def save_watermark(config_path: Union[str, Path], watermark: datetime) -> None:
    """
    Rewrite the config artifact with only the watermark value changed.

    The raw file is re-read (so `${ENV_VAR}` placeholders and secrets that came from the
    environment are not baked in) and re-serialized: values and key order survive, YAML
    comments and formatting do not. The previous version is kept at `<path>.bak` and the new
    content replaces the old one atomically.
    """
    path = Path(config_path)
    try:
        raw = read_config_document(path)

        state = raw.get("state")
        if state is None:
            state = {}
        if not isinstance(state, dict):
            raise ValueError("'state' in the config artifact must be a mapping")
        # Keep writing the legacy key when the file still uses it.
        key = "lastDate" if "lastDate" in state else "last_date"
        state[key] = format_timestamp(watermark)
        raw["state"] = state

        text = dump_config_document(path, raw)

        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            shutil.copy2(path, path.with_name(path.name + ".bak"))

        tmp = path.with_name(path.name + ".tmp")
        tmp.write_text(text, encoding="utf-8")
        tmp.replace(path)
    except (OSError, ValueError, TypeError, yaml.YAMLError) as e:
        raise PersistenceError(f"Failed to persist watermark to {path}: {e}") from e

    logger.info("Persisted watermark %s to %s", format_timestamp(watermark), path)
