import logging
import os
from pathlib import Path
from typing import Any, Mapping, MutableMapping, Optional


def configure_logging(level: str = "INFO", file_path: Optional[str] = None) -> None:
    numeric_level = getattr(logging, (level or "INFO").upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if file_path:
        path = Path(file_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))

    logging.basicConfig(
        level=numeric_level,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
        handlers=handlers,
        force=True,  # allow configure_logging() to be called multiple times (CLI does this)
    )

    # Reduce noise from chatty libraries
    for noisy in ("urllib3", "pypdf", "charset_normalizer"):
        logging.getLogger(noisy).setLevel(os.getenv("NOISY_LOG_LEVEL", "WARNING"))


class StatementLogAdapter(logging.LoggerAdapter):
    """
    Prefix every message with the statement being processed, e.g.
    `[statement id=42 created_at=2023-01-02T00:00:00+00:00] merging pdfs`.
    """

    def __init__(self, logger: logging.Logger, context: Mapping[str, str]) -> None:
        super().__init__(logger, dict(context))

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        ctx = " ".join(f"{k}={v}" for k, v in (self.extra or {}).items())
        return f"[statement {ctx}] {msg}", kwargs
