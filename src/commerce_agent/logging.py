"""Logging helpers with redaction."""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Mapping


_SENSITIVE_KEYS = re.compile(
    r"(token|secret|api[_-]?key|password|authorization)", re.IGNORECASE
)
_REDACTED = "***REDACTED***"


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    # httpx logs full URLs at INFO; keep it to warnings.
    logging.getLogger("httpx").setLevel(logging.WARNING)


def redact_payload(payload: Any) -> Any:
    if isinstance(payload, list):
        return [redact_payload(item) for item in payload]
    if not isinstance(payload, Mapping):
        return payload
    redacted: Dict[str, Any] = {}
    for key, value in payload.items():
        if _SENSITIVE_KEYS.search(str(key)):
            redacted[key] = _REDACTED
        elif isinstance(value, (Mapping, list)):
            redacted[key] = redact_payload(value)
        else:
            redacted[key] = value
    return redacted


def redact_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    return {
        key: _REDACTED if _SENSITIVE_KEYS.search(key) else value
        for key, value in headers.items()
    }
