"""Execution layer for commerce API calls."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, Mapping, Optional

import httpx

from .errors import PlaceholderError
from .logging import redact_headers, redact_payload
from .models import RequestOptions, RequestResult, ResultEnvelope, TransportFailure

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{([^{}/]+)\}")


def join_url(base_url: str, endpoint: str) -> str:
    base = base_url[:-1] if base_url.endswith("/") else base_url
    path = endpoint[1:] if endpoint.startswith("/") else endpoint
    return f"{base}/{path}"


def substitute_placeholders(path: str, values: Mapping[str, Any]) -> str:
    """Fill ``{name}`` segments from ``values``.

    Names match loosely, so ``{cartId}``, ``{cartID}`` and ``{cart_id}`` all
    take a ``cartId`` value. Anything left unfilled raises PlaceholderError.
    """
    normalized = {_normalize(key): value for key, value in values.items() if value}
    missing = []

    def replace(match: "re.Match[str]") -> str:
        value = normalized.get(_normalize(match.group(1)))
        if value is None:
            missing.append(match.group(1))
            return match.group(0)
        return str(value)

    result = _PLACEHOLDER.sub(replace, path)
    if missing:
        raise PlaceholderError(
            f"No value for path placeholder(s) {', '.join(missing)} in {path}"
        )
    return result


def _normalize(name: str) -> str:
    return name.replace("_", "").replace("-", "").lower()


def build_headers(token: Optional[str], custom_headers: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    headers: Dict[str, str] = {
        "Content-Type": "application/json" if token else "application/x-www-form-urlencoded",
        "Accept": "application/json",
    }
    if token:
        headers["Authorization"] = f"Bearer {token}"
    if custom_headers:
        headers.update(custom_headers)
    return headers


class RequestExecutor:
    """Issues one HTTP request and folds the outcome into a result envelope.

    With a bearer token the body is JSON; without one (the token exchange)
    it is form encoded. HTTP error statuses and transport failures both come
    back as values, never as exceptions.
    """

    def __init__(
        self,
        timeout_seconds: float = 30,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    async def execute(
        self,
        method: str,
        endpoint: str,
        options: RequestOptions,
        body: Any = None,
    ) -> RequestResult:
        method = method.upper()
        url = join_url(options.base_url, endpoint)
        headers = build_headers(options.token, options.custom_headers)

        content: Optional[str] = None
        form_data: Optional[Dict[str, str]] = None
        if body is not None and method in ("POST", "PUT", "PATCH", "DELETE"):
            if options.token:
                content = json.dumps(body)
            else:
                form_data = {key: str(value) for key, value in dict(body).items()}

        logger.info(
            "==> %s %s headers=%s body=%s",
            method,
            url,
            redact_headers(headers),
            redact_payload(body),
        )

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds, transport=self.transport
            ) as client:
                response = await client.request(
                    method,
                    url,
                    headers=headers,
                    content=content,
                    data=form_data,
                )
        except httpx.HTTPError as exc:
            logger.error("Request %s %s could not be sent: %s", method, url, exc)
            return TransportFailure(error=type(exc).__name__, message=str(exc) or repr(exc))

        success = 200 <= response.status_code < 300
        if not success:
            logger.warning(
                "HTTP error %s for %s %s: %s",
                response.status_code,
                method,
                url,
                response.text[:500],
            )
        return ResultEnvelope(
            success=success,
            status=response.status_code,
            status_text=response.reason_phrase,
            data=self._parse_body(response),
        )

    def _parse_body(self, response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            return f"Response body is not JSON ({exc}): {response.text[:500]}"
