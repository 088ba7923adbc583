"""Commerce API credential resolution and token exchange."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional, Tuple

from .errors import AuthenticationError, ConfigurationError
from .executors import RequestExecutor
from .models import (
    AuthenticationDescriptor,
    KeyAuthentication,
    RequestOptions,
    ResultEnvelope,
    TokenAuthentication,
)


logger = logging.getLogger(__name__)

TOKEN_ENDPOINT = "/oauth/access_token"
STORE_HEADER = "Ep-Store-Id"
ORG_HEADER = "Ep-Org-Id"


def token_exchange_body(descriptor: KeyAuthentication) -> Dict[str, str]:
    body = {"grant_type": descriptor.grant_type, "client_id": descriptor.client_id}
    # implicit tokens are public; the secret must never leave with them.
    if descriptor.grant_type == "client_credentials":
        if not descriptor.client_secret:
            raise ConfigurationError("client_credentials grant requires a client secret")
        body["client_secret"] = descriptor.client_secret
    return body


class TokenCache:
    """Keeps exchanged tokens until shortly before they expire."""

    def __init__(
        self,
        safety_margin_seconds: int = 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.safety_margin_seconds = safety_margin_seconds
        self.clock = clock
        self._tokens: Dict[Tuple[str, str, str], Tuple[float, str]] = {}

    def get(self, key: Tuple[str, str, str]) -> Optional[str]:
        entry = self._tokens.get(key)
        if not entry:
            return None
        expires_at, token = entry
        if self.clock() >= expires_at - self.safety_margin_seconds:
            self._tokens.pop(key, None)
            return None
        return token

    def put(self, key: Tuple[str, str, str], token: str, payload: Dict[str, Any]) -> None:
        expires_at = self._expiry(payload)
        if expires_at is None:
            return
        self._tokens[key] = (expires_at, token)

    def clear(self) -> None:
        self._tokens.clear()

    def _expiry(self, payload: Dict[str, Any]) -> Optional[float]:
        if isinstance(payload.get("expires"), (int, float)):
            return float(payload["expires"])
        if isinstance(payload.get("expires_in"), (int, float)):
            return self.clock() + float(payload["expires_in"])
        return None


class AuthenticationResolver:
    def __init__(
        self,
        executor: RequestExecutor,
        token_cache: Optional[TokenCache] = None,
    ) -> None:
        self.executor = executor
        self.token_cache = token_cache

    async def resolve(
        self,
        descriptor: Optional[AuthenticationDescriptor],
        base_url: Optional[str],
    ) -> RequestOptions:
        if descriptor is None:
            raise ConfigurationError(
                "No authentication configured: provide an access token or client keys"
            )

        if isinstance(descriptor, TokenAuthentication):
            base = descriptor.base_url or base_url
            if not base:
                raise ConfigurationError("No commerce API base URL configured")
            headers: Dict[str, str] = {}
            if descriptor.store_id:
                headers[STORE_HEADER] = descriptor.store_id
            if descriptor.organization_id:
                headers[ORG_HEADER] = descriptor.organization_id
            return RequestOptions(
                token=descriptor.access_token, base_url=base, custom_headers=headers
            )

        if not base_url:
            raise ConfigurationError("No commerce API base URL configured")
        token = await self.exchange_token(descriptor, base_url)
        return RequestOptions(token=token, base_url=base_url)

    async def exchange_token(self, descriptor: KeyAuthentication, base_url: str) -> str:
        key = (base_url, descriptor.grant_type, descriptor.client_id)
        if self.token_cache:
            cached = self.token_cache.get(key)
            if cached:
                logger.debug("Using cached %s token", descriptor.grant_type)
                return cached

        body = token_exchange_body(descriptor)
        result = await self.executor.execute(
            "POST",
            TOKEN_ENDPOINT,
            RequestOptions(token=None, base_url=base_url),
            body=body,
        )
        if not isinstance(result, ResultEnvelope):
            raise AuthenticationError(f"Token exchange failed: {result.message}")
        if not result.success:
            raise AuthenticationError(
                f"Token exchange failed with HTTP {result.status}: {result.data}"
            )

        payload = result.data if isinstance(result.data, dict) else {}
        # Some deployments wrap the token in a data envelope.
        if "access_token" not in payload and isinstance(payload.get("data"), dict):
            payload = payload["data"]
        token = payload.get("access_token")
        if not token:
            raise AuthenticationError("Token exchange response has no access_token")

        logger.info("Obtained %s token for client %s", descriptor.grant_type, descriptor.client_id)
        if self.token_cache:
            self.token_cache.put(key, token, payload)
        return token
