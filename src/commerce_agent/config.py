"""Configuration for the commerce API agent tools."""

from __future__ import annotations

from functools import lru_cache
from typing import Dict, List, Literal, Optional, Set

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import KeyAuthentication


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        case_sensitive=False,
        extra="ignore",
    )

    service_name: str = Field(default="commerce-api-agent")

    ep_base_url: Optional[str] = Field(default=None)
    ep_client_id: Optional[str] = Field(default=None)
    ep_client_secret: SecretStr = Field(default=SecretStr(""))
    ep_grant_type: Literal["implicit", "client_credentials"] = Field(default="implicit")
    ep_request_timeout_seconds: float = Field(default=30)
    ep_token_cache_enabled: bool = Field(default=True)

    openai_api_key: SecretStr = Field(default=SecretStr(""))
    agent_model: str = Field(default="gpt-4o-mini")
    agent_classifier_timeout_seconds: float = Field(default=60)
    agent_pipeline_timeout_seconds: float = Field(default=180)
    agent_max_concurrency: int = Field(default=10)
    agent_use_retrieval: bool = Field(default=False)
    agent_retrieval_top_k: int = Field(default=5)

    spec_cache_seconds: int = Field(default=1800)
    # category name -> OpenAPI document URL, e.g. SPEC_URLS='{"pricebooks": "https://..."}'
    spec_urls: Dict[str, str] = Field(default_factory=dict)

    adapter_transport: str = Field(default="streamable-http")
    adapter_host: str = Field(default="0.0.0.0")
    adapter_port: int = Field(default=8000)
    adapter_auth_token: Optional[str] = Field(default=None)
    adapter_log_level: str = Field(default="INFO")
    adapter_cors_origins: str = Field(default="*")

    tool_category_allowlist: Optional[str] = Field(default=None)

    def category_allowlist(self) -> Set[str]:
        if not self.tool_category_allowlist:
            return set()
        return {
            item.strip()
            for item in self.tool_category_allowlist.split(",")
            if item.strip()
        }

    def cors_origins(self) -> List[str]:
        origins = [item.strip() for item in self.adapter_cors_origins.split(",") if item.strip()]
        return origins or ["*"]

    def key_authentication(self) -> Optional[KeyAuthentication]:
        """Hosted key descriptor built from EP_* settings, if a client id is set."""
        if not self.ep_client_id:
            return None
        secret = self.ep_client_secret.get_secret_value() or None
        return KeyAuthentication(
            grant_type=self.ep_grant_type,
            client_id=self.ep_client_id,
            client_secret=secret,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
