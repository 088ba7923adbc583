"""MCP server setup for the commerce agent tools."""

import hmac
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from fastmcp import FastMCP
from pydantic import BaseModel, Field
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse

from .auth import AuthenticationResolver, TokenCache
from .classifier import IntentClassifier
from .config import Settings
from .executors import RequestExecutor
from .models import RequestContext, TokenAuthentication
from .openapi import SpecificationCache
from .retrieval import SpecificationRetriever
from .service import AgentToolService
from .tool_registry import ApiCategory, ToolRegistry

logger = logging.getLogger(__name__)

HTTP_TRANSPORTS = {
    "http": "http",
    "streamable-http": "streamable-http",
    "streamablehttp": "streamable-http",
}
PUBLIC_PATHS = {"/health"}


class SessionInput(BaseModel):
    session_id: Optional[str] = Field(
        default=None, description="Conversation id; keeps cart and history between calls"
    )
    cart_id: Optional[str] = Field(default=None, description="Cart id for cart operations")
    access_token: Optional[str] = Field(
        default=None, description="Commerce API access token; server keys are used when absent"
    )
    store_id: Optional[str] = Field(default=None, description="Ep-Store-Id header value")
    organization_id: Optional[str] = Field(default=None, description="Ep-Org-Id header value")
    base_url: Optional[str] = Field(default=None, description="Commerce API base URL override")
    path_values: Optional[Dict[str, str]] = Field(
        default=None,
        description='Values for other path placeholders, e.g. {"productId": "..."}',
    )


class QueryToolInput(SessionInput):
    query: str = Field(..., description="What the user wants to do, in their own words")


class RequestToolInput(SessionInput):
    endpoint: str = Field(..., description="The API endpoint to call, e.g. /v2/carts/{cartId}")
    body: Optional[Dict[str, Any]] = Field(default=None, description="JSON request body")


def build_service(settings: Settings, registry: Optional[ToolRegistry] = None) -> AgentToolService:
    registry = registry or ToolRegistry(settings)
    spec_cache = SpecificationCache(
        ttl_seconds=settings.spec_cache_seconds,
        timeout_seconds=settings.ep_request_timeout_seconds,
    )
    executor = RequestExecutor(timeout_seconds=settings.ep_request_timeout_seconds)
    token_cache = TokenCache() if settings.ep_token_cache_enabled else None
    classifier = IntentClassifier(
        api_key=settings.openai_api_key.get_secret_value(),
        model=settings.agent_model,
        timeout_seconds=settings.agent_classifier_timeout_seconds,
    )
    return AgentToolService(
        settings,
        registry,
        classifier,
        spec_cache,
        executor,
        AuthenticationResolver(executor, token_cache),
        retriever=SpecificationRetriever(spec_cache, registry.spec_urls()),
    )


async def build_server(settings: Settings) -> tuple[FastMCP, object | None]:
    registry = ToolRegistry(settings)
    service = build_service(settings, registry)

    mcp = FastMCP(settings.service_name, instructions=_instructions())
    app = _get_http_app(mcp, settings)
    _attach_auth(app, settings)

    tool_names: List[str] = []
    for category in registry.categories():
        mcp.tool(name=category.tool_name, description=category.description)(
            _query_handler(service, category)
        )
        tool_names.append(category.tool_name)

    for method in ("GET", "POST", "PUT", "DELETE"):
        name = f"exec_{method.lower()}_request"
        mcp.tool(name=name, description=f"Execute a {method} request to the commerce API")(
            _request_handler(service, method, name)
        )
        tool_names.append(name)

    logger.info("Registered %s tools: %s", len(tool_names), ", ".join(tool_names))
    _attach_healthcheck(app, settings, tool_names)
    return mcp, app


def session_context(service: AgentToolService, payload: SessionInput) -> RequestContext:
    authentication = None
    if payload.access_token:
        authentication = TokenAuthentication(
            access_token=payload.access_token,
            store_id=payload.store_id,
            organization_id=payload.organization_id,
        )
    context = service.session(payload.session_id, payload.cart_id, authentication)
    if payload.base_url:
        context.base_url = payload.base_url
    if payload.path_values:
        context.path_values.update(payload.path_values)
    return context


def _query_handler(
    service: AgentToolService, category: ApiCategory
) -> Callable[[QueryToolInput], Awaitable[Dict[str, Any]]]:
    async def handler(payload: QueryToolInput) -> Dict[str, Any]:
        context = session_context(service, payload)
        return await service.run_query(category.name, payload.query, context)

    handler.__name__ = category.tool_name
    return handler


def _request_handler(
    service: AgentToolService, method: str, name: str
) -> Callable[[RequestToolInput], Awaitable[Dict[str, Any]]]:
    async def handler(payload: RequestToolInput) -> Dict[str, Any]:
        context = session_context(service, payload)
        return await service.execute_request(method, payload.endpoint, payload.body, context)

    handler.__name__ = name
    return handler


def _attach_auth(app, settings: Settings) -> None:  # type: ignore[no-untyped-def]
    if not app:
        logger.warning("FastMCP app not available; auth middleware disabled")
        return
    if not settings.adapter_auth_token:
        logger.warning("ADAPTER_AUTH_TOKEN not set; tool endpoints are open")
        return
    expected = settings.adapter_auth_token.encode()

    async def auth_middleware(request, call_next):  # type: ignore[no-untyped-def]
        if request.method == "OPTIONS" or request.url.path in PUBLIC_PATHS:
            return await call_next(request)

        scheme, _, token = request.headers.get("authorization", "").partition(" ")
        if scheme.lower() == "bearer" and hmac.compare_digest(token.strip().encode(), expected):
            return await call_next(request)

        logger.warning("Rejected request with invalid service token: %s", request.url.path)
        return JSONResponse({"error": "Unauthorized"}, status_code=401)

    app.add_middleware(BaseHTTPMiddleware, dispatch=auth_middleware)


def _attach_healthcheck(app, settings: Settings, tool_names: List[str]) -> None:  # type: ignore[no-untyped-def]
    if not app:
        return

    async def healthcheck(_request):  # type: ignore[no-untyped-def]
        return JSONResponse(
            {"status": "ok", "service": settings.service_name, "tools": tool_names}
        )

    app.add_route("/health", healthcheck, methods=["GET"])


def _instructions() -> str:
    return (
        "Commerce API tools for shopper and merchandiser agents. "
        "Describe the goal in plain words to a <category>_api_tool; it finds the matching "
        "endpoint in the OpenAPI documentation, checks the plan and executes it."
    )


def _get_http_app(mcp: FastMCP, settings: Settings):  # type: ignore[no-untyped-def]
    transport = settings.adapter_transport.lower()
    if transport == "sse":
        app = mcp.sse_app()
    elif transport in HTTP_TRANSPORTS:
        app = mcp.http_app(
            transport=HTTP_TRANSPORTS[transport], stateless_http=True, json_response=True
        )
    else:
        return None
    _attach_cors(app, settings)
    return app


def _attach_cors(app, settings: Settings) -> None:  # type: ignore[no-untyped-def]
    origins = settings.cors_origins()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials="*" not in origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
