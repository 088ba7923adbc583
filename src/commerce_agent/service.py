"""Core pipeline service behind the agent tools."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .auth import AuthenticationResolver
from .classifier import IntentClassifier
from .config import Settings
from .errors import CommerceAgentError, ExecutionError
from .executors import RequestExecutor, substitute_placeholders
from .logging import redact_payload
from .models import (
    AuthenticationDescriptor,
    RequestContext,
    RequestPlan,
    RequestResult,
    TokenAuthentication,
)
from .openapi import SpecificationCache
from .resolver import CorpusStrategy, FullSpecificationStrategy, IntentResolver, RetrievalStrategy
from .retrieval import Retriever
from .tool_registry import ApiCategory, ToolRegistry

logger = logging.getLogger(__name__)

MAX_SESSIONS = 1000
BODY_METHODS = ("POST", "PUT", "PATCH")


@dataclass(frozen=True)
class PipelineOutcome:
    plan: RequestPlan
    endpoint: str
    result: RequestResult

    def to_dict(self) -> Dict[str, Any]:
        return {
            "explanation": self.plan.explanation,
            "request": {
                "method": self.plan.method,
                "path": self.plan.path,
                "endpoint": self.endpoint,
                "body": self.plan.body,
            },
            "result": self.result.to_dict(),
        }


class AgentToolService:
    """
    Runs the endpoint resolution pipeline for one query:

    resolve plan -> validate/revise -> fill placeholders -> authenticate -> execute

    Each call is bounded by the concurrency semaphore and the pipeline
    deadline. Failures come back as error results so the calling agent
    loop keeps going.

    With ``agent_use_retrieval`` set, documentation comes from ``retriever``:
    the lexical SpecificationRetriever by default, or any other Retriever,
    e.g. a StaticRetriever holding pre-chunked docs per category.
    """

    def __init__(
        self,
        settings: Settings,
        registry: ToolRegistry,
        classifier: IntentClassifier,
        spec_cache: SpecificationCache,
        executor: RequestExecutor,
        auth_resolver: AuthenticationResolver,
        retriever: Optional[Retriever] = None,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.classifier = classifier
        self.spec_cache = spec_cache
        self.executor = executor
        self.auth_resolver = auth_resolver
        self.retriever = retriever
        self.semaphore = asyncio.Semaphore(settings.agent_max_concurrency)
        self._sessions: "OrderedDict[str, RequestContext]" = OrderedDict()

    def session(
        self,
        session_id: Optional[str] = None,
        cart_id: Optional[str] = None,
        authentication: Optional[AuthenticationDescriptor] = None,
    ) -> RequestContext:
        """Context for ``session_id``; a fresh one when no id is given."""
        context = self._sessions.get(session_id) if session_id else None
        if context is None:
            context = RequestContext()
            if session_id:
                self._sessions[session_id] = context
                while len(self._sessions) > MAX_SESSIONS:
                    self._sessions.popitem(last=False)
        elif session_id:
            self._sessions.move_to_end(session_id)

        if cart_id:
            context.cart_id = cart_id
        elif not context.cart_id:
            context.cart_id = str(uuid.uuid4())
            logger.info("Generated new cart ID: %s", context.cart_id)
        if authentication is not None:
            context.authentication = authentication
        return context

    def resolver_for(self, category: ApiCategory) -> IntentResolver:
        strategy: CorpusStrategy
        if self.settings.agent_use_retrieval and self.retriever is not None:
            strategy = RetrievalStrategy(
                self.retriever, category.name, self.settings.agent_retrieval_top_k
            )
        else:
            if not category.spec_url:
                raise CommerceAgentError(f"No OpenAPI source configured for {category.name}")
            strategy = FullSpecificationStrategy(self.spec_cache, category.spec_url)
        return IntentResolver(self.classifier, strategy, instructions=category.instructions)

    async def run_query(
        self, category_name: str, query: str, context: RequestContext
    ) -> Dict[str, Any]:
        async with self.semaphore:
            logger.info("Running %s tool query=%r", category_name, query)
            try:
                outcome = await asyncio.wait_for(
                    self.run_pipeline(self.registry.get(category_name), query, context),
                    timeout=self.settings.agent_pipeline_timeout_seconds,
                )
            except asyncio.TimeoutError:
                logger.error("Pipeline timed out for %s query=%r", category_name, query)
                context.last_action_success = False
                return self._format_error("Error executing request: the request timed out")
            except (CommerceAgentError, KeyError) as exc:
                logger.error("Pipeline failed for %s: %s", category_name, exc)
                context.last_action_success = False
                return self._format_error(f"Error executing request: {exc}")

            context.remember(query, outcome.plan.explanation)
            return self._format_result(outcome.to_dict())

    async def run_pipeline(
        self, category: ApiCategory, query: str, context: RequestContext
    ) -> PipelineOutcome:
        plan = await self.resolver_for(category).plan_and_validate(query, context)
        # values held by the session win over ids lifted from the planned path
        values = {**plan.path_values, **context.placeholder_values()}
        endpoint = substitute_placeholders(plan.path, values)
        result = await self._send(plan.method, endpoint, plan.body, context)
        return PipelineOutcome(plan=plan, endpoint=endpoint, result=result)

    async def execute_request(
        self,
        method: str,
        endpoint: str,
        body: Optional[Dict[str, Any]],
        context: RequestContext,
    ) -> Dict[str, Any]:
        """Direct execution for agents that already know the endpoint."""
        method = method.upper()
        async with self.semaphore:
            logger.info("Executing %s %s body=%s", method, endpoint, redact_payload(body))
            try:
                if method == "POST" and not body:
                    raise ExecutionError("POST requests require a non-empty body object")
                if method in ("PUT", "PATCH") and body is None:
                    raise ExecutionError(f"{method} requests require a body object")
                if method not in BODY_METHODS and method not in ("GET", "DELETE"):
                    raise ExecutionError(f"Unsupported request type: {method}")
                endpoint = substitute_placeholders(endpoint, context.placeholder_values())
                result = await asyncio.wait_for(
                    self._send(method, endpoint, body, context),
                    timeout=self.settings.agent_pipeline_timeout_seconds,
                )
            except asyncio.TimeoutError:
                return self._format_error("Error executing request: the request timed out")
            except CommerceAgentError as exc:
                logger.error("Request failed: %s", exc)
                return self._format_error(f"Error executing request: {exc}")
            return self._format_result(result.to_dict())

    async def _send(
        self, method: str, endpoint: str, body: Any, context: RequestContext
    ) -> RequestResult:
        descriptor = context.authentication or self.settings.key_authentication()
        base_url = context.base_url or self.settings.ep_base_url
        if isinstance(descriptor, TokenAuthentication) and descriptor.base_url:
            base_url = descriptor.base_url
        options = await self.auth_resolver.resolve(descriptor, base_url)
        result = await self.executor.execute(
            method, endpoint, options, body=body if method in BODY_METHODS else None
        )
        context.last_action_success = result.success
        return result

    def _format_result(self, result: Any) -> Dict[str, Any]:
        return {"content": [{"type": "json", "json": result}]}

    def _format_error(self, message: str) -> Dict[str, Any]:
        return {"content": [{"type": "text", "text": message}], "is_error": True}
