"""Turns a free-text query into a concrete request plan.

Two corpus strategies feed the planner: the full operation list of one
OpenAPI document (the classifier first picks ``{method, path}``, then sees
that operation in detail), or documentation chunks from a retriever scoped to
an API category. Either way the planner answers with schema-constrained
output and the resulting plan keeps path templates such as
``/v2/carts/{cartId}/items``; identifiers come from the request context later.

``plan_and_validate`` adds one validation round. A ``NEEDS_REVISION`` verdict
buys exactly one revision call whose result is returned as is.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, NamedTuple, Optional, Protocol, Sequence

from .classifier import IntentClassifier
from .errors import ClassificationError
from .models import EndpointChoice, PlannedRequest, RequestContext, RequestPlan, ValidationVerdict
from .openapi import (
    SpecificationCache,
    find_operation,
    format_operation,
    render_operation_list,
)
from .retrieval import Retriever

logger = logging.getLogger(__name__)

_CHUNK_OPERATION = re.compile(r"^(GET|POST|PUT|DELETE|PATCH)\s+(/\S*)", re.MULTILINE)

ENDPOINT_SYSTEM_PROMPT = """
You are a helpful assistant that finds the API operation matching a user query.
Answer with the HTTP method and the path template exactly as listed below,
keeping placeholders such as {cartId} untouched.
Here are the operations and their descriptions:
""".strip()

PLAN_SYSTEM_PROMPT = """
Given a query from a user, analyze the intent and determine the API request that fulfills it.
{instructions}

Use ONLY operations from the API documentation provided by the user message.
Rules:
- endpoint must be a path template from the documentation. Keep placeholders such as
  {{cartId}} or {{product_id}} as they are; never put concrete identifiers in the path.
  Query strings (filters, sorting, includes) may be appended when the documentation allows them.
- body_json is the JSON encoded request body for POST, PUT and PATCH, otherwise null.
  Identifiers mentioned in the query (product ids, SKUs, quantities) belong in the body.
- explanation briefly states what the request will do.
""".strip()

VALIDATION_SYSTEM_PROMPT = """
Validate if the following API request plan correctly addresses the user's query.

Respond with either:
"VALID" if the plan correctly addresses the user's query, or
"NEEDS_REVISION: [specific reason]" if the plan doesn't properly address the query.
""".strip()

REVISION_SYSTEM_PROMPT = """
Revise the API request plan based on this feedback: {reason}
Follow the same rules as before: template paths only, body_json for the request body.
""".strip()


@dataclass
class Corpus:
    chunks: List[str]
    templates: List[str] = field(default_factory=list)

    def render(self) -> str:
        return "\n\n".join(self.chunks)


class CorpusStrategy(Protocol):
    async def gather(
        self, query: str, context: RequestContext, classifier: IntentClassifier
    ) -> Corpus:
        ...


class TemplateMatch(NamedTuple):
    path: str
    values: Dict[str, str]


def match_template(path: str, templates: Sequence[str]) -> Optional[TemplateMatch]:
    """Map ``path`` onto one of ``templates``.

    An exact match wins; otherwise a template with the same number of
    segments whose literal segments agree is used, so a concrete
    ``/v2/carts/abc/items`` comes back as ``/v2/carts/{cartId}/items`` with
    ``{"cartId": "abc"}`` as the captured values. A trailing query string is
    carried over.
    """
    bare, sep, query = path.partition("?")
    bare = "/" + bare.strip("/")
    if bare in templates:
        return TemplateMatch(bare + sep + query, {})
    segments = bare.strip("/").split("/")
    for template in templates:
        template_segments = template.strip("/").split("/")
        if len(template_segments) != len(segments):
            continue
        values: Dict[str, str] = {}
        for t, s in zip(template_segments, segments):
            if t.startswith("{") and t.endswith("}"):
                if not (s.startswith("{") and s.endswith("}")):
                    values[t[1:-1]] = s
            elif t != s:
                break
        else:
            return TemplateMatch(template + sep + query, values)
    return None


class FullSpecificationStrategy:
    def __init__(self, cache: SpecificationCache, spec_url: str) -> None:
        self.cache = cache
        self.spec_url = spec_url

    async def gather(
        self, query: str, context: RequestContext, classifier: IntentClassifier
    ) -> Corpus:
        document = await self.cache.load(self.spec_url)
        listing = render_operation_list(document)
        choice = await classifier.classify(
            f"{ENDPOINT_SYSTEM_PROMPT}\n{listing}",
            f"I am looking for the method and path that best match the query: {query}",
            EndpointChoice,
        )
        templates = list((document.get("paths") or {}).keys())
        match = match_template(choice.path, templates)
        path = match.path.partition("?")[0] if match else None
        if path is None or find_operation(document, path, choice.method) is None:
            raise ClassificationError(
                f"Classifier chose {choice.method} {choice.path}, which is not in {self.spec_url}"
            )
        logger.info("Selected operation %s %s for query %r", choice.method, path, query)
        return Corpus(
            chunks=[format_operation(document, path, choice.method)],
            templates=[path],
        )


class RetrievalStrategy:
    def __init__(self, retriever: Retriever, category: str, top_k: int = 5) -> None:
        self.retriever = retriever
        self.category = category
        self.top_k = top_k

    async def gather(
        self, query: str, context: RequestContext, classifier: IntentClassifier
    ) -> Corpus:
        chunks = await self.retriever.search(query, self.category, self.top_k)
        if not chunks:
            raise ClassificationError(
                f"No API documentation found for category {self.category!r}"
            )
        templates: List[str] = []
        for chunk in chunks:
            for _, path in _CHUNK_OPERATION.findall(chunk):
                if path not in templates:
                    templates.append(path)
        return Corpus(chunks=list(chunks), templates=templates)


class PlanValidator:
    def __init__(self, classifier: IntentClassifier) -> None:
        self.classifier = classifier

    async def validate(self, query: str, plan: RequestPlan) -> ValidationVerdict:
        answer = await self.classifier.complete(
            VALIDATION_SYSTEM_PROMPT,
            f"User query: {query}\nAPI execution plan: {plan.describe()}",
        )
        return self.parse_verdict(answer)

    @staticmethod
    def parse_verdict(answer: str) -> ValidationVerdict:
        marker = "NEEDS_REVISION"
        index = answer.find(marker)
        if index == -1:
            return ValidationVerdict(valid=True)
        reason = answer[index + len(marker):].lstrip(" :").strip()
        return ValidationVerdict(valid=False, reason=reason or "unspecified")


class IntentResolver:
    def __init__(
        self,
        classifier: IntentClassifier,
        strategy: CorpusStrategy,
        instructions: str = "",
    ) -> None:
        self.classifier = classifier
        self.strategy = strategy
        self.instructions = instructions
        self.validator = PlanValidator(classifier)

    async def resolve(self, query: str, context: Optional[RequestContext] = None) -> RequestPlan:
        plan, _ = await self._plan(query, context or RequestContext())
        return plan

    async def plan_and_validate(
        self, query: str, context: Optional[RequestContext] = None
    ) -> RequestPlan:
        context = context or RequestContext()
        plan, corpus = await self._plan(query, context)

        verdict = await self.validator.validate(query, plan)
        if verdict.valid:
            return plan

        logger.info("Plan needs revision: %s", verdict.reason)
        user = (
            f"{self._user_prompt(query, corpus, context)}\n\n"
            f"Previous plan: {plan.describe()}"
        )
        revised = await self._classify_plan(
            REVISION_SYSTEM_PROMPT.format(reason=verdict.reason) + "\n\n" + self._system_prompt(),
            user,
            corpus,
        )
        logger.info("Revised plan: %s", revised.describe())
        return revised

    async def _plan(self, query: str, context: RequestContext) -> tuple[RequestPlan, Corpus]:
        corpus = await self.strategy.gather(query, context, self.classifier)
        plan = await self._classify_plan(
            self._system_prompt(), self._user_prompt(query, corpus, context), corpus
        )
        logger.info("Planned request: %s", plan.describe())
        return plan, corpus

    async def _classify_plan(self, system: str, user: str, corpus: Corpus) -> RequestPlan:
        planned = await self.classifier.classify(system, user, PlannedRequest)
        plan = planned.to_plan()
        if corpus.templates:
            match = match_template(plan.path, corpus.templates)
            if match and match.path != plan.path:
                logger.info("Mapped planned path %s onto template %s", plan.path, match.path)
                plan = plan.model_copy(update={"path": match.path, "path_values": match.values})
        return plan

    def _system_prompt(self) -> str:
        return PLAN_SYSTEM_PROMPT.format(instructions=self.instructions)

    def _user_prompt(self, query: str, corpus: Corpus, context: RequestContext) -> str:
        parts = [f"Here is the query: {query}"]
        if context.conversation_history:
            parts.append("Previous conversation context:\n" + "\n".join(context.conversation_history))
        if context.last_action_success is not None:
            parts.append(
                "The previous action "
                + ("succeeded." if context.last_action_success else "failed; try a different approach.")
            )
        known = sorted(context.placeholder_values())
        if known:
            parts.append(f"Values available for path placeholders: {json.dumps(known)}")
        parts.append(f"Here is the API documentation available:\n{corpus.render()}")
        return "\n\n".join(parts)
