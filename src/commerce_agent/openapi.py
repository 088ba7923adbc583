"""OpenAPI spec loader, dereferencer and prompt formatter."""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import yaml

from .errors import SpecificationLoadError
from .models import OperationSummary


logger = logging.getLogger(__name__)

HTTP_VERBS = ("get", "post", "put", "delete", "patch", "options", "head")
NOTE_MARKER = ":::note"
SUMMARY_LIMIT = 200
DESCRIPTION_LIMIT = 4000
DEFAULT_TTL_SECONDS = 30 * 60


class SpecificationCache:
    """Loads OpenAPI documents by URL and keeps them for ``ttl_seconds``.

    Entries are inserted only after a successful fetch and parse, and are
    replaced wholesale once expired. Two callers missing the same URL at the
    same time both fetch; the last one to finish wins.
    """

    def __init__(
        self,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        timeout_seconds: float = 30,
        clock: Callable[[], float] = time.monotonic,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.timeout_seconds = timeout_seconds
        self.clock = clock
        self.transport = transport
        self._cache: Dict[str, Tuple[float, Dict[str, Any]]] = {}

    async def load(self, url: str) -> Dict[str, Any]:
        cached = self._cache.get(url)
        if cached and self.clock() - cached[0] < self.ttl_seconds:
            return cached[1]

        logger.info("Fetching OpenAPI spec: %s", url)
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds, transport=self.transport
            ) as client:
                response = await client.get(url)
        except httpx.HTTPError as exc:
            raise SpecificationLoadError(f"Failed to fetch OpenAPI spec {url}: {exc}") from exc
        if response.status_code != 200:
            raise SpecificationLoadError(
                f"Failed to fetch OpenAPI spec {url}: HTTP {response.status_code}"
            )

        document = dereference(parse_document(response.text, url))
        self._cache[url] = (self.clock(), document)
        return document

    def invalidate(self, url: Optional[str] = None) -> None:
        if url is None:
            self._cache.clear()
        else:
            self._cache.pop(url, None)


def parse_document(text: str, source: str = "<memory>") -> Dict[str, Any]:
    try:
        if text.lstrip().startswith("{"):
            document = json.loads(text)
        else:
            document = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise SpecificationLoadError(f"Could not parse OpenAPI spec {source}: {exc}") from exc
    if not isinstance(document, dict) or not isinstance(document.get("paths"), dict):
        raise SpecificationLoadError(f"OpenAPI spec {source} has no paths mapping")
    return document


def dereference(document: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of ``document`` with every local ``$ref`` inlined.

    A reference that points back into its own expansion is replaced by the
    target without its nested references, so recursive schemas terminate.
    """

    def resolve_pointer(ref: str) -> Any:
        if not ref.startswith("#/"):
            raise SpecificationLoadError(f"Unsupported external reference: {ref}")
        node: Any = document
        for part in ref[2:].split("/"):
            part = part.replace("~1", "/").replace("~0", "~")
            if isinstance(node, dict) and part in node:
                node = node[part]
            elif isinstance(node, list) and part.isdigit() and int(part) < len(node):
                node = node[int(part)]
            else:
                raise SpecificationLoadError(f"Unresolvable reference: {ref}")
        return node

    def walk(node: Any, seen: Tuple[str, ...]) -> Any:
        if isinstance(node, dict):
            ref = node.get("$ref")
            if isinstance(ref, str):
                if ref in seen:
                    return {key: value for key, value in node.items() if key != "$ref"}
                target = walk(resolve_pointer(ref), seen + (ref,))
                siblings = {k: walk(v, seen) for k, v in node.items() if k != "$ref"}
                if isinstance(target, dict):
                    return {**target, **siblings}
                return target
            return {key: walk(value, seen) for key, value in node.items()}
        if isinstance(node, list):
            return [walk(item, seen) for item in node]
        return node

    return walk(document, ())


def strip_note(description: str) -> str:
    index = description.find(NOTE_MARKER)
    if index == -1:
        return description.strip()
    return description[:index].strip()


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 3].rstrip() + "..."


def list_operations(document: Dict[str, Any]) -> List[OperationSummary]:
    operations: List[OperationSummary] = []
    for path, path_item in (document.get("paths") or {}).items():
        if not isinstance(path_item, dict):
            continue
        for method, operation in path_item.items():
            if method.lower() not in HTTP_VERBS or not isinstance(operation, dict):
                continue
            description = operation.get("description") or operation.get("summary") or "No description"
            operations.append(
                OperationSummary(
                    method=method.upper(),
                    path=path,
                    description=truncate(
                        " ".join(strip_note(description).split()), SUMMARY_LIMIT
                    ),
                )
            )
    return operations


def render_operation_list(document: Dict[str, Any]) -> str:
    return "\n".join(op.render() for op in list_operations(document))


def find_operation(
    document: Dict[str, Any], path: str, method: str
) -> Optional[Dict[str, Any]]:
    path_item = (document.get("paths") or {}).get(path)
    if not isinstance(path_item, dict):
        return None
    operation = path_item.get(method.lower())
    if not isinstance(operation, dict):
        return None
    return operation


def format_operation(document: Dict[str, Any], path: str, method: str) -> str:
    operation = find_operation(document, path, method)
    if operation is None:
        return f"No operation found for {method.upper()} {path}"

    path_item = document["paths"][path]
    description = operation.get("description") or operation.get("summary") or "No description"
    lines = [
        f"{method.upper()} {path}",
        f"Description: {truncate(strip_note(description), DESCRIPTION_LIMIT)}",
    ]

    parameters = [*(path_item.get("parameters") or []), *(operation.get("parameters") or [])]
    lines.append("Parameters:")
    if parameters:
        for parameter in parameters:
            if not isinstance(parameter, dict) or not parameter.get("name"):
                continue
            required = "required" if parameter.get("required") else "optional"
            lines.append(
                f"  - {parameter['name']} ({parameter.get('in', 'query')}, {required}): "
                f"{' '.join(str(parameter.get('description') or '').split())}"
            )
    else:
        lines.append("  none")

    responses = operation.get("responses") or {}
    success = [
        f"  - {code}: {(response or {}).get('description', '')}"
        for code, response in responses.items()
        if str(code).startswith("2")
    ]
    lines.append("Responses:")
    lines.extend(success or ["  none documented"])

    lines.append("Request Body:")
    lines.extend(_render_request_body(operation.get("requestBody")))
    return "\n".join(lines)


def _render_request_body(request_body: Optional[Dict[str, Any]]) -> List[str]:
    if not request_body:
        return ["  No request body"]
    content = request_body.get("content") or {}
    media = content.get("application/json") or next(iter(content.values()), None) or {}

    examples = media.get("examples") or {}
    if examples:
        rendered: List[str] = []
        for name, example in examples.items():
            example = example or {}
            rendered.append(f"  Example {example.get('summary') or name}:")
            rendered.append(_indent(json.dumps(example.get("value"), indent=2, default=str)))
        return rendered
    if "example" in media:
        return ["  Example:", _indent(json.dumps(media["example"], indent=2, default=str))]

    schema = media.get("schema")
    if schema:
        example = synthesize_example(schema)
        return [
            "  Example (generated from schema):",
            _indent(json.dumps(example, indent=2, default=str)),
        ]
    return [f"  {request_body.get('description') or 'No request body'}"]


def synthesize_example(schema: Any, depth: int = 0) -> Any:
    """Build a representative value: ``example``, then ``default``, then a walk."""
    if not isinstance(schema, dict) or depth > 8:
        return ""
    if "example" in schema:
        return schema["example"]
    if "default" in schema:
        return schema["default"]
    for combinator in ("allOf", "oneOf", "anyOf"):
        if schema.get(combinator):
            if combinator == "allOf":
                merged: Dict[str, Any] = {}
                for part in schema["allOf"]:
                    value = synthesize_example(part, depth + 1)
                    if isinstance(value, dict):
                        merged.update(value)
                return merged
            return synthesize_example(schema[combinator][0], depth + 1)
    if schema.get("type") == "array" or "items" in schema:
        return [synthesize_example(schema.get("items") or {}, depth + 1)]
    properties = schema.get("properties")
    if properties:
        return {
            name: synthesize_example(prop, depth + 1)
            for name, prop in properties.items()
        }
    if schema.get("enum"):
        return schema["enum"][0]
    return ""


def _indent(text: str, prefix: str = "    ") -> str:
    return "\n".join(prefix + line for line in text.splitlines())
