import json

import httpx
import pytest

from commerce_agent.errors import SpecificationLoadError
from commerce_agent.openapi import (
    SpecificationCache,
    dereference,
    format_operation,
    list_operations,
    parse_document,
    render_operation_list,
    synthesize_example,
)

from conftest import CART_SPEC_URL, RecordingTransport


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class TestParseDocument:
    def test_parses_yaml(self, cart_spec_yaml):
        doc = parse_document(cart_spec_yaml)
        assert "/v2/carts/{cartId}/items" in doc["paths"]

    def test_parses_json(self, cart_spec):
        doc = parse_document(json.dumps(cart_spec))
        assert doc["info"]["title"] == "Carts"

    def test_rejects_document_without_paths(self):
        with pytest.raises(SpecificationLoadError):
            parse_document("openapi: 3.0.0\ninfo: {}\n")

    def test_rejects_garbage(self):
        with pytest.raises(SpecificationLoadError):
            parse_document("paths: [unclosed\n")


class TestDereference:
    def test_inlines_parameters_and_schemas(self, cart_spec):
        doc = dereference(cart_spec)
        item = doc["paths"]["/v2/carts/{cartId}/items"]
        assert item["parameters"][0]["name"] == "cartId"
        schema = item["post"]["requestBody"]["content"]["application/json"]["schema"]
        assert "$ref" not in json.dumps(doc)
        assert schema["properties"]["data"]["properties"]["id"]["example"] == "ABC123"

    def test_does_not_mutate_input(self, cart_spec):
        dereference(cart_spec)
        assert "$ref" in json.dumps(cart_spec)

    def test_recursive_schema_terminates(self):
        doc = {
            "paths": {},
            "components": {
                "schemas": {
                    "Node": {
                        "type": "object",
                        "properties": {"child": {"$ref": "#/components/schemas/Node"}},
                    }
                }
            },
        }
        resolved = dereference(doc)
        node = resolved["components"]["schemas"]["Node"]
        assert node["properties"]["child"]["properties"]["child"] == {}

    def test_unresolvable_reference_raises(self):
        with pytest.raises(SpecificationLoadError):
            dereference({"paths": {"/x": {"$ref": "#/components/missing"}}})


class TestListOperations:
    def test_lists_verbs_in_document_order(self, cart_spec):
        ops = list_operations(dereference(cart_spec))
        assert [(op.method, op.path) for op in ops] == [
            ("GET", "/v2/carts/{cartId}"),
            ("DELETE", "/v2/carts/{cartId}"),
            ("GET", "/v2/carts/{cartId}/items"),
            ("POST", "/v2/carts/{cartId}/items"),
            ("POST", "/v2/carts/{cartId}/checkout"),
        ]

    def test_ignores_path_level_parameters(self, cart_spec):
        ops = list_operations(dereference(cart_spec))
        assert all(op.method != "PARAMETERS" for op in ops)

    def test_strips_note(self, cart_spec):
        ops = list_operations(dereference(cart_spec))
        assert ops[0].description == "Retrieve a cart by id."

    def test_truncates_long_descriptions(self):
        doc = {"paths": {"/a": {"get": {"description": "word " * 200}}}}
        op = list_operations(doc)[0]
        assert len(op.description) <= 200
        assert op.description.endswith("...")

    def test_render_one_line_per_operation(self, cart_spec):
        rendered = render_operation_list(dereference(cart_spec))
        lines = rendered.splitlines()
        assert len(lines) == 5
        assert lines[3].startswith("POST /v2/carts/{cartId}/items  Add a product")


class TestFormatOperation:
    def test_includes_parameters_and_success_responses(self, cart_spec):
        text = format_operation(dereference(cart_spec), "/v2/carts/{cartId}", "get")
        assert "cartId (path, required): The cart id" in text
        assert "200: The cart" in text
        assert "404" not in text
        assert ":::note" not in text

    def test_synthesizes_body_from_schema(self, cart_spec):
        text = format_operation(dereference(cart_spec), "/v2/carts/{cartId}/items", "POST")
        assert "generated from schema" in text
        body = json.loads(text.split("generated from schema):\n", 1)[1])
        assert body == {"data": {"type": "cart_item", "id": "ABC123", "quantity": 1, "sku": ""}}

    def test_prefers_literal_examples(self, cart_spec):
        text = format_operation(dereference(cart_spec), "/v2/carts/{cartId}/checkout", "post")
        assert "Example Guest checkout:" in text
        assert '"email": "a@b.c"' in text

    def test_unknown_operation_fallback(self, cart_spec):
        text = format_operation(dereference(cart_spec), "/v2/nothing", "get")
        assert text == "No operation found for GET /v2/nothing"

    def test_known_path_unknown_method_fallback(self, cart_spec):
        text = format_operation(dereference(cart_spec), "/v2/carts/{cartId}", "patch")
        assert text == "No operation found for PATCH /v2/carts/{cartId}"

    def test_bounds_description(self):
        doc = {"paths": {"/a": {"get": {"description": "x" * 5000}}}}
        description_line = format_operation(doc, "/a", "get").splitlines()[1]
        assert len(description_line) <= len("Description: ") + 4000


class TestSynthesizeExample:
    def test_example_then_default_then_empty(self):
        assert synthesize_example({"type": "string", "example": "e", "default": "d"}) == "e"
        assert synthesize_example({"type": "string", "default": "d"}) == "d"
        assert synthesize_example({"type": "string"}) == ""

    def test_arrays_and_all_of(self):
        schema = {
            "type": "array",
            "items": {"allOf": [{"properties": {"a": {"example": 1}}}, {"properties": {"b": {}}}]},
        }
        assert synthesize_example(schema) == [{"a": 1, "b": ""}]


class TestSpecificationCache:
    def _transport(self, body):
        return RecordingTransport(lambda request: httpx.Response(200, text=body))

    async def test_serves_from_cache_within_ttl(self, cart_spec_yaml):
        clock = FakeClock()
        recorder = self._transport(cart_spec_yaml)
        cache = SpecificationCache(clock=clock, transport=recorder.transport)

        first = await cache.load(CART_SPEC_URL)
        clock.now += 29 * 60
        second = await cache.load(CART_SPEC_URL)

        assert first is second
        assert len(recorder.requests) == 1

    async def test_refetches_after_ttl(self, cart_spec_yaml):
        clock = FakeClock()
        recorder = self._transport(cart_spec_yaml)
        cache = SpecificationCache(clock=clock, transport=recorder.transport)

        first = await cache.load(CART_SPEC_URL)
        clock.now += 31 * 60
        second = await cache.load(CART_SPEC_URL)

        assert first is not second
        assert len(recorder.requests) == 2

    async def test_loaded_document_is_dereferenced(self, cart_spec_yaml):
        recorder = self._transport(cart_spec_yaml)
        cache = SpecificationCache(transport=recorder.transport)
        doc = await cache.load(CART_SPEC_URL)
        assert "$ref" not in json.dumps(doc)

    async def test_failed_load_is_not_cached(self, cart_spec_yaml):
        responses = [httpx.Response(503, text="down"), httpx.Response(200, text=cart_spec_yaml)]
        recorder = RecordingTransport(lambda request: responses.pop(0))
        cache = SpecificationCache(transport=recorder.transport)

        with pytest.raises(SpecificationLoadError):
            await cache.load(CART_SPEC_URL)
        doc = await cache.load(CART_SPEC_URL)

        assert "paths" in doc
        assert len(recorder.requests) == 2

    async def test_transport_failure_raises_load_error(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        cache = SpecificationCache(transport=httpx.MockTransport(refuse))
        with pytest.raises(SpecificationLoadError, match="connection refused"):
            await cache.load(CART_SPEC_URL)

    async def test_invalidate_forces_refetch(self, cart_spec_yaml):
        recorder = self._transport(cart_spec_yaml)
        cache = SpecificationCache(transport=recorder.transport)

        await cache.load(CART_SPEC_URL)
        cache.invalidate(CART_SPEC_URL)
        await cache.load(CART_SPEC_URL)

        assert len(recorder.requests) == 2
