import copy
import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
import yaml

from commerce_agent.config import Settings

CART_SPEC = {
    "openapi": "3.1.0",
    "info": {"title": "Carts", "version": "1.0"},
    "servers": [{"url": "https://api.example.com"}],
    "paths": {
        "/v2/carts/{cartId}": {
            "parameters": [{"$ref": "#/components/parameters/CartId"}],
            "get": {
                "summary": "Get a cart",
                "description": "Retrieve a cart by id. :::note Carts are created on first access.",
                "responses": {
                    "200": {"description": "The cart"},
                    "404": {"description": "Cart not found"},
                },
            },
            "delete": {
                "description": "Delete a cart",
                "responses": {"204": {"description": "Deleted"}},
            },
        },
        "/v2/carts/{cartId}/items": {
            "parameters": [{"$ref": "#/components/parameters/CartId"}],
            "get": {
                "description": "Get cart items",
                "responses": {"200": {"description": "Items in the cart"}},
            },
            "post": {
                "description": "Add a product to the cart",
                "requestBody": {
                    "content": {
                        "application/json": {
                            "schema": {"$ref": "#/components/schemas/CartItemRequest"}
                        }
                    }
                },
                "responses": {
                    "201": {"description": "Item added"},
                    "400": {"description": "Bad request"},
                },
            },
        },
        "/v2/carts/{cartId}/checkout": {
            "parameters": [{"$ref": "#/components/parameters/CartId"}],
            "post": {
                "description": "Checkout the cart",
                "requestBody": {
                    "content": {
                        "application/json": {
                            "examples": {
                                "guest": {
                                    "summary": "Guest checkout",
                                    "value": {"data": {"customer": {"email": "a@b.c"}}},
                                }
                            }
                        }
                    }
                },
                "responses": {"201": {"description": "Order created"}},
            },
        },
    },
    "components": {
        "parameters": {
            "CartId": {
                "name": "cartId",
                "in": "path",
                "required": True,
                "description": "The cart id",
                "schema": {"type": "string"},
            }
        },
        "schemas": {
            "CartItemRequest": {
                "type": "object",
                "properties": {
                    "data": {
                        "type": "object",
                        "properties": {
                            "type": {"type": "string", "default": "cart_item"},
                            "id": {"type": "string", "example": "ABC123"},
                            "quantity": {"type": "integer", "example": 1},
                            "sku": {"type": "string"},
                        },
                    }
                },
            }
        },
    },
}

CART_SPEC_URL = "https://specs.example.com/carts.yaml"
BASE_URL = "https://api.example.com"


@pytest.fixture
def cart_spec():
    return copy.deepcopy(CART_SPEC)


@pytest.fixture
def cart_spec_yaml():
    return yaml.safe_dump(CART_SPEC, sort_keys=False)


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        ep_base_url=BASE_URL,
        ep_client_id="client-1",
        ep_grant_type="implicit",
        openai_api_key="sk-test",
        spec_urls={},
    )


class RecordingTransport:
    """httpx.MockTransport wrapper that remembers every request it saw."""

    def __init__(self, handler):
        self.requests = []
        self._handler = handler
        self.transport = httpx.MockTransport(self._handle)

    def _handle(self, request):
        self.requests.append(request)
        return self._handler(request)


def json_response(status, payload):
    return httpx.Response(status, content=json.dumps(payload), headers={"Content-Type": "application/json"})


def scripted_classifier(choices=(), plans=(), verdicts=()):
    """Classifier double answering classify() and complete() from scripts.

    classify() answers from ``choices`` for EndpointChoice requests and from
    ``plans`` for everything else.
    """
    choices, plans = list(choices), list(plans)

    async def classify(system, user, schema):
        source = choices if schema.__name__ == "EndpointChoice" else plans
        return source.pop(0)

    classifier = MagicMock()
    classifier.classify = AsyncMock(side_effect=classify)
    classifier.complete = AsyncMock(side_effect=list(verdicts))
    return classifier
