"""Internal models for plans, credentials and results."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from .errors import ClassificationError

HttpMethod = Literal["GET", "POST", "PUT", "DELETE", "PATCH"]

MAX_HISTORY_ENTRIES = 20


@dataclass(frozen=True)
class OperationSummary:
    method: str
    path: str
    description: str

    def render(self) -> str:
        return f"{self.method} {self.path}  {self.description}".rstrip()


class EndpointChoice(BaseModel):
    """Structured answer of the endpoint selection step."""

    method: HttpMethod = Field(description="HTTP method of the operation")
    path: str = Field(
        description="Path template exactly as listed, e.g. /v2/carts/{cartId}/items"
    )


class PlannedRequest(BaseModel):
    """Structured answer of the request planning step.

    The body travels as a JSON string because schema-constrained output
    cannot describe an arbitrary object.
    """

    request_type: HttpMethod = Field(description="HTTP method to use")
    endpoint: str = Field(
        description="Path template with {placeholders}, never concrete ids"
    )
    body_json: Optional[str] = Field(
        description="JSON encoded request body, or null when no body is needed"
    )
    explanation: str = Field(description="What this request will do")

    def to_plan(self) -> "RequestPlan":
        body: Any = None
        if self.body_json and self.body_json.strip():
            try:
                body = json.loads(self.body_json)
            except json.JSONDecodeError as exc:
                raise ClassificationError(
                    f"Classifier returned an unparsable request body: {exc}"
                ) from exc
        return RequestPlan(
            method=self.request_type,
            path=self.endpoint.strip(),
            body=body,
            explanation=self.explanation,
        )


class RequestPlan(BaseModel):
    method: HttpMethod
    path: str
    body: Optional[Any] = None
    explanation: str = ""
    # placeholder values read off a concrete path the classifier returned
    path_values: Dict[str, str] = Field(default_factory=dict)

    def describe(self) -> str:
        body = json.dumps(self.body) if self.body is not None else "none"
        return f"{self.method} {self.path} body={body} ({self.explanation})"


@dataclass(frozen=True)
class ValidationVerdict:
    valid: bool
    reason: Optional[str] = None


class TokenAuthentication(BaseModel):
    access_token: str
    store_id: Optional[str] = None
    organization_id: Optional[str] = None
    base_url: Optional[str] = None


class KeyAuthentication(BaseModel):
    grant_type: Literal["implicit", "client_credentials"] = "implicit"
    client_id: str
    client_secret: Optional[str] = None


AuthenticationDescriptor = Union[TokenAuthentication, KeyAuthentication]


@dataclass(frozen=True)
class RequestOptions:
    token: Optional[str]
    base_url: str
    custom_headers: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ResultEnvelope:
    success: bool
    status: int
    status_text: str
    data: Any

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "status": self.status,
            "statusText": self.status_text,
            "data": self.data,
        }


@dataclass(frozen=True)
class TransportFailure:
    error: str
    message: str
    success: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "error": self.error, "message": self.message}


RequestResult = Union[ResultEnvelope, TransportFailure]


@dataclass
class RequestContext:
    """Per-session state handed down the pipeline explicitly."""

    cart_id: Optional[str] = None
    path_values: Dict[str, str] = field(default_factory=dict)
    conversation_history: List[str] = field(default_factory=list)
    authentication: Optional[AuthenticationDescriptor] = None
    base_url: Optional[str] = None
    last_action_success: Optional[bool] = None

    def placeholder_values(self) -> Dict[str, str]:
        values = dict(self.path_values)
        if self.cart_id:
            values.setdefault("cartId", self.cart_id)
        return values

    def remember(self, query: str, answer: str) -> None:
        self.conversation_history.append(f"User: {query}")
        self.conversation_history.append(f"Assistant: {answer}")
        if len(self.conversation_history) > MAX_HISTORY_ENTRIES:
            del self.conversation_history[:-MAX_HISTORY_ENTRIES]
