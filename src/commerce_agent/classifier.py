"""Intent classification backed by an OpenAI chat model."""

from __future__ import annotations

import logging
from typing import Optional, Type, TypeVar

from openai import (
    APIConnectionError,
    APIError,
    AsyncOpenAI,
    LengthFinishReasonError,
    RateLimitError,
)
from pydantic import BaseModel, ValidationError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .errors import ClassificationError

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o-mini"

SchemaT = TypeVar("SchemaT", bound=BaseModel)

_transient = retry(
    retry=retry_if_exception_type((APIConnectionError, RateLimitError)),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=8),
    reraise=True,
)


class IntentClassifier:
    """Asks a chat model either for a schema-constrained object or free text."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout_seconds: float = 60,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self.model = model or DEFAULT_MODEL
        self.client = client or AsyncOpenAI(api_key=api_key or None, timeout=timeout_seconds)

    async def classify(self, system: str, user: str, schema: Type[SchemaT]) -> SchemaT:
        try:
            return await self._classify(system, user, schema)
        except APIError as exc:
            raise ClassificationError(
                f"Classifier request failed ({type(exc).__name__}): {exc}"
            ) from exc

    async def complete(self, system: str, user: str) -> str:
        try:
            return await self._complete(system, user)
        except APIError as exc:
            raise ClassificationError(
                f"Classifier request failed ({type(exc).__name__}): {exc}"
            ) from exc

    @_transient
    async def _classify(self, system: str, user: str, schema: Type[SchemaT]) -> SchemaT:
        logger.info(
            "Classifier request: model=%s schema=%s prompt_length=%s",
            self.model,
            schema.__name__,
            len(system) + len(user),
        )
        try:
            completion = await self.client.chat.completions.parse(
                model=self.model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                response_format=schema,
                temperature=0,
            )
        except ValidationError as exc:
            raise ClassificationError(
                f"Classifier output does not match {schema.__name__}: {exc}"
            ) from exc
        except LengthFinishReasonError as exc:
            raise ClassificationError(f"Classifier output was cut off: {exc}") from exc

        if not completion.choices:
            raise ClassificationError("No answer from classifier")
        message = completion.choices[0].message
        if message.parsed is not None:
            return message.parsed
        if getattr(message, "refusal", None):
            raise ClassificationError(f"Classifier refused to answer: {message.refusal}")
        if not message.content:
            raise ClassificationError("No answer from classifier")
        try:
            return schema.model_validate_json(message.content)
        except ValidationError as exc:
            raise ClassificationError(
                f"Classifier output does not match {schema.__name__}: {exc}"
            ) from exc

    @_transient
    async def _complete(self, system: str, user: str) -> str:
        logger.info("Classifier request: model=%s free text", self.model)
        completion = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            temperature=0,
        )
        content = completion.choices[0].message.content if completion.choices else None
        if not content:
            raise ClassificationError("No answer from classifier")
        return content
