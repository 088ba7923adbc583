from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
import openai
from openai import APIConnectionError
from tenacity import wait_none

from commerce_agent.classifier import IntentClassifier
from commerce_agent.errors import ClassificationError
from commerce_agent.models import EndpointChoice


def completion(parsed=None, content=None, refusal=None):
    message = SimpleNamespace(parsed=parsed, content=content, refusal=refusal)
    return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def fake_client(parse=None, create=None):
    client = MagicMock()
    client.chat.completions.parse = AsyncMock(side_effect=parse)
    client.chat.completions.create = AsyncMock(side_effect=create)
    return client


class TestClassify:
    async def test_returns_parsed_object(self):
        choice = EndpointChoice(method="GET", path="/v2/carts/{cartId}")
        client = fake_client(parse=[completion(parsed=choice)])
        classifier = IntentClassifier(model="gpt-test", client=client)

        result = await classifier.classify("system", "user", EndpointChoice)

        assert result is choice
        kwargs = client.chat.completions.parse.call_args.kwargs
        assert kwargs["model"] == "gpt-test"
        assert kwargs["response_format"] is EndpointChoice
        assert kwargs["temperature"] == 0
        assert [m["role"] for m in kwargs["messages"]] == ["system", "user"]

    async def test_validates_raw_content_when_not_parsed(self):
        client = fake_client(
            parse=[completion(content='{"method": "POST", "path": "/v2/carts/{cartId}/items"}')]
        )
        classifier = IntentClassifier(client=client)

        result = await classifier.classify("s", "u", EndpointChoice)

        assert result == EndpointChoice(method="POST", path="/v2/carts/{cartId}/items")

    async def test_empty_answer_raises(self):
        classifier = IntentClassifier(client=fake_client(parse=[completion()]))
        with pytest.raises(ClassificationError, match="No answer"):
            await classifier.classify("s", "u", EndpointChoice)

    async def test_no_choices_raises(self):
        client = fake_client(parse=[SimpleNamespace(choices=[])])
        classifier = IntentClassifier(client=client)
        with pytest.raises(ClassificationError, match="No answer"):
            await classifier.classify("s", "u", EndpointChoice)

    async def test_malformed_answer_raises(self):
        client = fake_client(parse=[completion(content='{"method": "FETCH"}')])
        classifier = IntentClassifier(client=client)
        with pytest.raises(ClassificationError, match="EndpointChoice"):
            await classifier.classify("s", "u", EndpointChoice)

    async def test_refusal_raises(self):
        client = fake_client(parse=[completion(refusal="I can't help with that")])
        classifier = IntentClassifier(client=client)
        with pytest.raises(ClassificationError, match="refused"):
            await classifier.classify("s", "u", EndpointChoice)

    async def test_retries_connection_errors(self):
        error = APIConnectionError(request=httpx.Request("POST", "https://api.openai.com"))
        choice = EndpointChoice(method="GET", path="/v2/carts/{cartId}")
        client = fake_client(parse=[error, completion(parsed=choice)])
        classifier = IntentClassifier(client=client)

        classify = IntentClassifier._classify.retry_with(wait=wait_none())
        result = await classify(classifier, "s", "u", EndpointChoice)

        assert result is choice
        assert client.chat.completions.parse.await_count == 2


class TestComplete:
    async def test_returns_text(self):
        client = fake_client(create=[completion(content="VALID")])
        classifier = IntentClassifier(client=client)
        assert await classifier.complete("s", "u") == "VALID"

    async def test_empty_text_raises(self):
        client = fake_client(create=[completion(content="")])
        classifier = IntentClassifier(client=client)
        with pytest.raises(ClassificationError, match="No answer"):
            await classifier.complete("s", "u")


def openai_status_error(error_type, status, message):
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    return error_type(message, response=httpx.Response(status, request=request), body=None)


class TestProviderErrors:
    async def test_rejected_request_becomes_classification_error(self):
        error = openai_status_error(openai.AuthenticationError, 401, "Incorrect API key provided")
        classifier = IntentClassifier(client=fake_client(parse=[error]))

        with pytest.raises(ClassificationError, match="AuthenticationError"):
            await classifier.classify("s", "u", EndpointChoice)

    async def test_bad_request_on_free_text_becomes_classification_error(self):
        error = openai_status_error(openai.BadRequestError, 400, "context length exceeded")
        classifier = IntentClassifier(client=fake_client(create=[error]))

        with pytest.raises(ClassificationError, match="context length exceeded"):
            await classifier.complete("s", "u")

    async def test_exhausted_retries_become_classification_error(self, monkeypatch):
        request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        errors = [openai.APITimeoutError(request=request) for _ in range(3)]
        client = fake_client(parse=errors)
        classifier = IntentClassifier(client=client)
        monkeypatch.setattr(
            IntentClassifier,
            "_classify",
            IntentClassifier._classify.retry_with(wait=wait_none()),
        )

        with pytest.raises(ClassificationError, match="APITimeoutError"):
            await classifier.classify("s", "u", EndpointChoice)
        assert client.chat.completions.parse.await_count == 3
