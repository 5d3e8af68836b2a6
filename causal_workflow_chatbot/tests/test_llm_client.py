"""
Tests for the completion client and service wrapper (HTTP mocked).
"""

from unittest.mock import MagicMock, patch

import pytest
import requests

from causal_workflow.errors import ServiceInvocationError
from causal_workflow.llm_client import CompletionService, LocalLLMClient


def _response(status=200, body=None):
    response = MagicMock()
    response.status_code = status
    response.text = "error body"
    response.json.return_value = body if body is not None else {
        "choices": [{"message": {"content": '{"treatment": "aspirin"}'}}]
    }
    return response


class TestLocalLLMClient:

    def test_posts_chat_completion(self):
        client = LocalLLMClient("http://llm.local/v1/", api_key="key", timeout=3)
        with patch("causal_workflow.llm_client.requests.post", return_value=_response()) as post:
            reply = client.chat.completions.create(model="m", messages=[{"role": "user", "content": "hi"}], temperature=0.1)

        assert reply.choices[0].message.content == '{"treatment": "aspirin"}'
        args, kwargs = post.call_args
        assert args[0] == "http://llm.local/v1/chat/completions"
        assert kwargs["json"]["temperature"] == 0.1
        assert kwargs["headers"]["Authorization"] == "Bearer key"
        assert kwargs["timeout"] == 3

    def test_connection_error(self):
        client = LocalLLMClient("http://llm.local/v1")
        with patch("causal_workflow.llm_client.requests.post", side_effect=requests.ConnectionError("refused")):
            with pytest.raises(ServiceInvocationError):
                client.chat.completions.create(model="m", messages=[])

    def test_http_error(self):
        client = LocalLLMClient("http://llm.local/v1")
        with patch("causal_workflow.llm_client.requests.post", return_value=_response(status=500)):
            with pytest.raises(ServiceInvocationError, match="500"):
                client.chat.completions.create(model="m", messages=[])


class TestCompletionService:

    @pytest.mark.asyncio
    async def test_complete_returns_text(self):
        client = LocalLLMClient("http://llm.local/v1")
        service = CompletionService(client, "m", temperature=0.2)
        with patch("causal_workflow.llm_client.requests.post", return_value=_response()) as post:
            text = await service.complete("system", "prompt")

        assert text == '{"treatment": "aspirin"}'
        messages = post.call_args.kwargs["json"]["messages"]
        assert [m["role"] for m in messages] == ["system", "user"]
        assert post.call_args.kwargs["json"]["temperature"] == 0.2

    @pytest.mark.asyncio
    async def test_no_choices_is_empty_text(self):
        service = CompletionService(LocalLLMClient("http://llm.local/v1"), "m")
        with patch("causal_workflow.llm_client.requests.post", return_value=_response(body={"choices": []})):
            assert await service.complete("s", "p") == ""

    @pytest.mark.asyncio
    async def test_unexpected_client_error_is_wrapped(self):
        client = MagicMock()
        client.chat.completions.create.side_effect = RuntimeError("socket closed")
        service = CompletionService(client, "m")
        with pytest.raises(ServiceInvocationError):
            await service.complete("s", "p")
