from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import requests

from .errors import ServiceInvocationError


class LocalLLMClient:
    """
    Minimal chat-completions client for an OpenAI-compatible endpoint (Ollama by default).
    """

    def __init__(self, base_url: str, api_key: str = "ollama", timeout: float = 120) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    def _create(
        self,
        *,
        model: str,
        messages: List[Dict[str, Any]],
        temperature: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        payload: Dict[str, Any] = {
            "model": model,
            "messages": messages,
        }
        if temperature is not None:
            payload["temperature"] = temperature

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        url = f"{self.base_url}/chat/completions"
        try:
            response = requests.post(url, headers=headers, json=payload, timeout=timeout or self.timeout)
        except requests.RequestException as exc:
            raise ServiceInvocationError("Completion service unreachable", {"url": url}, exc) from exc
        if response.status_code >= 400:
            raise ServiceInvocationError(
                f"Completion request failed ({response.status_code}): {response.text}",
                {"url": url, "status": response.status_code},
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise ServiceInvocationError("Completion service returned non-JSON body", {"url": url}, exc) from exc
        return self._to_response_obj(data)

    @staticmethod
    def _to_response_obj(data: Dict[str, Any]) -> Any:
        choices_out = []
        for choice in data.get("choices", []):
            message = choice.get("message", {})
            choices_out.append(SimpleNamespace(message=SimpleNamespace(content=message.get("content"))))
        return SimpleNamespace(choices=choices_out)


class CompletionService:
    """
    Request/response wrapper the planner and stage agents talk to.

    Any transport failure surfaces as ServiceInvocationError. There is no retry.
    """

    def __init__(self, client: Any, model: str, temperature: float = 0.2) -> None:
        self.client = client
        self.model = model
        self.temperature = temperature

    async def complete(
        self,
        system: str,
        prompt: str,
        temperature: Optional[float] = None,
    ) -> str:
        messages = [
            {"role": "system", "content": system},
            {"role": "user", "content": prompt},
        ]
        try:
            response = await asyncio.to_thread(
                self.client.chat.completions.create,
                model=self.model,
                messages=messages,
                temperature=self.temperature if temperature is None else temperature,
            )
        except ServiceInvocationError:
            raise
        except Exception as exc:
            raise ServiceInvocationError(f"Completion call failed: {exc}", {"model": self.model}, exc) from exc

        choices = getattr(response, "choices", None) or []
        if not choices:
            return ""
        return choices[0].message.content or ""
