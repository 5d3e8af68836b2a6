from __future__ import annotations

from typing import List, Optional, Protocol

from fastapi import WebSocket

from .models import DisplayMessage, Stage


class DisplaySink(Protocol):
    """One-way push of chat messages; nothing is read back."""

    async def emit(self, message: DisplayMessage) -> None:
        ...


class CollectingSink:
    """Buffers messages for the HTTP response (and for tests)."""

    def __init__(self) -> None:
        self.messages: List[DisplayMessage] = []

    async def emit(self, message: DisplayMessage) -> None:
        self.messages.append(message)

    def of_kind(self, kind: str) -> List[DisplayMessage]:
        return [m for m in self.messages if m.kind == kind]

    def dump(self) -> List[dict]:
        return [m.model_dump(by_alias=True, exclude_none=True, mode="json") for m in self.messages]


class WebSocketSink:
    def __init__(self, websocket: WebSocket, session_id: str) -> None:
        self.websocket = websocket
        self.session_id = session_id

    async def emit(self, message: DisplayMessage) -> None:
        payload = message.model_dump(by_alias=True, exclude_none=True, mode="json")
        payload["type"] = message.kind
        payload["session_id"] = self.session_id
        await self.websocket.send_json(payload)


def assistant_message(
    content: str,
    agent_name: Optional[str] = None,
    stage: Optional[Stage] = None,
    **metadata,
) -> DisplayMessage:
    return DisplayMessage(
        kind="assistant-message",
        content=content,
        agent_name=agent_name,
        stage=stage,
        metadata=metadata or None,
    )


def system_message(content: str, **metadata) -> DisplayMessage:
    return DisplayMessage(kind="system-message", content=content, metadata=metadata or None)


def error_message(content: str, agent_name: Optional[str] = None, stage: Optional[Stage] = None) -> DisplayMessage:
    return DisplayMessage(kind="error", content=content, agent_name=agent_name, stage=stage)
