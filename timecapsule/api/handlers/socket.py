from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect

from timecapsule.api.handlers.deps import ApiDeps
from timecapsule.api.handlers.sweep import run_sweep_handler
from timecapsule.domain.contracts import Subscription
from timecapsule.domain.errors import DomainError
from timecapsule.domain.models import ITEMS_TOPIC, SWEEPS_TOPIC, ItemEvent

COMPONENT_ID = "api.socket.session"
SOCKET_TOPICS = (ITEMS_TOPIC, SWEEPS_TOPIC)
logger = logging.getLogger("runtime")


class SocketSession:
    """One WebSocket connection.

    Each `subscribe` opens a subscription owned by this connection; all of
    them are closed when the socket goes away. Item events are filtered to
    the connection's owner when one is given.
    """

    def __init__(self, websocket: WebSocket, *, api_deps: ApiDeps, owner_id: str | None = None) -> None:
        self.websocket = websocket
        self.api_deps = api_deps
        self.owner_id = owner_id
        self._send_lock = asyncio.Lock()
        self._subscriptions: dict[str, Subscription] = {}
        self._forwarders: dict[str, asyncio.Task[None]] = {}

    async def run(self) -> None:
        await self.websocket.accept()
        try:
            while True:
                raw = await self.websocket.receive_text()
                await self._dispatch(raw)
        except WebSocketDisconnect:
            pass
        finally:
            await self._close_all()

    async def send(self, message: dict[str, Any]) -> None:
        async with self._send_lock:
            await self.websocket.send_json(message)

    async def _dispatch(self, raw: str) -> None:
        try:
            message = json.loads(raw)
        except ValueError:
            await self.send({"type": "error", "detail": "message must be JSON"})
            return
        if not isinstance(message, dict):
            await self.send({"type": "error", "detail": "message must be a JSON object"})
            return

        action = message.get("action")
        if action == "sweep":
            await self._sweep()
        elif action == "subscribe":
            await self._subscribe(message.get("topic"))
        elif action == "unsubscribe":
            await self._unsubscribe(message.get("topic"))
        elif action == "ping":
            await self.send({"type": "pong"})
        else:
            await self.send({"type": "error", "detail": f"unsupported action: {action}"})

    async def _sweep(self) -> None:
        try:
            response = await run_sweep_handler(api_deps=self.api_deps, trigger="socket")
        except DomainError as exc:
            await self.send({"type": "error", "detail": str(exc)})
            return
        except Exception:
            logger.exception("socket sweep failed", extra={"trigger": "socket"})
            await self.send({"type": "error", "detail": "sweep failed"})
            return
        await self.send({"type": "sweep.result", "result": response.model_dump(by_alias=True)})

    async def _subscribe(self, topic: object) -> None:
        if not isinstance(topic, str) or topic not in SOCKET_TOPICS:
            await self.send({"type": "error", "detail": f"unknown topic: {topic}"})
            return
        if topic not in self._subscriptions:
            subscription = await self.api_deps.channel.subscribe(topic)
            self._subscriptions[topic] = subscription
            self._forwarders[topic] = asyncio.create_task(self._forward(subscription))
        await self.send({"type": "subscribed", "topic": topic})

    async def _unsubscribe(self, topic: object) -> None:
        if isinstance(topic, str) and topic in self._subscriptions:
            await self._close(topic)
        await self.send({"type": "unsubscribed", "topic": topic})

    async def _forward(self, subscription: Subscription) -> None:
        async for event in subscription:
            if not self._visible(event):
                continue
            try:
                await self.send({"type": "event", "event": event.to_json()})
            except (WebSocketDisconnect, RuntimeError):
                return

    def _visible(self, event: ItemEvent) -> bool:
        if event.topic != ITEMS_TOPIC or self.owner_id is None:
            return True
        return event.owner_id == self.owner_id

    async def _close(self, topic: str) -> None:
        subscription = self._subscriptions.pop(topic)
        await subscription.unsubscribe()
        forwarder = self._forwarders.pop(topic, None)
        if forwarder is not None:
            await forwarder

    async def _close_all(self) -> None:
        for topic in list(self._subscriptions):
            try:
                await self._close(topic)
            except Exception:
                logger.exception("socket subscription close failed", extra={"topic": topic})


async def socket_session_handler(websocket: WebSocket, *, api_deps: ApiDeps, owner_id: str | None) -> None:
    await SocketSession(websocket, api_deps=api_deps, owner_id=owner_id).run()
