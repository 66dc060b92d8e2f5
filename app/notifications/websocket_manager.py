"""Relais temps réel des événements de badges vers les sockets d'un utilisateur.

Le moteur émet des ``BadgeEvent`` (débloqué, bloqué, rebloqué) depuis la
boucle asyncio ou depuis un thread du threadpool; ``push_badge_event`` accepte
les deux.
"""
import asyncio
import json
import logging
from datetime import datetime
from enum import Enum
from typing import Dict, Set

import anyio
from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder
from starlette.websockets import WebSocketState

from app.gamification.types import BadgeEvent

log = logging.getLogger("ws")


def encode_payload(payload: dict) -> str:
    encoded = jsonable_encoder(
        payload,
        custom_encoder={
            Enum: lambda member: getattr(member, "value", str(member)),
            datetime: lambda moment: moment.isoformat(),
        },
    )
    return json.dumps(encoded, ensure_ascii=False, separators=(",", ":"))


class NotificationWebSocketManager:
    def __init__(self) -> None:
        self.connections: Dict[str, Set[WebSocket]] = {}

    def socket_count(self, user_id: str) -> int:
        return len(self.connections.get(user_id, ()))

    async def connect(self, user_id: str, websocket: WebSocket) -> None:
        await websocket.accept()
        self.connections.setdefault(user_id, set()).add(websocket)
        log.info("[BADGE WS] connexion user=%s sockets=%s", user_id, self.socket_count(user_id))

    def disconnect(self, user_id: str, websocket: WebSocket) -> None:
        sockets = self.connections.get(user_id)
        if not sockets:
            return
        sockets.discard(websocket)
        if not sockets:
            self.connections.pop(user_id, None)
        log.info("[BADGE WS] déconnexion user=%s restantes=%s", user_id, self.socket_count(user_id))

    async def _send(self, user_id: str, payload: dict) -> None:
        sockets = list(self.connections.get(user_id, ()))
        if not sockets:
            return

        # Encodé une seule fois, avant l'envoi: une erreur d'encodage ne ferme aucune socket
        try:
            text = encode_payload(payload)
        except (TypeError, ValueError):
            log.exception("[BADGE WS] encodage impossible user=%s payload=%r", user_id, payload)
            return

        closed = []
        for websocket in sockets:
            if websocket.application_state != WebSocketState.CONNECTED:
                closed.append(websocket)
                continue
            try:
                await websocket.send_text(text)
            except Exception:
                log.exception("[BADGE WS] envoi en échec user=%s type=%s", user_id, payload.get("type"))
                closed.append(websocket)

        for websocket in closed:
            self.disconnect(user_id, websocket)

    async def notify_async(self, user_id: str, payload: dict) -> None:
        await self._send(user_id, payload)

    def notify(self, user_id: str, payload: dict) -> None:
        # Thread du threadpool AnyIO, sinon boucle courante, sinon boucle dédiée
        try:
            anyio.from_thread.run(self._send, user_id, payload)
            return
        except RuntimeError:
            pass
        try:
            asyncio.get_running_loop().create_task(self._send(user_id, payload))
        except RuntimeError:
            asyncio.run(self._send(user_id, payload))

    def push_badge_event(self, event: BadgeEvent) -> None:
        """Écouteur du moteur de badges: relaie l'événement aux sockets de l'utilisateur."""
        self.notify(event.user_id, event.as_payload())


notification_ws_manager = NotificationWebSocketManager()
