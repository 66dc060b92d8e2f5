# Fichier: badgelife/backend/app/api/v2/endpoints/notification_ws.py
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from app.notifications.websocket_manager import notification_ws_manager

router = APIRouter()
log = logging.getLogger(__name__)


@router.websocket("/ws")
async def notifications_ws(websocket: WebSocket):
    # Identité posée par la passerelle: en-tête X-User-Id, sinon paramètre ?user_id=
    user_id = (websocket.headers.get("X-User-Id") or websocket.query_params.get("user_id") or "").strip()
    if not user_id:
        log.warning("WS refusée : utilisateur non identifié.")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await notification_ws_manager.connect(user_id, websocket)
    log.info("WebSocket connecté pour l'utilisateur %s", user_id)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        notification_ws_manager.disconnect(user_id, websocket)
        log.info("WebSocket déconnecté pour l'utilisateur %s", user_id)
