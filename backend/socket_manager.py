from fastapi import WebSocket, WebSocketDisconnect
from typing import List
import json
import time
import logging

import config
from credential_store import CredentialStore
from gateway import BroadcastGateway
from identity_registry import AlreadyConnected
from question_bank import _sanitize_text
from round_coordinator import RoundCoordinator

logger = logging.getLogger(__name__)


class SocketManager:
    """Receive loop for one WebSocket per client: validation, then dispatch."""

    def __init__(self, coordinator: RoundCoordinator, gateway: BroadcastGateway,
                 credentials: CredentialStore, require_token: bool = config.REQUIRE_LOGIN_TOKEN):
        self.coordinator = coordinator
        self.gateway = gateway
        self.credentials = credentials
        self.require_token = require_token
        self.allowed_origins: List[str] = []

    async def connect(self, websocket: WebSocket, client_id: str):
        # Validate WebSocket origin
        origin = websocket.headers.get("origin", "")
        if self.allowed_origins and origin not in self.allowed_origins:
            logger.warning("Rejected WebSocket from unauthorized origin: %s", origin)
            await websocket.close(code=1008)
            return

        await websocket.accept()
        # An id stays taken while its old receive loop still holds an identity
        if client_id in self.gateway or self.coordinator.registry.identity_for(client_id) is not None:
            await websocket.send_json({"type": "ERROR", "message": "Connection id already in use"})
            await websocket.close()
            return

        self.gateway.add(client_id, websocket)
        logger.info("Client %s connected", client_id)
        timestamps: list = []

        try:
            while True:
                data = await websocket.receive_text()

                # Enforce message size limit
                if len(data) > config.MAX_WS_MESSAGE_SIZE:
                    await websocket.send_json({"type": "ERROR", "message": "Message too large"})
                    continue

                # Per-client rate limiting
                now = time.time()
                timestamps[:] = [t for t in timestamps if now - t < 1.0]
                if len(timestamps) >= config.WS_RATE_LIMIT_PER_SEC:
                    await websocket.send_json({"type": "ERROR", "message": "Too many messages"})
                    continue
                timestamps.append(now)

                try:
                    message = json.loads(data)
                except json.JSONDecodeError:
                    logger.warning("Malformed JSON from client %s: %s", client_id, data[:100])
                    await websocket.send_json({"type": "ERROR", "message": "Invalid message format"})
                    continue
                if not isinstance(message, dict):
                    await websocket.send_json({"type": "ERROR", "message": "Invalid message format"})
                    continue

                await self.handle_message(client_id, message)
        except WebSocketDisconnect:
            logger.info("Client %s disconnected", client_id)
        except Exception:
            logger.exception("WebSocket error for client %s", client_id)
        finally:
            if self.gateway.remove(client_id, websocket):
                await self.coordinator.disconnect(client_id)

    async def handle_message(self, client_id: str, message: dict):
        msg_type = message.get("type")

        if msg_type == "AUTHENTICATE":
            await self._authenticate(client_id, message)

        elif msg_type == "ANSWER":
            index = message.get("index")
            choice = message.get("choice")
            if not isinstance(index, int) or isinstance(index, bool) or not isinstance(choice, str):
                return
            await self.coordinator.answer(client_id, index, choice)

        elif msg_type == "LEADERBOARD":
            await self.coordinator.send_leaderboard(client_id)

        elif msg_type == "CHAT":
            text = message.get("text")
            if not isinstance(text, str):
                return
            text = _sanitize_text(text)[:config.MAX_CHAT_LENGTH]
            if not text:
                return
            identity = self.coordinator.registry.identity_for(client_id) or "Anonymous"
            await self.gateway.broadcast_all({"type": "CHAT", "identity": identity, "text": text})

        else:
            await self.gateway.send(client_id, {"type": "ERROR", "message": "Unknown message type"})

    async def _authenticate(self, client_id: str, message: dict):
        pseudo = message.get("pseudo", "")
        if not isinstance(pseudo, str):
            pseudo = ""
        pseudo = _sanitize_text(pseudo)
        if not pseudo or len(pseudo) > config.MAX_PSEUDO_LENGTH:
            await self.gateway.send(client_id, {
                "type": "AUTH_REJECTED",
                "reason": f"Pseudo must be 1-{config.MAX_PSEUDO_LENGTH} characters",
            })
            return

        if self.require_token:
            token = message.get("token", "")
            identity = self.credentials.check_token(pseudo, token if isinstance(token, str) else "")
            if identity is None:
                await self.gateway.send(client_id, {
                    "type": "AUTH_REJECTED",
                    "reason": "Invalid or expired login token",
                })
                return
        else:
            identity = pseudo

        try:
            await self.coordinator.authenticate(client_id, identity)
        except AlreadyConnected as exc:
            logger.info("Rejected login of '%s' on %s: %s", identity, client_id, exc)
            await self.gateway.send(client_id, {"type": "AUTH_REJECTED", "reason": str(exc)})
