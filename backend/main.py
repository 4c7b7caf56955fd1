from fastapi import FastAPI, WebSocket, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import RedirectResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, field_validator
from contextlib import asynccontextmanager
import re
import os
import uvicorn
import logging
import socket as socketlib

import config
config.setup_logging()

from credential_store import CredentialStore, CredentialError
from gateway import BroadcastGateway
from identity_registry import IdentityRegistry
from question_bank import QuestionBank
from round_coordinator import RoundCoordinator
from scheduler import DailyScheduler
from score_ledger import ScoreLedger
from socket_manager import SocketManager

logger = logging.getLogger(__name__)


question_bank = QuestionBank.from_file(config.QUESTIONS_FILE) if config.QUESTIONS_FILE else QuestionBank.default()
identity_registry = IdentityRegistry()
score_ledger = ScoreLedger(config.SCORES_FILE)
gateway = BroadcastGateway()
coordinator = RoundCoordinator(question_bank, identity_registry, score_ledger, gateway)
credential_store = CredentialStore(config.USERS_FILE)
socket_manager = SocketManager(coordinator, gateway, credential_store)
scheduler = DailyScheduler(coordinator)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting trivia server with %d questions", len(question_bank))
    await coordinator.startup()
    if config.SCHEDULER_ENABLED:
        scheduler.start()
    yield
    logger.info("Shutting down trivia server")
    scheduler.stop()
    await coordinator.shutdown()


app = FastAPI(title="Trivia Session Server", lifespan=lifespan)


def get_local_ip():
    try:
        s = socketlib.socket(socketlib.AF_INET, socketlib.SOCK_DGRAM)
        s.connect(("8.8.8.8", 80))
        ip = s.getsockname()[0]
        s.close()
        return ip
    except Exception:
        return "127.0.0.1"


class CredentialsRequest(BaseModel):
    pseudo: str
    password: str

    @field_validator('pseudo')
    @classmethod
    def validate_pseudo(cls, v: str) -> str:
        # Strip HTML tags and control characters
        v = re.sub(r'<[^>]+>', '', v)
        v = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]', '', v).strip()
        if not v or len(v) > config.MAX_PSEUDO_LENGTH:
            raise ValueError(f'Pseudo must be 1-{config.MAX_PSEUDO_LENGTH} characters')
        return v

    @field_validator('password')
    @classmethod
    def validate_password(cls, v: str) -> str:
        if not v:
            raise ValueError('Password is required')
        if len(v.encode('utf-8')) > config.MAX_PASSWORD_LENGTH:
            raise ValueError(f'Password must be at most {config.MAX_PASSWORD_LENGTH} bytes')
        return v


@app.post("/api/register")
async def register(request: CredentialsRequest):
    try:
        await credential_store.register(request.pseudo, request.password)
    except CredentialError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"ok": True}


@app.post("/api/login")
async def login(request: CredentialsRequest):
    try:
        pseudo = await credential_store.verify(request.pseudo, request.password)
    except CredentialError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    token = credential_store.issue_token(pseudo)
    logger.info("Login: %s", pseudo)
    return {"ok": True, "pseudo": pseudo, "token": token}


@app.get("/leaderboard")
async def leaderboard():
    return {"leaderboard": coordinator.leaderboard(), **coordinator.status()}


@app.websocket("/ws/{client_id}")
async def websocket_endpoint(websocket: WebSocket, client_id: str):
    await socket_manager.connect(websocket, client_id)


# Configure CORS
if config.ALLOWED_ORIGINS.strip():
    origins = [o.strip() for o in config.ALLOWED_ORIGINS.split(",")]
    socket_manager.allowed_origins = origins
else:
    local_ip = get_local_ip()
    origins = [
        f"http://localhost:{config.PORT}",
        f"http://127.0.0.1:{config.PORT}",
        f"http://{local_ip}:{config.PORT}",
    ]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=False,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type"],
)


@app.get("/")
async def root():
    if os.path.isdir(config.STATIC_DIR):
        return RedirectResponse("/quiz.html")
    return {"message": "Trivia server is running"}


@app.get("/health")
async def health():
    return {"status": "healthy"}


# Mounted last so the API and WebSocket routes take precedence
if os.path.isdir(config.STATIC_DIR):
    app.mount("/", StaticFiles(directory=config.STATIC_DIR), name="static")


if __name__ == "__main__":
    uvicorn.run("main:app", host=config.HOST, port=config.PORT)
