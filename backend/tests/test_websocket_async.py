"""
Async WebSocket integration tests using a real uvicorn server.

Covers what the sync TestClient can't test well:
- Timer expiry advancing questions and ending the round
- Answers landing right at the deadline (no double advance)
- Scores surviving a restart through the persisted snapshot

Requires: pytest-asyncio, httpx, websockets
"""
import sys
import os
import json
import asyncio

import pytest
import pytest_asyncio
import httpx
import websockets

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import uvicorn
import config
from main import app, coordinator, credential_store, score_ledger, socket_manager
from question_bank import QuestionBank
from score_ledger import ScoreLedger


QUESTIONS = [
    {"question": f"Question {i + 1}?", "options": ["A", "B", "C", "D"], "correct": "A"}
    for i in range(2)
]


# ---------------------------------------------------------------------------
# Fixtures & helpers
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def server_port(tmp_path, monkeypatch):
    """Start a real uvicorn server on a random port, yield the port, shut down."""
    monkeypatch.setattr(config, "SCHEDULER_ENABLED", False)
    monkeypatch.setattr(credential_store, "path", str(tmp_path / "users.json"))
    monkeypatch.setattr(credential_store, "rounds", 4)
    monkeypatch.setattr(score_ledger, "path", str(tmp_path / "scores.json"))
    monkeypatch.setattr(coordinator, "bank", QuestionBank.from_dicts(QUESTIONS))
    monkeypatch.setattr(coordinator, "question_duration", 0.3)
    monkeypatch.setattr(socket_manager, "require_token", True)
    monkeypatch.setattr(socket_manager, "allowed_origins", [])

    server_config = uvicorn.Config(app, host="127.0.0.1", port=0, log_level="warning")
    server = uvicorn.Server(server_config)
    serve_task = asyncio.create_task(server.serve())

    # Wait for server to start
    while not server.started:
        await asyncio.sleep(0.01)

    # Extract the OS-assigned port
    port = server.servers[0].sockets[0].getsockname()[1]
    yield port

    # Teardown
    server.should_exit = True
    await serve_task
    score_ledger.restore({})


async def login(port, pseudo, password="secret"):
    """Register and log in via HTTP; return the login token."""
    async with httpx.AsyncClient(base_url=f"http://127.0.0.1:{port}") as http:
        res = await http.post("/api/register", json={"pseudo": pseudo, "password": password})
        assert res.status_code == 200
        res = await http.post("/api/login", json={"pseudo": pseudo, "password": password})
        assert res.status_code == 200
        return res.json()["token"]


async def send_json(ws, msg):
    """Send a JSON message over a websockets connection."""
    await ws.send(json.dumps(msg))


async def recv_until(ws, msg_type, timeout=10.0, max_messages=100):
    """Drain messages until we get the expected type, with timeout."""
    collected, msg = await collect_until(ws, msg_type, timeout, max_messages)
    return msg


async def collect_until(ws, msg_type, timeout=10.0, max_messages=200):
    """Collect all messages until we get the target type. Returns (collected, target_msg)."""
    collected = []
    deadline = asyncio.get_running_loop().time() + timeout
    for _ in range(max_messages):
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            raise TimeoutError(f"Never received {msg_type} within {timeout}s")
        data = await asyncio.wait_for(ws.recv(), timeout=remaining)
        msg = json.loads(data)
        if msg.get("type") == msg_type:
            return collected, msg
        collected.append(msg)
    raise TimeoutError(f"Never received {msg_type} after {max_messages} messages")


def ws_url(port, client_id):
    return f"ws://127.0.0.1:{port}/ws/{client_id}"


# ---------------------------------------------------------------------------
# Timer Expiry Tests
# ---------------------------------------------------------------------------

class TestTimerExpiry:
    @pytest.mark.asyncio
    async def test_timer_walks_through_round(self, server_port):
        """Nobody answers: each question times out and the round reports no participants."""
        token = await login(server_port, "alice")
        async with websockets.connect(ws_url(server_port, "c1")) as ws:
            await send_json(ws, {"type": "AUTHENTICATE", "pseudo": "alice", "token": token})
            collected, ended = await collect_until(ws, "ROUND_ENDED")
            indices = [m["index"] for m in collected if m["type"] == "QUESTION"]
            assert indices == [0, 1]
            assert ended["no_participants"] is True

    @pytest.mark.asyncio
    async def test_answer_at_deadline_advances_once(self, server_port):
        """An answer racing the timer must not produce a second copy of the next question."""
        token = await login(server_port, "alice")
        async with websockets.connect(ws_url(server_port, "c1")) as ws:
            await send_json(ws, {"type": "AUTHENTICATE", "pseudo": "alice", "token": token})
            await recv_until(ws, "QUESTION")
            await asyncio.sleep(coordinator.question_duration - 0.02)
            await send_json(ws, {"type": "ANSWER", "index": 0, "choice": "A"})
            collected, ended = await collect_until(ws, "ROUND_ENDED")
            indices = [m["index"] for m in collected if m["type"] == "QUESTION"]
            assert indices == [1]
            assert ended.get("top_score", 0) <= 1


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

class TestPersistence:
    @pytest.mark.asyncio
    async def test_scores_persisted_at_round_end(self, server_port, tmp_path, monkeypatch):
        monkeypatch.setattr(coordinator, "question_duration", 2)
        tokens = {name: await login(server_port, name) for name in ("alice", "bob")}
        async with websockets.connect(ws_url(server_port, "a")) as alice, \
                websockets.connect(ws_url(server_port, "b")) as bob:
            await send_json(alice, {"type": "AUTHENTICATE", "pseudo": "alice", "token": tokens["alice"]})
            await recv_until(alice, "QUESTION")
            await send_json(bob, {"type": "AUTHENTICATE", "pseudo": "bob", "token": tokens["bob"]})
            await recv_until(bob, "AUTH_OK")

            await send_json(alice, {"type": "ANSWER", "index": 0, "choice": "A"})
            await send_json(bob, {"type": "ANSWER", "index": 0, "choice": "B"})
            ended = await recv_until(alice, "ROUND_ENDED")
            assert ended["winners"] == ["alice"]

            # Wait for the end-of-round transition to release the lock
            await send_json(alice, {"type": "LEADERBOARD"})
            await recv_until(alice, "LEADERBOARD")

        reloaded = ScoreLedger(str(tmp_path / "scores.json")).load()
        assert reloaded == {"alice": 1, "bob": 0}
