"""Accounts kept in a JSON users file, passwords hashed with bcrypt.

The round coordinator never sees a password: a successful login hands out a
token, and the WebSocket layer exchanges that token for the account's pseudo.
"""
from typing import Dict, List, Optional, Tuple
import asyncio
import hmac
import json
import logging
import os
import secrets
import threading
import time

import bcrypt

import config
from identity_registry import identity_key

logger = logging.getLogger(__name__)


class CredentialError(Exception):
    pass


class DuplicateIdentity(CredentialError):
    pass


class IdentityNotFound(CredentialError):
    pass


class BadSecret(CredentialError):
    pass


class CredentialStore:
    def __init__(self, path: str, rounds: int = config.BCRYPT_ROUNDS,
                 token_ttl: float = config.LOGIN_TOKEN_TTL_SEC):
        self.path = path
        self.rounds = rounds
        self.token_ttl = token_ttl
        self._file_lock = threading.Lock()
        self._tokens: Dict[str, Tuple[str, float]] = {}  # identity key -> (login token, issued at)
        self._names: Dict[str, str] = {}  # identity key -> registered pseudo

    def _load_users(self) -> List[dict]:
        try:
            with open(self.path, encoding="utf-8") as fh:
                users = json.load(fh)
        except FileNotFoundError:
            return []
        except (OSError, json.JSONDecodeError):
            logger.exception("Could not read users file %s", self.path)
            return []
        if not isinstance(users, list):
            logger.warning("Ignoring users file %s: expected a list", self.path)
            return []
        return [u for u in users if isinstance(u, dict) and "pseudo" in u and "password_hash" in u]

    def _save_users(self, users: List[dict]):
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as fh:
            json.dump(users, fh, indent=2, ensure_ascii=False)
        os.replace(tmp_path, self.path)

    def _find(self, users: List[dict], pseudo: str) -> Optional[dict]:
        key = identity_key(pseudo)
        return next((u for u in users if identity_key(u["pseudo"]) == key), None)

    def _add_user(self, pseudo: str, password_hash: str):
        with self._file_lock:
            users = self._load_users()
            if self._find(users, pseudo):
                raise DuplicateIdentity("Pseudo already taken")
            users.append({"pseudo": pseudo, "password_hash": password_hash})
            self._save_users(users)

    def _read_user(self, pseudo: str) -> Optional[dict]:
        with self._file_lock:
            return self._find(self._load_users(), pseudo)

    async def register(self, pseudo: str, password: str):
        if await asyncio.to_thread(self._read_user, pseudo):
            raise DuplicateIdentity("Pseudo already taken")
        password_hash = await asyncio.to_thread(
            lambda: bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=self.rounds)).decode("ascii")
        )
        # Re-checked under the file lock: two registrations may race past the check above
        await asyncio.to_thread(self._add_user, pseudo, password_hash)
        logger.info("Registered '%s'", pseudo)

    async def verify(self, pseudo: str, password: str) -> str:
        """Check a password and return the pseudo as it was registered."""
        user = await asyncio.to_thread(self._read_user, pseudo)
        if not user:
            raise IdentityNotFound("User not found")
        ok = await asyncio.to_thread(
            bcrypt.checkpw, password.encode("utf-8"), user["password_hash"].encode("ascii")
        )
        if not ok:
            raise BadSecret("Incorrect password")
        return user["pseudo"]

    def issue_token(self, pseudo: str) -> str:
        """New login token for ``pseudo``; any earlier token stops working."""
        self._prune_tokens()
        key = identity_key(pseudo)
        token = secrets.token_urlsafe(32)
        self._tokens[key] = (token, time.monotonic())
        self._names[key] = pseudo
        return token

    def check_token(self, pseudo: str, token: str) -> Optional[str]:
        key = identity_key(pseudo)
        entry = self._tokens.get(key)
        if not entry or not token:
            return None
        stored, issued_at = entry
        if time.monotonic() - issued_at >= self.token_ttl:
            self._forget_token(key)
            return None
        if not hmac.compare_digest(stored, token):
            return None
        return self._names[key]

    def _prune_tokens(self):
        now = time.monotonic()
        for key in [k for k, (_, issued_at) in self._tokens.items() if now - issued_at >= self.token_ttl]:
            self._forget_token(key)

    def _forget_token(self, key: str):
        self._tokens.pop(key, None)
        self._names.pop(key, None)
