"""
The single authoritative quiz round.

Every mutation (authenticate, answer, advance, start, end, disconnect) runs under
``self.lock`` so the timer and the "everyone answered" fast path can never both
advance the same question.
"""
from enum import Enum
from typing import List, Optional, Set
import asyncio
import logging
import random

import config
from gateway import BroadcastGateway
from identity_registry import IdentityRegistry, identity_key
from question_bank import QuestionBank, Round
from score_ledger import ScoreLedger, compute_winners

logger = logging.getLogger(__name__)


class RoundState(str, Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    ENDED = "ENDED"


class RoundCoordinator:
    def __init__(self, bank: QuestionBank, registry: IdentityRegistry, ledger: ScoreLedger,
                 gateway: BroadcastGateway, question_duration: float = config.QUESTION_DURATION_SEC,
                 persist_retries: int = config.PERSIST_MAX_RETRIES, persist_retry_delay: float = 0.2,
                 rng: Optional[random.Random] = None):
        self.bank = bank
        self.registry = registry
        self.ledger = ledger
        self.gateway = gateway
        self.question_duration = question_duration
        self.persist_retries = max(1, persist_retries)
        self.persist_retry_delay = persist_retry_delay
        self.rng = rng
        self.state = RoundState.IDLE
        self.round: Optional[Round] = None
        self.answered: Set[str] = set()  # identity keys that answered the live question
        self.participants: Set[str] = set()  # identities that answered anything this round
        self.timer_task: Optional[asyncio.Task] = None
        self.lock = asyncio.Lock()

    # --- lifecycle -------------------------------------------------------

    async def startup(self):
        """Load persisted scores. Called once from the app lifespan."""
        self.lock = asyncio.Lock()  # bound to the serving loop
        scores = self.ledger.load()
        logger.info("Loaded %d persisted scores", len(scores))

    async def shutdown(self):
        """Disarm the timer and keep the interrupted round's scores."""
        async with self.lock:
            self._disarm_timer()
            if self.state == RoundState.RUNNING:
                logger.info("Round interrupted by shutdown at question %d", self.round.index)
                await self._persist_scores()
            self.round = None
            self.answered.clear()
            self.state = RoundState.IDLE

    # --- inbound events --------------------------------------------------

    async def authenticate(self, connection_id: str, identity: str) -> str:
        """Admit ``identity`` on ``connection_id``; starts a round if none is running.

        Raises AlreadyConnected, leaving every existing mapping untouched.
        """
        async with self.lock:
            identity = self.registry.admit(identity, connection_id)
            self.ledger.ensure(identity)
            await self._broadcast_presence()
            await self.gateway.send(connection_id, {"type": "AUTH_OK", "identity": identity})

            if self.state == RoundState.IDLE:
                await self._start_round()
            elif self.state == RoundState.RUNNING and self.round and not self.round.finished:
                # Late joiner: catch up on the live question
                await self.gateway.send(connection_id, self._question_message())
            return identity

    async def answer(self, connection_id: str, index: int, choice: str) -> bool:
        """Score one submission. Returns False when the submission was dropped."""
        async with self.lock:
            identity = self.registry.identity_for(connection_id)
            if identity is None:
                logger.debug("Dropped answer from unauthenticated connection %s", connection_id)
                return False
            if self.state != RoundState.RUNNING or self.round is None or self.round.finished:
                logger.debug("Dropped answer from '%s': no round running", identity)
                return False
            if identity_key(identity) in self.answered:
                logger.debug("Dropped duplicate answer from '%s'", identity)
                return False
            if index != self.round.index:
                logger.debug("Dropped stale answer from '%s' for question %s (live: %d)",
                             identity, index, self.round.index)
                return False

            question = self.round.current()
            self.answered.add(identity_key(identity))
            self.participants.add(identity)
            correct = choice == question.correct
            if correct:
                self.ledger.increment(identity)
                message = f"{identity} answered correctly!"
            else:
                message = f"{identity} answered... (incorrect)"

            await self.gateway.broadcast_all({
                "type": "ANSWER_RESULT",
                "identity": identity,
                "correct": correct,
                "message": message,
            })

            if self._all_answered():
                logger.info("Everyone answered question %d", self.round.index)
                await self._advance()
            return True

    async def disconnect(self, connection_id: str) -> Optional[str]:
        """Forget a connection. Scores and this question's answer flag are kept."""
        async with self.lock:
            identity = self.registry.release(connection_id)
            if identity is None:
                return None
            await self._broadcast_presence()
            # The leaver may have been the last one everybody was waiting for
            if self.state == RoundState.RUNNING and self._all_answered():
                await self._advance()
            return identity

    async def send_leaderboard(self, connection_id: str):
        async with self.lock:
            await self.gateway.send(connection_id, {
                "type": "LEADERBOARD",
                "leaderboard": self.leaderboard(),
            })

    async def broadcast_notice(self, text: str):
        async with self.lock:
            await self.gateway.broadcast_all({"type": "MESSAGE", "message": text})

    # --- round control ---------------------------------------------------

    async def start(self) -> bool:
        """Start a round. Does nothing unless the coordinator is idle."""
        async with self.lock:
            if self.state != RoundState.IDLE:
                return False
            await self._start_round()
            return True

    async def end(self) -> bool:
        """End the running round now. Does nothing unless a round is running."""
        async with self.lock:
            if self.state != RoundState.RUNNING:
                return False
            await self._end_round()
            return True

    async def try_advance(self, expected_index: int) -> bool:
        """Advance only if ``expected_index`` is still the live question."""
        async with self.lock:
            if self.state != RoundState.RUNNING or self.round is None:
                return False
            if self.round.index != expected_index:
                logger.debug("Skipped advance for question %d (live: %d)", expected_index, self.round.index)
                return False
            await self._advance()
            return True

    # --- read side -------------------------------------------------------

    def leaderboard(self) -> List[dict]:
        return [{"identity": identity, "score": score} for identity, score in self.ledger.snapshot()]

    def status(self) -> dict:
        return {
            "state": self.state.value,
            "question_index": self.round.index if self.round else None,
            "total_questions": len(self.round) if self.round else len(self.bank),
            "connected": self.registry.presence(),
        }

    # --- transitions (caller holds self.lock) ---------------------------

    async def _start_round(self):
        self.ledger.reset_all()
        self.participants.clear()
        self.answered.clear()
        self.round = Round.start(self.bank, self.rng)
        self.state = RoundState.RUNNING
        logger.info("Round started with %d questions", len(self.round))

        await self.gateway.broadcast_all({
            "type": "ROUND_STARTED",
            "message": "A new quiz has started!",
            "total_questions": len(self.round),
        })

        if self.round.finished:
            logger.warning("Question bank is empty, ending the round immediately")
            await self._end_round()
            return
        await self._send_question()

    async def _send_question(self):
        self.answered.clear()
        await self.gateway.broadcast_all(self._question_message())
        self._arm_timer()

    async def _advance(self):
        self._disarm_timer()
        if self.round.advance():
            await self._send_question()
        else:
            await self._end_round()

    async def _end_round(self):
        self.state = RoundState.ENDED
        self._disarm_timer()

        winners, top_score = compute_winners(self.ledger.snapshot(self.participants))
        if winners:
            logger.info("Round over, winners %s with %d", winners, top_score)
            await self.gateway.broadcast_all({
                "type": "ROUND_ENDED",
                "winners": winners,
                "top_score": top_score,
                "message": f"Winner(s): {', '.join(winners)} with a score of {top_score}",
            })
        else:
            logger.info("Round over, nobody took part")
            await self.gateway.broadcast_all({
                "type": "ROUND_ENDED",
                "no_participants": True,
                "message": "Quiz over: nobody took part.",
            })

        await self._persist_scores()
        self.round = None
        self.answered.clear()
        self.state = RoundState.IDLE

    async def _persist_scores(self) -> bool:
        for attempt in range(1, self.persist_retries + 1):
            try:
                await self.ledger.persist()
                return True
            except Exception:
                logger.exception("Persisting scores failed (attempt %d/%d)", attempt, self.persist_retries)
                if attempt < self.persist_retries:
                    await asyncio.sleep(self.persist_retry_delay)
        logger.error("Scores were not persisted after %d attempts; they stay in memory only",
                     self.persist_retries)
        return False

    def _all_answered(self) -> bool:
        identities = self.registry.presence()
        return bool(identities) and all(identity_key(i) in self.answered for i in identities)

    async def _broadcast_presence(self):
        await self.gateway.broadcast_all({"type": "PRESENCE", "identities": self.registry.presence()})

    def _question_message(self) -> dict:
        question = self.round.current()
        return {
            "type": "QUESTION",
            "index": self.round.index,
            **question.to_public(),
            "total_questions": len(self.round),
            "time_limit": self.question_duration,
        }

    # --- timer -----------------------------------------------------------

    def _arm_timer(self):
        self._disarm_timer()
        self.timer_task = asyncio.create_task(self._question_timer(self.round.index))

    def _disarm_timer(self):
        task, self.timer_task = self.timer_task, None
        # The timer itself may be the one advancing; it must not cancel itself mid-transition
        if task and task is not asyncio.current_task():
            task.cancel()

    async def _question_timer(self, index: int):
        """Backstop that ends question ``index`` after question_duration seconds."""
        try:
            await asyncio.sleep(self.question_duration)
            if await self.try_advance(index):
                logger.info("Question %d timed out", index)
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("Question timer failed for question %d", index)
