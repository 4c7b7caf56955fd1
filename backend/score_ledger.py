from typing import Dict, Iterable, List, Optional, Tuple
import asyncio
import contextlib
import itertools
import json
import logging
import os
import tempfile

from identity_registry import identity_key

logger = logging.getLogger(__name__)


class ScoreLedger:
    """identity -> number of correct answers in the current round.

    Keys are compared case-insensitively; the spelling of the latest login is
    kept for display and persistence.
    """

    def __init__(self, path: str):
        self.path = path
        self._scores: Dict[str, int] = {}  # identity key -> score
        self._names: Dict[str, str] = {}  # identity key -> display identity
        self._reached: Dict[str, int] = {}  # identity key -> when the current score was reached
        self._clock = itertools.count()

    def _touch(self, key: str):
        self._reached[key] = next(self._clock)

    def ensure(self, identity: str):
        """Make ``identity`` known with a score of 0, keeping any existing score.

        The spelling passed here becomes the display identity.
        """
        key = identity_key(identity)
        self._names[key] = identity.strip()
        if key not in self._scores:
            self._scores[key] = 0
            self._touch(key)

    def increment(self, identity: str) -> int:
        key = identity_key(identity)
        if key not in self._scores:
            self._names[key] = identity.strip()
            self._scores[key] = 0
        self._scores[key] += 1
        self._touch(key)
        return self._scores[key]

    def reset_all(self):
        for key in self._scores:
            self._scores[key] = 0
            self._touch(key)

    def get(self, identity: str) -> int:
        return self._scores.get(identity_key(identity), 0)

    def scores(self) -> Dict[str, int]:
        return {self._names[key]: score for key, score in self._scores.items()}

    def snapshot(self, identities: Optional[Iterable[str]] = None) -> List[Tuple[str, int]]:
        """Rank-ordered copy: highest score first, then whoever reached it first.

        ``identities`` restricts the snapshot to those identities.
        """
        keys = list(self._scores)
        if identities is not None:
            wanted = {identity_key(i) for i in identities}
            keys = [k for k in keys if k in wanted]
        keys.sort(key=lambda k: (-self._scores[k], self._reached[k]))
        return [(self._names[k], self._scores[k]) for k in keys]

    def restore(self, mapping: Dict[str, int]):
        self._scores.clear()
        self._names.clear()
        self._reached.clear()
        for identity, score in mapping.items():
            key = identity_key(identity)
            self._scores[key] = score
            self._names[key] = identity
            self._touch(key)

    def load(self) -> Dict[str, int]:
        """Replace the ledger with the persisted snapshot and return it."""
        try:
            with open(self.path, encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError:
            logger.info("No score snapshot at %s, starting empty", self.path)
            data = {}
        except (OSError, json.JSONDecodeError):
            logger.exception("Could not read score snapshot %s, starting empty", self.path)
            data = {}

        if not isinstance(data, dict):
            logger.warning("Ignoring score snapshot %s: expected an object", self.path)
            data = {}
        mapping = {
            str(identity): score for identity, score in data.items()
            if isinstance(score, int) and not isinstance(score, bool) and score >= 0
        }
        if len(mapping) != len(data):
            logger.warning("Dropped %d invalid entries from %s", len(data) - len(mapping), self.path)
        self.restore(mapping)
        return self.scores()

    async def persist(self):
        """Write the snapshot atomically. File IO runs in a worker thread."""
        await asyncio.to_thread(self._write, self.scores())

    def _write(self, data: Dict[str, int]):
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".scores-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self.path)
        except BaseException:
            with contextlib.suppress(OSError):
                os.unlink(tmp_path)
            raise
        logger.info("Persisted %d scores to %s", len(data), self.path)

    def __len__(self) -> int:
        return len(self._scores)


def compute_winners(snapshot: List[Tuple[str, int]]) -> Tuple[List[str], Optional[int]]:
    """Every identity tied at the top score, in rank order.

    An empty snapshot means nobody took part: ``([], None)``.
    """
    if not snapshot:
        return [], None
    top_score = max(score for _, score in snapshot)
    winners = [identity for identity, score in snapshot if score == top_score]
    return winners, top_score
