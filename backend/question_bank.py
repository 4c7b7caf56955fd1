import re
import json
import random
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

MAX_QUESTION_TEXT_LENGTH = 2000
MAX_OPTION_LENGTH = 500
MIN_OPTIONS = 2

DEFAULT_QUESTIONS = [
    {"question": "Who sings 'Shape of You'?",
     "options": ["Ed Sheeran", "Justin Bieber", "Shawn Mendes", "Drake"], "correct": "Ed Sheeran"},
    {"question": "Which band released 'The Dark Side of the Moon'?",
     "options": ["Pink Floyd", "Queen", "The Beatles", "Nirvana"], "correct": "Pink Floyd"},
    {"question": "Which singer performed 'Rolling in the Deep'?",
     "options": ["Adele", "Dua Lipa", "Sia", "Lady Gaga"], "correct": "Adele"},
    {"question": "Who sang 'Bad Guy'?",
     "options": ["Billie Eilish", "Lorde", "Olivia Rodrigo", "Doja Cat"], "correct": "Billie Eilish"},
    {"question": "Which artist is nicknamed 'The King of Pop'?",
     "options": ["Michael Jackson", "Elvis Presley", "Prince", "Madonna"], "correct": "Michael Jackson"},
]


def _sanitize_text(text: str) -> str:
    """Strip HTML tags and control characters from question text."""
    text = re.sub(r'<[^>]+>', '', text)
    text = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]', '', text)
    return text.strip()


@dataclass(frozen=True)
class Question:
    prompt: str
    options: Tuple[str, ...]
    correct: str

    def to_public(self) -> dict:
        """Wire form sent to players: never includes the correct option."""
        return {"question": self.prompt, "options": list(self.options)}


def parse_question(raw: dict, position: int) -> Question:
    if not isinstance(raw, dict):
        raise ValueError(f"Question {position}: expected an object, got {type(raw).__name__}")
    if not all(k in raw for k in ("question", "options", "correct")):
        raise ValueError(f"Question {position}: missing required fields")
    if not isinstance(raw["question"], str) or not isinstance(raw["correct"], str):
        raise ValueError(f"Question {position}: question and correct must be strings")
    options = raw["options"]
    if not isinstance(options, list) or len(options) < MIN_OPTIONS:
        raise ValueError(f"Question {position}: needs at least {MIN_OPTIONS} options")
    if not all(isinstance(opt, str) for opt in options):
        raise ValueError(f"Question {position}: options must be strings")

    prompt = _sanitize_text(raw["question"])[:MAX_QUESTION_TEXT_LENGTH]
    cleaned = tuple(_sanitize_text(opt)[:MAX_OPTION_LENGTH] for opt in options)
    correct = _sanitize_text(raw["correct"])[:MAX_OPTION_LENGTH]
    if not prompt:
        raise ValueError(f"Question {position}: empty question text")
    if len(set(cleaned)) != len(cleaned):
        raise ValueError(f"Question {position}: duplicate options")
    if correct not in cleaned:
        raise ValueError(f"Question {position}: correct answer is not one of the options")
    return Question(prompt=prompt, options=cleaned, correct=correct)


class QuestionBank:
    """The static pool of questions, read-only for the lifetime of the process."""

    def __init__(self, questions: Sequence[Question]):
        self._questions: Tuple[Question, ...] = tuple(questions)

    @classmethod
    def from_dicts(cls, items: list) -> "QuestionBank":
        if not isinstance(items, list):
            raise ValueError("Question bank must be a list of questions")
        return cls([parse_question(raw, i + 1) for i, raw in enumerate(items)])

    @classmethod
    def from_file(cls, path: str) -> "QuestionBank":
        with open(path, encoding="utf-8") as fh:
            items = json.load(fh)
        bank = cls.from_dicts(items)
        logger.info("Loaded %d questions from %s", len(bank), path)
        return bank

    @classmethod
    def default(cls) -> "QuestionBank":
        return cls.from_dicts(DEFAULT_QUESTIONS)

    def all(self) -> Tuple[Question, ...]:
        return self._questions

    def __len__(self) -> int:
        return len(self._questions)


class Round:
    """One pass through a shuffled copy of the whole bank."""

    def __init__(self, questions: List[Question]):
        self.questions = questions
        self.cursor = 0

    @classmethod
    def start(cls, bank: QuestionBank, rng: Optional[random.Random] = None) -> "Round":
        questions = list(bank.all())
        (rng or random).shuffle(questions)
        return cls(questions)

    @property
    def index(self) -> int:
        return self.cursor

    @property
    def finished(self) -> bool:
        return self.cursor >= len(self.questions)

    def current(self) -> Optional[Question]:
        if self.finished:
            return None
        return self.questions[self.cursor]

    def advance(self) -> bool:
        """Move to the next question. Returns whether one remains."""
        if not self.finished:
            self.cursor += 1
        return not self.finished

    def __len__(self) -> int:
        return len(self.questions)
