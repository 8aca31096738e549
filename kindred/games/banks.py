"""
Question banks

Read-only reference data shipped as JSON inside the package.
"""

import json
from dataclasses import dataclass, field
from functools import lru_cache
from importlib import resources
from typing import Any, Dict, List


@dataclass(frozen=True)
class Question:
    id: str
    number: int
    category: str
    text: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"id": self.id, "number": self.number, "category": self.category, "text": self.text, **self.metadata}


class QuestionBank:
    def __init__(self, family: str, questions: List[Question]):
        self.family = family
        self.questions = list(questions)
        self._by_id = {q.id: q for q in self.questions}

    def __len__(self) -> int:
        return len(self.questions)

    def get(self, question_id: str) -> Question:
        try:
            return self._by_id[question_id]
        except KeyError:
            raise KeyError(f"Unknown question {question_id} in {self.family} bank") from None

    def ids(self) -> List[str]:
        return [q.id for q in self.questions]

    def categories(self) -> List[str]:
        seen: List[str] = []
        for q in self.questions:
            if q.category not in seen:
                seen.append(q.category)
        return seen

    @classmethod
    def from_dict(cls, raw: dict) -> "QuestionBank":
        questions = []
        for entry in raw["questions"]:
            entry = dict(entry)
            questions.append(
                Question(
                    id=entry.pop("id"),
                    number=entry.pop("number"),
                    category=entry.pop("category"),
                    text=entry.pop("text"),
                    metadata=entry,
                )
            )
        return cls(raw["family"], questions)


@lru_cache()
def load_bank(filename: str) -> QuestionBank:
    text = resources.files("kindred.games").joinpath("banks", filename).read_text(encoding="utf-8")
    return QuestionBank.from_dict(json.loads(text))
