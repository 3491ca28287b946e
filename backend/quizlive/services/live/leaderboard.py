from dataclasses import dataclass
from typing import Any, Dict, Iterable, List

from .store import Participant


DEFAULT_LIMIT = 10


@dataclass(frozen=True)
class LeaderboardEntry:
    participant_id: str
    name: str
    score: int
    connected: bool
    answered_questions: int
    rank: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'participantId': self.participant_id,
            'name': self.name,
            'score': self.score,
            'connected': self.connected,
            'answeredQuestions': self.answered_questions,
            'rank': self.rank,
        }


def project(participants: Iterable[Participant], limit: int = DEFAULT_LIMIT) -> List[LeaderboardEntry]:
    """Rank participants by score, highest first.

    ``sorted`` is stable, so equal scores keep the order the participants
    were iterated in (join order).
    """
    ranked = sorted(participants, key=lambda p: -p.score)
    if limit is not None and limit >= 0:
        ranked = ranked[:limit]
    return [
        LeaderboardEntry(
            participant_id=p.id,
            name=p.name,
            score=p.score,
            connected=p.connected,
            answered_questions=p.answered_count,
            rank=position,
        )
        for position, p in enumerate(ranked, start=1)
    ]


def as_dicts(entries: Iterable[LeaderboardEntry]) -> List[Dict[str, Any]]:
    return [e.to_dict() for e in entries]
