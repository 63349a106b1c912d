"""
Assignment candidate directory.

Assignment and escalation actions need to know who can take a task.
User records live in an external directory, so the engines talk to it
through the ``CandidateDirectory`` protocol. ``StaticCandidateDirectory``
serves a fixed list and is what the engines use unless a deployment
plugs in a live lookup.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Protocol, Set

from .choices import UserRole

logger = logging.getLogger(__name__)


@dataclass
class Candidate:
    """A user who can be assigned work."""

    user_id: str
    name: str
    role: str
    score: float = 0.0
    current_workload: float = 0.0
    expertise: Set[str] = field(default_factory=set)
    available: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Candidate':
        return cls(
            user_id=str(data.get('userId') or data.get('user_id') or data.get('id')),
            name=data.get('name', ''),
            role=data.get('role', ''),
            score=float(data.get('score', 0.0)),
            current_workload=float(data.get('currentWorkload', data.get('current_workload', 0.0))),
            expertise=set(data.get('expertise', [])),
            available=data.get('available', True),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'userId': self.user_id,
            'name': self.name,
            'role': self.role,
            'score': self.score,
            'currentWorkload': self.current_workload,
            'expertise': sorted(self.expertise),
        }


class CandidateDirectory(Protocol):
    """Source of assignment candidates."""

    def get_candidates(self, role: Optional[str] = None) -> List[Candidate]:
        ...


DEFAULT_CANDIDATES = (
    Candidate(
        user_id='user1',
        name='John Doe',
        role=UserRole.ATTORNEY,
        score=0.85,
        current_workload=0.6,
        expertise={'criminal_defense', 'contract_dispute'},
    ),
    Candidate(
        user_id='user2',
        name='Jane Smith',
        role=UserRole.ATTORNEY,
        score=0.75,
        current_workload=0.4,
        expertise={'medical_malpractice', 'family_law'},
    ),
)


class StaticCandidateDirectory:
    """Directory backed by a fixed candidate list."""

    def __init__(self, candidates: Optional[Iterable[Candidate]] = None):
        source = DEFAULT_CANDIDATES if candidates is None else candidates
        self._candidates = [
            Candidate(
                user_id=c.user_id, name=c.name, role=c.role, score=c.score,
                current_workload=c.current_workload, expertise=set(c.expertise),
                available=c.available,
            )
            for c in source
        ]

    def get_candidates(self, role: Optional[str] = None) -> List[Candidate]:
        candidates = [c for c in self._candidates if c.available]
        if role:
            candidates = [c for c in candidates if c.role == role]
        return candidates


def resolve_candidates(directory: CandidateDirectory, metadata: Dict[str, Any]) -> List[Candidate]:
    """
    Candidates for one evaluation.

    A ``candidates`` list in the evaluation metadata takes precedence over
    the directory, which lets callers pass a live snapshot per request.
    """
    supplied = metadata.get('candidates') if metadata else None
    if supplied:
        return [c if isinstance(c, Candidate) else Candidate.from_dict(c) for c in supplied]
    return directory.get_candidates()
