"""
Conversation session state.

One session per open chat, used by a single person sequentially. Holds the
bounded turn history, the service/provider currently being discussed, and a
pending clarification while the assistant waits for a missing detail.
Sessions live in process memory only and are dropped when the chat closes.
"""

import re
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum, auto
from threading import Lock
from typing import Deque, Dict, List, Optional, Tuple

from .intent import detect_service_type, fold

DEFAULT_MAX_TURNS = 6
MAX_CLARIFICATION_REPLY_WORDS = 4

_ORDINALS = {
    "primero": 0, "primera": 0, "primer": 0, "1": 0,
    "segundo": 1, "segunda": 1, "2": 1,
    "tercero": 2, "tercera": 2, "tercer": 2, "3": 2,
}
_DEMONSTRATIVES = ("ese", "esa", "este", "esta", "ese proveedor", "el mismo")


def mentions_reference(question: str) -> bool:
    """True when a question points back at earlier recommendations.

    Questions naming their own service type are new searches, not references.
    """
    if detect_service_type(question) is not None:
        return False
    words = re.findall(r"\w+", fold(question))
    folded = " ".join(words)
    return any(word in _ORDINALS for word in words) or any(
        f" {d} " in f" {folded} " for d in _DEMONSTRATIVES
    )


@dataclass(frozen=True)
class Turn:
    role: str
    text: str


@dataclass
class ActiveContext:
    """Subject of the most recent search-style exchange."""
    service_type: Optional[str] = None
    focused_provider_name: Optional[str] = None
    last_candidate_set: List[str] = field(default_factory=list)


class ClarificationState(Enum):
    NO_PENDING = auto()
    PENDING = auto()
    RESOLVED = auto()


@dataclass(frozen=True)
class PendingClarification:
    original_question: str
    missing_slots: Tuple[str, ...]


class ConversationSession:
    """State for one open chat.

    Args:
        session_id: Identifier recorded with every usage row
        max_turns: History bound; the oldest turns are dropped first
    """

    def __init__(self, session_id: Optional[str] = None, max_turns: int = DEFAULT_MAX_TURNS):
        if max_turns < 1:
            raise ValueError("max_turns must be >= 1")
        self.session_id = session_id or uuid.uuid4().hex
        self._turns: Deque[Turn] = deque(maxlen=max_turns)
        self.active_context = ActiveContext()
        self._pending: Optional[PendingClarification] = None
        self.clarification_state = ClarificationState.NO_PENDING

    @property
    def max_turns(self) -> int:
        return self._turns.maxlen

    def resize(self, max_turns: int) -> None:
        """Apply a new history bound, keeping the newest turns."""
        if max_turns != self._turns.maxlen:
            self._turns = deque(self._turns, maxlen=max(1, max_turns))

    def append_turn(self, role: str, text: str) -> None:
        if role not in ("user", "assistant"):
            raise ValueError(f"Unsupported role: {role}")
        self._turns.append(Turn(role=role, text=text))

    def get_history(self) -> List[Turn]:
        """Turns in chronological order."""
        return list(self._turns)

    def set_active_context(self, service_type: str, candidates: List[str]) -> None:
        self.active_context = ActiveContext(
            service_type=service_type,
            focused_provider_name=candidates[0] if candidates else None,
            last_candidate_set=list(candidates)
        )

    def resolve_reference(self, question: str) -> Optional[str]:
        """Resolve "¿y el segundo?"-style follow-ups against the last candidates.

        Returns:
            The referenced provider name, or None when the question names its
            own service type or refers to nothing known
        """
        candidates = self.active_context.last_candidate_set
        if not candidates or detect_service_type(question) is not None:
            return None
        words = re.findall(r"\w+", fold(question))
        for word in words:
            index = _ORDINALS.get(word)
            if index is not None:
                if index < len(candidates):
                    self.active_context.focused_provider_name = candidates[index]
                    return candidates[index]
                return None
        folded = " ".join(words)
        if any(f" {d} " in f" {folded} " for d in _DEMONSTRATIVES):
            return self.active_context.focused_provider_name
        return None

    def get_pending_clarification(self) -> Optional[PendingClarification]:
        return self._pending

    def begin_clarification(self, original_question: str, missing_slots: List[str]) -> None:
        self._pending = PendingClarification(
            original_question=original_question,
            missing_slots=tuple(missing_slots)
        )
        self.clarification_state = ClarificationState.PENDING

    def resolve_clarification(self, answer: str) -> Optional[str]:
        """Interpret the next user turn as the missing detail.

        A short reply without a service type or a question mark fills the
        slot and is merged with the original question. Anything else
        abandons the clarification.

        Returns:
            The merged question, or None if nothing was pending or the reply
            looked unrelated
        """
        pending = self._pending
        if pending is None:
            return None
        self._pending = None
        reply = answer.strip().strip(".!¡")
        looks_unrelated = (
            not reply
            or "?" in reply
            or len(reply.split()) > MAX_CLARIFICATION_REPLY_WORDS
            or detect_service_type(reply) is not None
        )
        if looks_unrelated:
            self.clarification_state = ClarificationState.NO_PENDING
            return None
        self.clarification_state = ClarificationState.RESOLVED
        return f"{pending.original_question.rstrip(' ?.')} en {reply}"

    def abandon_clarification(self) -> None:
        self._pending = None
        self.clarification_state = ClarificationState.NO_PENDING


class SessionStore:
    """Open conversation sessions of this process, by id."""

    def __init__(self) -> None:
        self._sessions: Dict[str, ConversationSession] = {}
        self._lock = Lock()

    def open(self, max_turns: int = DEFAULT_MAX_TURNS, session_id: Optional[str] = None) -> ConversationSession:
        session = ConversationSession(session_id=session_id, max_turns=max_turns)
        with self._lock:
            self._sessions[session.session_id] = session
        return session

    def get(self, session_id: str) -> Optional[ConversationSession]:
        with self._lock:
            return self._sessions.get(session_id)

    def close(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
