"""
Append-only log of instruction and refinement turns for one campaign.
"""
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Tuple

from ..errors import InvariantViolation, ValidationError


class TurnRole(str, Enum):
    """Who wrote a turn"""
    OPERATOR = "operator"
    SYSTEM = "system"


@dataclass(frozen=True)
class ChatTurn:
    """One message in the refinement conversation"""
    sequence: int
    role: TurnRole
    text: str
    created_at: datetime

    def to_dict(self) -> dict:
        return {
            "sequence": self.sequence,
            "role": self.role.value,
            "text": self.text,
            "created_at": self.created_at.isoformat(),
        }


class ChatHistory:
    """
    Ordered, gap-free sequence of ChatTurns.

    Sequence numbers start at 1 and are assigned under a lock, so concurrent
    appends serialize rather than collide. There is no API to delete or
    rewrite a turn.
    """

    def __init__(self):
        self._turns: List[ChatTurn] = []
        self._lock = threading.Lock()

    def append(
        self,
        text: str,
        role: TurnRole = TurnRole.OPERATOR,
        expected_sequence: Optional[int] = None,
    ) -> ChatTurn:
        """
        Append a turn and return it with its assigned sequence number.

        Args:
            text: Instruction or refinement text (must be non-blank)
            role: Author of the turn
            expected_sequence: If given, the sequence number the caller
                believes it is writing. A mismatch means another writer got
                there first and raises InvariantViolation.
        """
        if text is None or not text.strip():
            raise ValidationError("Instruction text must not be empty", {"field": "text"})

        with self._lock:
            next_sequence = len(self._turns) + 1
            if self._turns and self._turns[-1].sequence != next_sequence - 1:
                raise InvariantViolation(
                    "Chat history sequence is out of order",
                    {"last_sequence": self._turns[-1].sequence, "length": len(self._turns)},
                )
            if expected_sequence is not None and expected_sequence != next_sequence:
                raise InvariantViolation(
                    "Concurrent append would reuse or skip a sequence number",
                    {"expected": expected_sequence, "next": next_sequence},
                )

            turn = ChatTurn(
                sequence=next_sequence,
                role=TurnRole(role),
                text=text.strip(),
                created_at=datetime.now(timezone.utc),
            )
            self._turns.append(turn)
            return turn

    def read(self) -> Tuple[ChatTurn, ...]:
        """Full ordered history. Generation always receives all of it."""
        with self._lock:
            return tuple(self._turns)

    @property
    def latest(self) -> Optional[ChatTurn]:
        with self._lock:
            return self._turns[-1] if self._turns else None

    def __len__(self) -> int:
        return len(self._turns)
