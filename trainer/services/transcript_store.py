"""
Append-only transcript of a training session.

The store is the source of truth for the conversation. Every append also
bumps the owning session's message and word counters so both always agree.
"""
import logging
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Optional

from trainer.core.exceptions import ValidationError
from trainer.schemas.training import LiveSession, Sender, Turn, count_words

logger = logging.getLogger(__name__)


class TranscriptStore:
    """Ordered log of user/agent turns for one session."""

    def __init__(self, session: LiveSession):
        self.session = session
        self._turns: List[Turn] = []
        self._word_counts: Dict[Sender, int] = {Sender.USER: 0, Sender.AGENT: 0}
        self._turn_counts: Dict[Sender, int] = {Sender.USER: 0, Sender.AGENT: 0}

    def append(self, sender, text: str, offset_seconds: float) -> Turn:
        """
        Append a turn and update the session counters.

        Args:
            sender: Sender enum or its string value ("user" / "agent")
            text: Utterance text, must contain something besides whitespace
            offset_seconds: Session-relative offset with paused time excluded

        Returns:
            The created Turn

        Raises:
            ValidationError: empty text or unknown sender
        """
        try:
            sender = Sender(sender)
        except ValueError:
            raise ValidationError(f"Invalid sender: {sender!r}")

        if not isinstance(text, str) or not text.strip():
            raise ValidationError("Turn text must not be empty")

        text = text.strip()
        offset = max(float(offset_seconds or 0.0), 0.0)
        if self._turns and offset < self._turns[-1].offset_seconds:
            offset = self._turns[-1].offset_seconds

        turn = Turn(
            session_id=self.session.id,
            index=len(self._turns),
            sender=sender,
            text=text,
            offset_seconds=round(offset, 3),
            created_at=datetime.now(timezone.utc),
        )
        words = count_words(text)

        # Nothing above mutates state; apply turn and counters together
        self._turns.append(turn)
        self._word_counts[sender] += words
        self._turn_counts[sender] += 1
        self.session.total_messages = len(self._turns)
        if sender == Sender.USER:
            self.session.user_words_count = self._word_counts[Sender.USER]
        else:
            self.session.ai_words_count = self._word_counts[Sender.AGENT]

        logger.debug(f"Session {self.session.id}: appended {sender.value} turn #{turn.index} ({words} words)")
        return turn

    def all(self) -> Iterator[Turn]:
        """Iterate over a snapshot of the turns in insertion order."""
        return iter(tuple(self._turns))

    def __iter__(self) -> Iterator[Turn]:
        return self.all()

    def __len__(self) -> int:
        return len(self._turns)

    def word_count(self, sender) -> int:
        return self._word_counts[Sender(sender)]

    def count(self, sender) -> int:
        return self._turn_counts[Sender(sender)]

    def last(self, sender=None) -> Optional[Turn]:
        if sender is None:
            return self._turns[-1] if self._turns else None
        sender = Sender(sender)
        for turn in reversed(self._turns):
            if turn.sender == sender:
                return turn
        return None

    def recent(self, limit: int) -> List[Turn]:
        """Most recent turns, oldest first."""
        if limit <= 0:
            return []
        return list(self._turns[-limit:])
