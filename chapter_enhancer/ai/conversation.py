"""
Conversation Context - sliding window of prior turns carried between chunks.

Each successful chunk adds a user turn (the chunk sent) and an assistant turn
(the generated text). Only the last `window` turns are kept so the request
size stays bounded while the model still sees how the previous part was
written.
"""

from dataclasses import dataclass

from ..config import HISTORY_WINDOW

USER = "user"
ASSISTANT = "assistant"
VALID_ROLES = (USER, ASSISTANT)


@dataclass(frozen=True)
class ConversationTurn:
    role: str
    text: str

    def to_dict(self) -> dict:
        return {"role": self.role, "text": self.text}

    @classmethod
    def from_dict(cls, data: dict) -> "ConversationTurn":
        return cls(role=data["role"], text=data["text"])


class ConversationContext:
    """
    Bounded, ordered list of ConversationTurns.

    Args:
        window: Maximum number of turns kept (0 disables history).
        turns: Initial turns; trimmed to the window.
    """

    def __init__(self, window: int = HISTORY_WINDOW, turns: list[ConversationTurn] | None = None):
        if window < 0:
            raise ValueError("window must be zero or positive")
        self.window = window
        self._turns: list[ConversationTurn] = []
        for turn in turns or []:
            self.append(turn)

    def __len__(self) -> int:
        return len(self._turns)

    @property
    def turns(self) -> list[ConversationTurn]:
        return list(self._turns)

    def append(self, turn: ConversationTurn) -> None:
        """Add a turn and drop the oldest ones beyond the window."""
        if turn.role not in VALID_ROLES:
            raise ValueError(f"Unknown conversation role: {turn.role!r}")
        self._turns.append(turn)
        self._trim()

    def record_exchange(self, user_text: str, assistant_text: str) -> None:
        """Append one request/response pair."""
        self.append(ConversationTurn(USER, user_text))
        self.append(ConversationTurn(ASSISTANT, assistant_text))

    def with_exchange(self, user_text: str, assistant_text: str) -> "ConversationContext":
        """Return a copy with one more exchange; this context is left untouched."""
        updated = ConversationContext(self.window, self._turns)
        updated.record_exchange(user_text, assistant_text)
        return updated

    def cleaned_turns(self) -> list[ConversationTurn]:
        """
        Turns in a shape the generation API accepts.

        Empty turns are dropped, consecutive turns with the same role are
        collapsed to the latest one, the history starts with a user turn and
        ends with an assistant turn (the new request supplies the next user turn).
        """
        cleaned: list[ConversationTurn] = []
        for turn in self._turns:
            if not turn.text or not turn.text.strip():
                continue
            if cleaned and cleaned[-1].role == turn.role:
                cleaned[-1] = turn
            else:
                cleaned.append(turn)

        while cleaned and cleaned[0].role != USER:
            cleaned.pop(0)
        while cleaned and cleaned[-1].role == USER:
            cleaned.pop()
        return cleaned

    def snapshot(self) -> list[dict]:
        """JSON-safe copy of the turns, used by ProcessingSession."""
        return [turn.to_dict() for turn in self._turns]

    @classmethod
    def from_snapshot(cls, snapshot: list[dict], window: int = HISTORY_WINDOW) -> "ConversationContext":
        return cls(window, [ConversationTurn.from_dict(item) for item in snapshot])

    def _trim(self) -> None:
        if self.window == 0:
            self._turns.clear()
        elif len(self._turns) > self.window:
            del self._turns[:-self.window]
