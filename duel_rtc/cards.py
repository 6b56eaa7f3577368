"""Card declaration payloads exchanged during a duel."""

import time
import uuid
from dataclasses import dataclass, field
from typing import List, Optional


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class CardDeclaration:
    """A card announced to the opponent.

    Attributes:
        id: Card identifier from the card database (or a local uuid).
        name: Card name, e.g. "Dark Magician".
        description: Card text.
        image_url: Full-size card image.
        image_url_small: Thumbnail image.
        timestamp: Declaration time in epoch milliseconds.
    """

    name: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    description: str = ""
    image_url: Optional[str] = None
    image_url_small: Optional[str] = None
    timestamp: int = field(default_factory=_now_ms)

    def to_payload(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "imageUrl": self.image_url,
            "imageUrlSmall": self.image_url_small,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_payload(cls, payload: dict) -> "CardDeclaration":
        """Build a declaration from a ``card-declared`` payload.

        Raises:
            ValueError: If the payload has no card name.
        """
        name = payload.get("name")
        if not name:
            raise ValueError("Card payload is missing a name")
        timestamp = payload.get("timestamp")
        return cls(
            name=name,
            id=str(payload.get("id") or uuid.uuid4().hex),
            description=payload.get("description") or "",
            image_url=payload.get("imageUrl"),
            image_url_small=payload.get("imageUrlSmall"),
            timestamp=int(timestamp) if timestamp is not None else _now_ms(),
        )


class CardLog:
    """Newest-first history of declared cards.

    A card equal in ``(timestamp, name)`` to the newest entry is treated as a
    repeated delivery of the same declaration and not recorded again.
    """

    def __init__(self, limit: Optional[int] = None):
        self.limit = limit
        self._cards: List[CardDeclaration] = []

    def __len__(self) -> int:
        return len(self._cards)

    def __iter__(self):
        return iter(self._cards)

    @property
    def latest(self) -> Optional[CardDeclaration]:
        return self._cards[0] if self._cards else None

    def record(self, card: CardDeclaration) -> bool:
        """Add a card to the front of the log.

        Returns:
            True if the card was recorded, False if it was a repeat.
        """
        latest = self.latest
        if latest and latest.timestamp == card.timestamp and latest.name == card.name:
            return False
        self._cards.insert(0, card)
        if self.limit is not None:
            del self._cards[self.limit :]
        return True
