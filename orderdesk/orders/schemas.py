from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(moment: datetime) -> datetime:
    """Naive timestamps are taken as UTC; aware ones are converted to it."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


@dataclass
class OrderShell:
    """Header data supplied by the caller; the total is always derived."""

    placed_at: datetime = field(default_factory=_utcnow)
    total: Decimal = Decimal("0")


@dataclass(frozen=True)
class LineRequest:
    product_id: int
    quantity: int


@dataclass(frozen=True)
class PlacedLine:
    id: int
    product_id: int
    quantity: int
    subtotal: Decimal
    # filled on read-back only
    product_name: Optional[str] = field(default=None, compare=False)
    category_name: Optional[str] = field(default=None, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "subtotal": str(self.subtotal),
        }
        if self.product_name is not None:
            data["product_name"] = self.product_name
            data["category_name"] = self.category_name
        return data


@dataclass(frozen=True)
class PlacedOrder:
    id: int
    placed_at: datetime
    total: Decimal
    lines: Tuple[PlacedLine, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "placed_at": as_utc(self.placed_at).isoformat(),
            "total": str(self.total),
            "items": [line.to_dict() for line in self.lines],
        }
