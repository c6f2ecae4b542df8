"""Price event wire model.

Learn: The relay itself never parses payloads — it routes opaque bytes.
This model is the contract between the Event Source and browser clients:
a compact JSON object with symbol, price (2 decimal places, as a string
so no float rounding leaks onto the wire) and an ISO-8601 UTC timestamp.
"""

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Union

from pydantic import BaseModel, Field, field_validator

_CENTS = Decimal("0.01")


def format_price(price: Union[Decimal, float, int, str]) -> str:
    """Render a price with exactly two fractional digits."""
    value = Decimal(str(price)).quantize(_CENTS, rounding=ROUND_HALF_UP)
    return f"{value:.2f}"


def format_timestamp(at: datetime) -> str:
    """Render an instant as UTC ISO-8601 with a trailing Z."""
    if at.tzinfo is None:
        at = at.replace(tzinfo=timezone.utc)
    at = at.astimezone(timezone.utc)
    return at.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class PriceEvent(BaseModel):
    symbol: str = Field(..., min_length=1, max_length=16)
    price: str = Field(..., pattern=r"^-?\d+\.\d{2}$")
    timestamp: str

    model_config = {"frozen": True}

    @field_validator("timestamp")
    @classmethod
    def validate_timestamp(cls, value: str) -> str:
        # fromisoformat() only accepts the Z suffix from Python 3.11 on
        try:
            datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as e:
            raise ValueError(f"timestamp is not ISO-8601: {value!r}") from e
        return value

    @classmethod
    def create(
        cls,
        symbol: str,
        price: Union[Decimal, float, int, str],
        at: Optional[datetime] = None,
    ) -> "PriceEvent":
        """Build an event, normalizing price and timestamp formatting."""
        return cls(
            symbol=symbol,
            price=format_price(price),
            timestamp=format_timestamp(at or datetime.now(timezone.utc)),
        )

    def to_json(self) -> str:
        """Compact JSON text, keys in declaration order."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, text: Union[str, bytes]) -> "PriceEvent":
        return cls.model_validate_json(text)
