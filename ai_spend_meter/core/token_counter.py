"""
Token counting and usage tracking.

Holds the per-category token counts carried by every usage record.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

# Largest count a store column can hold (signed 64-bit)
MAX_TOKEN_COUNT = 2 ** 63 - 1


@dataclass(frozen=True)
class TokenCounts:
    """Token counts for one usage record.

    Every category is a non-negative integer; categories absent from the
    source line default to zero.
    """
    input: int = 0
    output: int = 0
    cache_creation: int = 0
    cache_read: int = 0

    def __post_init__(self):
        """Validate counts are non-negative integers."""
        for name in ("input", "output", "cache_creation", "cache_read"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"{name} tokens must be an integer")
            if value < 0:
                raise ValueError(f"{name} tokens cannot be negative")

    @property
    def cached(self) -> int:
        """Cache tokens of both kinds (creation + read)."""
        return self.cache_creation + self.cache_read

    @property
    def total(self) -> int:
        """Total tokens across all categories."""
        return self.input + self.output + self.cached

    def __add__(self, other: "TokenCounts") -> "TokenCounts":
        """Sum two counts category by category."""
        return TokenCounts(
            input=self.input + other.input,
            output=self.output + other.output,
            cache_creation=self.cache_creation + other.cache_creation,
            cache_read=self.cache_read + other.cache_read,
        )

    @classmethod
    def from_usage(cls, usage: Dict[str, Any]) -> "TokenCounts":
        """Build counts from an API ``usage`` block.

        Accepts both the API field names (``input_tokens``,
        ``cache_creation_input_tokens`` ...) and the short names used by the
        flat record format (``cache_creation_tokens``, ``cache_read_tokens``).

        Raises:
            ValueError: If a present count is not a non-negative integer or
                exceeds MAX_TOKEN_COUNT
        """
        return cls(
            input=_count(usage, "input_tokens"),
            output=_count(usage, "output_tokens"),
            cache_creation=_count(usage, "cache_creation_input_tokens", "cache_creation_tokens"),
            cache_read=_count(usage, "cache_read_input_tokens", "cache_read_tokens"),
        )


def _count(usage: Dict[str, Any], *keys: str) -> int:
    value: Optional[Any] = None
    for key in keys:
        if usage.get(key) is not None:
            value = usage[key]
            break
    if value is None:
        return 0
    # JSON has no integer type of its own; 12.0 is accepted, 12.5 is not
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"token count for {keys[0]} is not an integer: {value!r}")
    if value > MAX_TOKEN_COUNT:
        raise ValueError(f"token count for {keys[0]} is too large: {value}")
    return value
