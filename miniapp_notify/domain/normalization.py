from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class DeliveryReport:
    successful_tokens: list[str] = field(default_factory=list)
    invalid_tokens: list[str] = field(default_factory=list)
    rate_limited_tokens: list[str] = field(default_factory=list)


def _token_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


def normalize_delivery_report(parsed: Any) -> DeliveryReport:
    """Accept both ``{"result": {...Tokens}}`` and the flat ``{...Tokens}`` shape."""
    if not isinstance(parsed, dict):
        return DeliveryReport()
    source = parsed.get("result") if isinstance(parsed.get("result"), dict) else parsed
    return DeliveryReport(
        successful_tokens=_token_list(source.get("successfulTokens")),
        invalid_tokens=_token_list(source.get("invalidTokens")),
        rate_limited_tokens=_token_list(source.get("rateLimitedTokens")),
    )


def truncate(value: Any, limit: int) -> str:
    return str(value if value is not None else "")[:limit]
