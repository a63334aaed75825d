"""Detection of provider "range too large" / "response too large" rejections.

Every RPC provider phrases these errors differently, so matching is kept in
one pluggable classifier. Supporting a new provider means adding a signature,
never touching the scanning algorithm.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

DEFAULT_RANGE_LIMIT_SIGNATURES: tuple[str, ...] = (
    "log response size exceeded",
    "query exceeds max block range",
    "query returned more than 10000 results",
    "exceeds max results",
    "block range is too large",
    "range is too large",
    "block range too large",
    "max is 1k blocks",
    "response size should not greater than",
    "request entity too large",
    "payload too large",
)


def _error_text(error: BaseException) -> str:
    parts = [str(error)]
    # web3 RPC errors carry the provider payload in args[0] as a dict.
    for arg in getattr(error, "args", ()):
        if isinstance(arg, dict):
            message = arg.get("message")
            if message:
                parts.append(str(message))
    return " ".join(parts).lower()


@dataclass(frozen=True)
class RangeLimitClassifier:
    """Case-insensitive substring matcher over known provider messages."""

    signatures: tuple[str, ...] = field(default=DEFAULT_RANGE_LIMIT_SIGNATURES)

    def __post_init__(self) -> None:
        object.__setattr__(self, "signatures", tuple(s.lower() for s in self.signatures if s))

    def with_signatures(self, extra: Iterable[str]) -> RangeLimitClassifier:
        """Return a classifier that also recognizes `extra` signatures."""
        merged = list(self.signatures)
        for signature in extra:
            lowered = signature.lower()
            if lowered and lowered not in merged:
                merged.append(lowered)
        return RangeLimitClassifier(signatures=tuple(merged))

    def is_range_limit(self, error: BaseException) -> bool:
        text = _error_text(error)
        return any(signature in text for signature in self.signatures)
