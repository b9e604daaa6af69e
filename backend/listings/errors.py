from dataclasses import dataclass
from typing import List, Optional


class ListingError(Exception):
    """Base class for everything the extraction service raises on purpose."""


class InputError(ListingError):
    """The request itself is unusable (missing or malformed URL)."""


class UnsupportedSourceError(InputError):
    def __init__(self, url: str) -> None:
        super().__init__("Unknown listing source.")
        self.url = url


class TierFailure(ListingError):
    """A single fetch strategy failed. Never fatal on its own."""

    def __init__(
        self,
        tier: str,
        reason: str,
        *,
        title: Optional[str] = None,
        final_url: Optional[str] = None,
        timed_out: bool = False,
    ) -> None:
        super().__init__(f"{tier}: {reason}")
        self.tier = tier
        self.reason = reason
        self.title = title
        self.final_url = final_url
        self.timed_out = timed_out


class BlockedPageError(TierFailure):
    """The site answered with a bot-check / challenge page."""


@dataclass
class TierAttempt:
    tier: str
    ok: bool
    reason: str = ""
    elapsed_ms: int = 0
    title: Optional[str] = None
    final_url: Optional[str] = None

    def describe(self) -> str:
        return f"{self.tier}={'ok' if self.ok else self.reason or 'failed'}"


class ExtractionError(ListingError):
    """Every applicable tier was tried and none produced a usable record."""

    def __init__(self, url: str, attempts: List[TierAttempt], message: Optional[str] = None) -> None:
        self.url = url
        self.attempts = list(attempts)
        super().__init__(message or self._build_message())

    def _build_message(self) -> str:
        tried = ", ".join(a.describe() for a in self.attempts) or "no tiers attempted"
        msg = f"all extraction tiers failed for {self.url} [{tried}]"
        last = next((a for a in reversed(self.attempts) if a.title or a.final_url), None)
        if last is not None:
            msg += f" (last page: title={last.title!r} url={last.final_url})"
        return msg


class ExtractionTimeout(ExtractionError):
    def __init__(self, url: str, timeout_s: float) -> None:
        super().__init__(url, [], message=f"listing extraction timed out after {timeout_s:g}s for {url}")
        self.timeout_s = timeout_s
