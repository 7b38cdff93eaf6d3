"""Per provider/model rate-limit state learned from response headers and 429s."""

import re
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Mapping

from codeloop.logging import get_logger

log = get_logger(__name__)

# Reset values below this are epoch seconds, above it epoch milliseconds.
_EPOCH_MS_THRESHOLD = 10_000_000_000
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_OPENAI_STYLE = {"openai", "azure", "xai", "groq", "deepseek", "together", "fireworks", "openrouter"}

NEAR_LIMIT_REQUESTS = 5
LOW_TOKEN_THRESHOLD = 1000


@dataclass
class RateLimitState:
    provider: str
    model: str
    requests_remaining: int | None = None
    requests_reset_at: float | None = None
    tokens_remaining: int | None = None
    tokens_reset_at: float | None = None
    last_request_at: float = 0.0
    rate_limit_errors: int = 0
    last_rate_limit_error_at: float | None = None


@dataclass
class WaitDecision:
    """Whether a call may go out now, and how long to hold it first."""

    can_proceed: bool
    wait_ms: float = 0.0
    reason: str = ""
    limit_type: str | None = None


def _to_int(raw: Any) -> int | None:
    try:
        return int(float(raw))
    except (TypeError, ValueError):
        return None


def _parse_duration(raw: str) -> float | None:
    """``"6m0s"``, ``"1.5s"``, ``"20ms"`` to seconds."""
    parts = _DURATION_PART.findall(raw.strip())
    if not parts or "".join(v + u for v, u in parts) != raw.strip():
        return None
    scale = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}
    return sum(float(value) * scale[unit] for value, unit in parts)


def _parse_reset(raw: Any, now: float) -> float | None:
    """A reset header as an absolute epoch time in seconds.

    Numbers are epoch timestamps (seconds or milliseconds); duration strings
    and ISO 8601 datetimes are also accepted.
    """
    if raw is None or raw == "":
        return None
    text = str(raw).strip()
    try:
        value = float(text)
    except ValueError:
        value = None
    if value is not None:
        return value if value < _EPOCH_MS_THRESHOLD else value / 1000
    duration = _parse_duration(text)
    if duration is not None:
        return now + duration
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return None


def _parse_after(raw: Any, now: float) -> float | None:
    try:
        return now + float(raw)
    except (TypeError, ValueError):
        return None


class RateLimitTracker:
    """Tracks remaining quota per ``provider:model`` and decides when to hold calls.

    State lives in memory for the life of the process.
    """

    def __init__(
        self,
        enabled: bool = True,
        throttle_buffer_ms: float = 1000,
        clock: Callable[[], float] = time.time,
    ):
        self.enabled = enabled
        self.throttle_buffer_ms = throttle_buffer_ms
        self._clock = clock
        self._states: dict[str, RateLimitState] = {}

    @staticmethod
    def _key(provider: str, model: str) -> str:
        return f"{provider}:{model}"

    def _state_for(self, provider: str, model: str) -> RateLimitState:
        key = self._key(provider, model)
        state = self._states.get(key)
        if state is None:
            state = RateLimitState(provider=provider, model=model)
            self._states[key] = state
        return state

    def _parse_headers(self, provider: str, headers: Mapping[str, str]) -> dict[str, Any]:
        now = self._clock()
        parsed: dict[str, Any] = {}
        if provider == "anthropic":
            prefix = "anthropic-ratelimit"
            parsed["requests_remaining"] = _to_int(headers.get(f"{prefix}-requests-remaining"))
            parsed["tokens_remaining"] = _to_int(headers.get(f"{prefix}-tokens-remaining"))
            for kind in ("requests", "tokens"):
                raw = headers.get(f"{prefix}-{kind}-reset")
                try:
                    # Numeric resets are epoch microseconds.
                    parsed[f"{kind}_reset_at"] = float(raw) / 1_000_000 if raw else None
                except ValueError:
                    parsed[f"{kind}_reset_at"] = _parse_reset(raw, now)
        elif provider in _OPENAI_STYLE:
            parsed["requests_remaining"] = _to_int(headers.get("x-ratelimit-remaining-requests"))
            parsed["tokens_remaining"] = _to_int(headers.get("x-ratelimit-remaining-tokens"))
            parsed["requests_reset_at"] = _parse_reset(headers.get("x-ratelimit-reset-requests"), now)
            parsed["tokens_reset_at"] = _parse_reset(headers.get("x-ratelimit-reset-tokens"), now)

        if parsed.get("requests_reset_at") is None:
            reset_at = (
                _parse_reset(headers.get("x-rate-limit-reset"), now)
                or _parse_after(headers.get("x-ratelimit-reset-after"), now)
                or _parse_after(headers.get("retry-after"), now)
            )
            if reset_at is not None:
                parsed["requests_reset_at"] = reset_at
        return {k: v for k, v in parsed.items() if v is not None}

    def update_from_headers(self, provider: str, model: str, headers: Mapping[str, str]) -> None:
        """Fold rate-limit headers from any response into the state."""
        if not self.enabled:
            return
        normalized = {str(k).lower(): str(v) for k, v in headers.items()}
        parsed = self._parse_headers(provider, normalized)
        state = self._state_for(provider, model)
        for name, value in parsed.items():
            setattr(state, name, value)
        state.last_request_at = self._clock()

    def record_rate_limit_error(self, provider: str, model: str, retry_after: float | None = None) -> None:
        """Count a 429; with ``retry_after`` seconds, both windows reset then."""
        if not self.enabled:
            return
        now = self._clock()
        state = self._state_for(provider, model)
        state.rate_limit_errors += 1
        state.last_rate_limit_error_at = now
        if retry_after:
            state.requests_reset_at = now + retry_after
            state.tokens_reset_at = now + retry_after
        log.info(
            "Rate limit recorded",
            provider=provider,
            model=model,
            retry_after=retry_after,
            errors=state.rate_limit_errors,
        )

    def check(self, provider: str, model: str) -> WaitDecision:
        if not self.enabled:
            return WaitDecision(True, reason="Rate limiting disabled")
        state = self._states.get(self._key(provider, model))
        if state is None:
            return WaitDecision(True, reason="No rate limit data")

        now = self._clock()
        if state.requests_remaining is not None and state.requests_reset_at:
            until_reset_ms = (state.requests_reset_at - now) * 1000
            if until_reset_ms > 0 and state.requests_remaining <= 1:
                return WaitDecision(
                    False,
                    until_reset_ms + self.throttle_buffer_ms,
                    "Request limit reached, waiting for reset",
                    "requests",
                )
            if until_reset_ms > 0 and state.requests_remaining <= NEAR_LIMIT_REQUESTS:
                return WaitDecision(True, self.throttle_buffer_ms, "Near request limit, adding buffer", "requests")

        if state.tokens_remaining is not None and state.tokens_reset_at:
            until_reset_ms = (state.tokens_reset_at - now) * 1000
            if until_reset_ms > 0 and state.tokens_remaining <= LOW_TOKEN_THRESHOLD:
                return WaitDecision(
                    False,
                    until_reset_ms + self.throttle_buffer_ms,
                    "Token limit reached, waiting for reset",
                    "tokens",
                )

        return WaitDecision(True, reason="Within limits")

    def wait_time_ms(self, provider: str, model: str) -> float:
        return self.check(provider, model).wait_ms

    def state(self, provider: str, model: str) -> RateLimitState | None:
        return self._states.get(self._key(provider, model))

    def clear(self, provider: str | None = None) -> None:
        """Forget everything, or only the models of ``provider``."""
        if provider is None:
            self._states.clear()
            return
        for key in [k for k in self._states if k.startswith(f"{provider}:")]:
            del self._states[key]
