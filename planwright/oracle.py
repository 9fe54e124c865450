"""
PLANWRIGHT Oracle — Structured Output Boundary

Every model call in the system goes through here. Callers hand over a
list of chat messages plus a pydantic schema and get back a validated
instance, or a typed OracleError.

The retry wrapper lives at this boundary and nowhere else:
  - rate limited with a reset timestamp → sleep until the reset
  - other transient failures            → exponential backoff (1s base, 60s cap)
  - billing / unknown failures          → raised immediately
  - attempts are bounded (5 by default), then the last error propagates
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, TypeVar

import litellm
from loguru import logger
from pydantic import BaseModel, ValidationError
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from planwright.config_loader import PlanwrightConfig

M = TypeVar("M", bound=BaseModel)

RATE_LIMIT_RESET_HEADERS = (
    "anthropic-ratelimit-input-tokens-reset",
    "anthropic-ratelimit-tokens-reset",
    "anthropic-ratelimit-requests-reset",
)

_BILLING_MARKERS = ("credit balance", "billing", "insufficient_quota", "payment required")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class OracleError(Exception):
    retryable: bool = False


class RateLimitedError(OracleError):
    retryable = True

    def __init__(self, message: str, reset_at: datetime | None = None):
        super().__init__(message)
        self.reset_at = reset_at


class OracleUnavailableError(OracleError):
    """Connection failures, timeouts and 5xx responses."""
    retryable = True


class InvalidResponseError(OracleError):
    """The model answered, but not with something the schema accepts."""
    retryable = True


class BillingError(OracleError):
    pass


class UnknownOracleError(OracleError):
    pass


def _reset_from_headers(headers: Any) -> datetime | None:
    if not headers:
        return None
    for name in RATE_LIMIT_RESET_HEADERS:
        value = headers.get(name)
        if not value:
            continue
        try:
            reset = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.debug(f"[ORACLE] Unparseable {name} header: {value!r}")
            continue
        return reset if reset.tzinfo else reset.replace(tzinfo=timezone.utc)
    return None


def classify_error(exc: Exception) -> OracleError:
    """Map a LiteLLM (or transport) exception onto the oracle taxonomy."""
    if isinstance(exc, OracleError):
        return exc

    message = str(exc)
    if any(marker in message.lower() for marker in _BILLING_MARKERS):
        return BillingError(message)

    if isinstance(exc, litellm.RateLimitError):
        response = getattr(exc, "response", None)
        return RateLimitedError(message, reset_at=_reset_from_headers(getattr(response, "headers", None)))

    if isinstance(exc, (
        litellm.APIConnectionError,
        litellm.Timeout,
        litellm.ServiceUnavailableError,
        litellm.InternalServerError,
    )):
        return OracleUnavailableError(message)

    return UnknownOracleError(f"{type(exc).__name__}: {message}")


# ---------------------------------------------------------------------------
# Usage Tracking
# ---------------------------------------------------------------------------

@dataclass
class UsageRecord:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated_cost: float = 0.0
    call_count: int = 0


@dataclass
class UsageTracker:
    """Tracks token + dollar spend per run."""
    usage: UsageRecord = field(default_factory=UsageRecord)

    def record(self, response: Any) -> None:
        usage = getattr(response, "usage", None)
        if usage:
            self.usage.prompt_tokens += getattr(usage, "prompt_tokens", 0) or 0
            self.usage.completion_tokens += getattr(usage, "completion_tokens", 0) or 0
            self.usage.total_tokens += getattr(usage, "total_tokens", 0) or 0

        try:
            self.usage.estimated_cost += litellm.completion_cost(completion_response=response)
        except Exception as e:
            logger.debug(f"[ORACLE] Cost unavailable: {e}")

        self.usage.call_count += 1

    def summary(self) -> dict:
        return {
            "total_tokens": self.usage.total_tokens,
            "estimated_cost": round(self.usage.estimated_cost, 4),
            "call_count": self.usage.call_count,
        }


# ---------------------------------------------------------------------------
# Response helpers
# ---------------------------------------------------------------------------

def strip_fences(text: str) -> str:
    """Remove a surrounding markdown code fence, if the model added one."""
    content = text.strip()
    if content.startswith("```"):
        lines = content.split("\n")[1:]
        if lines and lines[-1].strip().startswith("```"):
            lines = lines[:-1]
        content = "\n".join(lines)
    return content


def schema_instruction(schema: type[BaseModel]) -> dict[str, str]:
    return {
        "role": "user",
        "content": (
            "Respond with a single JSON object ONLY. No markdown, no commentary.\n"
            "It must validate against this JSON schema:\n"
            f"{json.dumps(schema.model_json_schema(), indent=2)}"
        ),
    }


# ---------------------------------------------------------------------------
# Oracle
# ---------------------------------------------------------------------------

class Oracle:
    """
    Vendor-agnostic structured generation.

    Components call `oracle.generate(messages, Schema, role=...)` or
    `oracle.generate_text(messages, role=...)`. The role picks the model
    from the routing config.
    """

    def __init__(
        self,
        config: PlanwrightConfig,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.config = config
        self.usage = UsageTracker()
        self._sleep = sleep
        self._now = now
        self._backoff = wait_exponential(
            multiplier=config.limits.backoff_base_seconds,
            min=config.limits.backoff_base_seconds,
            max=config.limits.backoff_cap_seconds,
        )

        litellm.suppress_debug_info = True

    def resolve_model(self, role: str) -> str:
        model = getattr(self.config.routing, role, None)
        if not model:
            raise ValueError(
                f"Unknown oracle role: {role}. Known: {list(type(self.config.routing).model_fields)}"
            )
        return model

    # -- public API --

    def generate(self, messages: list[dict[str, str]], schema: type[M], role: str = "planner") -> M:
        return self._retrying()(self._generate_structured, messages, schema, role)

    def generate_text(self, messages: list[dict[str, str]], role: str = "editor") -> str:
        return self._retrying()(self._generate_text, messages, role)

    # -- retry wrapper --

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.config.limits.oracle_max_attempts),
            wait=self._wait,
            retry=retry_if_exception(lambda e: isinstance(e, OracleError) and e.retryable),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )

    def _wait(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, RateLimitedError) and exc.reset_at:
            delay = (exc.reset_at - self._now()).total_seconds()
            if delay > 0:
                return delay
        return self._backoff(retry_state)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0
        if isinstance(exc, RateLimitedError):
            logger.warning(f"[ORACLE] Rate limit reached, retrying in {delay:.0f}s")
        else:
            logger.warning(
                f"[ORACLE] Attempt {retry_state.attempt_number} failed ({exc}), "
                f"retrying in {delay:.0f}s"
            )

    # -- single attempts --

    def _complete(self, messages: list[dict[str, str]], role: str, json_mode: bool) -> str:
        model = self.resolve_model(role)
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": self.config.limits.max_tokens,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        logger.debug(f"[ORACLE] {role} → {model} ({len(messages)} messages)")
        start = time.monotonic()
        try:
            response = litellm.completion(**kwargs)
        except Exception as e:
            raise classify_error(e) from e

        self.usage.record(response)
        elapsed_ms = int((time.monotonic() - start) * 1000)
        logger.debug(
            f"[ORACLE] {role} complete — "
            f"{self.usage.usage.total_tokens} tokens, "
            f"${self.usage.usage.estimated_cost:.4f}, {elapsed_ms}ms"
        )
        return response.choices[0].message.content or ""

    def _generate_structured(self, messages: list[dict[str, str]], schema: type[M], role: str) -> M:
        content = strip_fences(self._complete([*messages, schema_instruction(schema)], role, json_mode=True))
        try:
            return schema.model_validate_json(content)
        except ValidationError as e:
            logger.debug(f"[ORACLE] Raw response: {content[:500]}")
            raise InvalidResponseError(f"{schema.__name__} validation failed: {e}") from e

    def _generate_text(self, messages: list[dict[str, str]], role: str) -> str:
        content = strip_fences(self._complete(messages, role, json_mode=False))
        if not content.strip():
            raise InvalidResponseError("Model returned an empty response")
        return content
