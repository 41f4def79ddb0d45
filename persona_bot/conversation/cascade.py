from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, Sequence, TypeVar, Union

logger = logging.getLogger("persona_bot")

T = TypeVar("T")

OUTCOME_SUCCESS = "success"
OUTCOME_RETRYABLE = "retryable"
OUTCOME_FATAL = "fatal"


@dataclass(frozen=True, slots=True)
class Success(Generic[T]):
    value: T


@dataclass(frozen=True, slots=True)
class Retryable:
    error: BaseException


@dataclass(frozen=True, slots=True)
class Fatal:
    error: BaseException


AttemptResult = Union[Success[T], Retryable, Fatal]


@dataclass(frozen=True, slots=True)
class CascadeAttempt:
    model: str
    outcome: str
    error_detail: str = ""
    latency_ms: int = 0


@dataclass(slots=True)
class CascadeResult(Generic[T]):
    value: T
    model: str
    attempts: list[CascadeAttempt] = field(default_factory=list)


class CascadeError(RuntimeError):
    """Raised when no model in the cascade produced a result."""

    def __init__(self, attempts: Sequence[CascadeAttempt], last_error: BaseException) -> None:
        self.attempts = list(attempts)
        self.last_error = last_error
        tried = ", ".join(f"{a.model}={a.outcome}" for a in self.attempts) or "none"
        super().__init__(f"Model cascade failed ({tried}): {last_error}")

    @property
    def exhausted(self) -> bool:
        return bool(self.attempts) and all(a.outcome == OUTCOME_RETRYABLE for a in self.attempts)


def is_retryable_error(exc: BaseException) -> bool:
    return bool(getattr(exc, "retryable", False))


def classify(exc: BaseException) -> Retryable | Fatal:
    if is_retryable_error(exc):
        return Retryable(exc)
    return Fatal(exc)


class ModelCascade(Generic[T]):
    """Tries backend models in priority order until one succeeds.

    Quota / rate-limit failures fall through to the next model. Any other failure
    stops the cascade immediately. Attempts are strictly sequential.
    """

    def __init__(
        self,
        models: Sequence[str],
        invoke: Callable[[str, Any], Awaitable[T]],
        *,
        label: str = "reply",
    ) -> None:
        if not models:
            raise ValueError("model cascade requires at least one model")
        self.models = tuple(models)
        self.invoke = invoke
        self.label = label

    async def _attempt(self, model: str, payload: Any) -> AttemptResult:
        try:
            value = await self.invoke(model, payload)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return classify(exc)
        return Success(value)

    async def run(self, payload: Any) -> CascadeResult[T]:
        attempts: list[CascadeAttempt] = []
        last_error: BaseException | None = None

        for model in self.models:
            started = time.monotonic()
            result = await self._attempt(model, payload)
            latency_ms = int((time.monotonic() - started) * 1000)

            if isinstance(result, Success):
                attempts.append(CascadeAttempt(model=model, outcome=OUTCOME_SUCCESS, latency_ms=latency_ms))
                logger.info("[persona.cascade] %s model=%s ok latency_ms=%s", self.label, model, latency_ms)
                return CascadeResult(value=result.value, model=model, attempts=attempts)

            last_error = result.error
            if isinstance(result, Retryable):
                attempts.append(
                    CascadeAttempt(model=model, outcome=OUTCOME_RETRYABLE, error_detail=str(result.error), latency_ms=latency_ms)
                )
                logger.warning("[persona.cascade] %s model=%s quota/rate limited, trying next", self.label, model)
                continue

            attempts.append(
                CascadeAttempt(model=model, outcome=OUTCOME_FATAL, error_detail=str(result.error), latency_ms=latency_ms)
            )
            logger.error("[persona.cascade] %s model=%s failed: %s", self.label, model, result.error)
            break

        assert last_error is not None
        raise CascadeError(attempts, last_error) from last_error
