from __future__ import annotations

import functools
import inspect
from dataclasses import dataclass
from typing import Any, Callable, Generic, Optional, TypeVar

from tokenwarden.logging import get_logger
from tokenwarden.service.errors import ServerError, ServiceError

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Result(Generic[T]):
    """Outcome of a credential operation: a value or a ServiceError.

    Expected failures (bad signature, revoked token, lockout) are carried as
    values so callers branch on ``ok`` instead of catching exceptions. The
    HTTP layer calls :meth:`unwrap`, which raises the carried error for the
    registered exception handlers.
    """

    value: Optional[T] = None
    error: Optional[ServiceError] = None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: ServiceError) -> "Result[T]":
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def error_code(self) -> Optional[str]:
        return self.error.error_code if self.error else None

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


def _unexpected(event: str, exc: Exception) -> Result[Any]:
    logger.exception(event, error_type=type(exc).__name__)
    return Result.failure(ServerError("internal server error"))


def guarded(event: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Convert escaped exceptions into Result failures.

    ServiceErrors raised inside the wrapped call become failures carrying the
    same error. Anything else is logged under ``event`` and replaced by a
    generic ServerError so no internal detail reaches the caller.
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Result[Any]:
                try:
                    return await func(*args, **kwargs)
                except ServiceError as exc:
                    return Result.failure(exc)
                except Exception as exc:
                    return _unexpected(event, exc)

            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Result[Any]:
            try:
                return func(*args, **kwargs)
            except ServiceError as exc:
                return Result.failure(exc)
            except Exception as exc:
                return _unexpected(event, exc)

        return wrapper

    return decorator


__all__ = ["Result", "guarded"]
