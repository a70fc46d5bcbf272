"""Typed success/failure results for business-rule operations.

Business operations do not raise on rule violations; they return an
OperationResult carrying either the value or the ExchangeError describing
what went wrong. StorageError is the exception: it always propagates.

Usage:
    result = ledger.place_bid(listing, "buyer-1", Decimal("9000"), now)
    if result.ok:
        bid = result.value
    else:
        logger.info("bid.rejected", code=result.error.code)
"""

from __future__ import annotations

import functools
import inspect
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from provenance_exchange.domain.exceptions import ExchangeError, StorageError

if TYPE_CHECKING:
    from collections.abc import Callable

T = TypeVar("T")


@dataclass(frozen=True)
class OperationResult(Generic[T]):
    """Outcome of a business-rule operation.

    Attributes:
        ok: Whether the operation succeeded.
        value: The produced entity (or other payload) on success.
        error: The domain error on failure.
    """

    ok: bool
    value: T | None = None
    error: ExchangeError | None = None

    @classmethod
    def success(cls, value: T | None = None) -> OperationResult[T]:
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: ExchangeError) -> OperationResult[T]:
        return cls(ok=False, error=error)

    @property
    def code(self) -> str | None:
        return self.error.code if self.error else None

    def unwrap(self) -> T:
        """Return the value, or raise the carried error."""
        if not self.ok:
            assert self.error is not None
            raise self.error
        return self.value  # type: ignore[return-value]

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "error": self.error.code if self.error else None,
            "message": self.error.message if self.error else None,
        }


def returns_result(func: Callable[..., Any]) -> Callable[..., Any]:
    """Wrap an operation that raises ExchangeError into one returning OperationResult.

    Works for both plain functions and coroutines. A returned OperationResult
    is passed through untouched; any other return value is wrapped as success.
    """
    if inspect.iscoroutinefunction(func):

        @functools.wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> OperationResult:
            try:
                value = await func(*args, **kwargs)
            except StorageError:
                raise
            except ExchangeError as exc:
                return OperationResult.failure(exc)
            if isinstance(value, OperationResult):
                return value
            return OperationResult.success(value)

        return async_wrapper

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> OperationResult:
        try:
            value = func(*args, **kwargs)
        except StorageError:
            raise
        except ExchangeError as exc:
            return OperationResult.failure(exc)
        if isinstance(value, OperationResult):
            return value
        return OperationResult.success(value)

    return wrapper
