from __future__ import annotations

import functools
import logging
from collections.abc import Awaitable, Callable
from typing import Any, ParamSpec, TypeVar

from core.errors import OperationResult, TicketError

LOGGER = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


def returns_result(
    func: Callable[P, Awaitable[T]],
) -> Callable[P, Awaitable[OperationResult[T]]]:
    """Convert ticket-domain failures into an ``OperationResult``.

    This is the one place rejected operations get logged; callers decide how to
    present ``result.error.user_message``. Anything that is not a ``TicketError``
    propagates unchanged.
    """

    @functools.wraps(func)
    async def wrapper(*args: P.args, **kwargs: P.kwargs) -> OperationResult[T]:
        try:
            value = await func(*args, **kwargs)
        except TicketError as exc:
            LOGGER.info("%s rejected: %s (%s)", func.__qualname__, type(exc).__name__, exc)
            return OperationResult(error=exc)
        return OperationResult(value=value)

    return wrapper


async def best_effort(label: str, awaitable: Awaitable[Any]) -> Any:
    """Await a side-effect whose failure must not interrupt the caller."""
    try:
        return await awaitable
    except Exception:
        LOGGER.exception("Best-effort step failed: %s", label)
        return None
