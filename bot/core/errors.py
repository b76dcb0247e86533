from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


class TicketError(RuntimeError):
    user_message: str = "An unexpected ticket error occurred."

    def __str__(self) -> str:
        detail = super().__str__()
        return detail or self.user_message


class NotFoundError(TicketError):
    user_message = "The requested ticket could not be found."


class AlreadyClaimedError(TicketError):
    user_message = "This ticket has already been claimed."


class DuplicateOpenTicketError(TicketError):
    user_message = "You already have an open ticket."

    def __init__(self, message: str = "", ticket_id: str | None = None) -> None:
        super().__init__(message)
        self.ticket_id = ticket_id


class PersistenceError(TicketError):
    user_message = "Ticket state could not be saved."


class CategoryResolutionError(TicketError):
    user_message = "The ticket category could not be prepared."


class PermissionDeniedError(TicketError):
    user_message = "You do not have permission to run this action."


class OrderingError(TicketError):
    user_message = "Please complete the ratings in order."


class ValidationError(TicketError):
    user_message = "The provided input is not valid."


class TicketStateError(TicketError):
    user_message = "The ticket is not in a valid state for this action."


@dataclass(slots=True)
class OperationResult(Generic[T]):
    value: T | None = None
    error: TicketError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]
