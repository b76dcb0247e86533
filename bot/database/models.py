from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any

from utils.constants import RATING_MAX, RATING_MIN

# Snake-case attribute -> camelCase key in the persisted document.
_DOCUMENT_KEYS: dict[str, str] = {
    "id": "id",
    "workspace_id": "workspaceId",
    "owner_id": "ownerId",
    "channel_id": "channelId",
    "category": "category",
    "invoice_id": "invoiceId",
    "created_at": "createdAt",
    "claimed_by": "claimedBy",
    "claimed_at": "claimedAt",
    "closed": "closed",
    "closed_at": "closedAt",
    "closed_by": "closedBy",
    "closed_by_role": "closedByRole",
    "close_reason": "closeReason",
    "pending_close": "pendingClose",
    "service_rating": "serviceRating",
    "staff_rating": "staffRating",
    "staff_rating_comment": "staffRatingComment",
    "rating_started_at": "ratingStartedAt",
    "service_rating_message_id": "serviceRatingMsgId",
    "staff_rating_message_id": "staffRatingMsgId",
}

# Older records were written with these key names.
_LEGACY_KEYS: dict[str, str] = {
    "userId": "ownerId",
    "guildId": "workspaceId",
}

# Legacy closer labels: "owner" meant the workspace owner, "user" the ticket creator.
_LEGACY_CLOSER_TYPES = {"owner": "admin", "user": "owner"}

_INT_FIELDS = {
    "workspace_id",
    "owner_id",
    "channel_id",
    "claimed_by",
    "closed_by",
    "service_rating_message_id",
    "staff_rating_message_id",
}


def _coerce_id(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _coerce_rating(value: Any) -> int | None:
    rating = _coerce_id(value)
    if rating is None or not RATING_MIN <= rating <= RATING_MAX:
        return None
    return rating


@dataclass(slots=True)
class Ticket:
    id: str
    owner_id: int
    channel_id: int
    category: str
    workspace_id: int | None = None
    invoice_id: str | None = None
    created_at: str | None = None
    claimed_by: int | None = None
    claimed_at: str | None = None
    closed: bool = False
    closed_at: str | None = None
    closed_by: int | None = None
    closed_by_role: str | None = None
    close_reason: str | None = None
    pending_close: bool = False
    service_rating: int | None = None
    staff_rating: int | None = None
    staff_rating_comment: str | None = None
    rating_started_at: str | None = None
    service_rating_message_id: int | None = None
    staff_rating_message_id: int | None = None

    @property
    def is_open(self) -> bool:
        return not self.closed

    @property
    def has_both_ratings(self) -> bool:
        return self.service_rating is not None and self.staff_rating is not None

    @property
    def number(self) -> str:
        return self.id.split("-", 1)[-1]

    def to_document(self) -> dict[str, Any]:
        return {_DOCUMENT_KEYS[f.name]: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_document(cls, ticket_id: str, raw: dict[str, Any]) -> Ticket:
        data = dict(raw)
        if "closedByType" in data and "closedByRole" not in data:
            data["closedByRole"] = _LEGACY_CLOSER_TYPES.get(data["closedByType"], data["closedByType"])
        for legacy, current in _LEGACY_KEYS.items():
            if legacy in data and current not in data:
                data[current] = data[legacy]

        values: dict[str, Any] = {}
        for attr, key in _DOCUMENT_KEYS.items():
            if key not in data:
                continue
            value = data[key]
            if attr in _INT_FIELDS:
                value = _coerce_id(value)
            elif attr in {"service_rating", "staff_rating"}:
                value = _coerce_rating(value)
            elif attr in {"closed", "pending_close"}:
                value = bool(value)
            values[attr] = value

        values["id"] = str(values.get("id") or ticket_id)
        if values.get("owner_id") is None or values.get("channel_id") is None:
            raise ValueError(f"Ticket {ticket_id} is missing owner or channel id")
        values.setdefault("category", "Support")
        # closedBy was sometimes a display string such as "System".
        if values.get("closed") and values.get("closed_by") is None and values.get("closed_by_role") is None:
            values["closed_by_role"] = "system"
        return cls(**values)
