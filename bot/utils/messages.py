from __future__ import annotations

from database.models import Ticket
from utils.constants import CLOSE_NOTICE_TITLE, RATING_MAX, RATING_MIN


def mention(user_id: int | None) -> str:
    return f"<@{user_id}>" if user_id else "n/a"


def stars(rating: int | None) -> str:
    if rating is None:
        return "not rated"
    return f"{'★' * rating}{'☆' * (RATING_MAX - rating)} ({rating}/{RATING_MAX})"


def ticket_opened(ticket: Ticket) -> str:
    lines = [
        f"**Ticket {ticket.id} opened**",
        f"Welcome {mention(ticket.owner_id)}! A staff member will be with you shortly.",
        f"Category: {ticket.category}",
    ]
    if ticket.invoice_id:
        lines.append(f"Invoice: `{ticket.invoice_id}`")
    return "\n".join(lines)


def ticket_claimed(ticket: Ticket) -> str:
    return f"Ticket {ticket.id} has been claimed by {mention(ticket.claimed_by)}."


def close_notice(ticket: Ticket) -> str:
    lines = [
        f"**{CLOSE_NOTICE_TITLE}**",
        f"Closed by {mention(ticket.closed_by)} ({ticket.closed_by_role}).",
    ]
    if ticket.close_reason:
        lines.append(f"Reason: {ticket.close_reason}")
    lines.append("The ticket will be archived once both ratings are submitted.")
    return "\n".join(lines)


def service_rating_prompt(ticket: Ticket) -> str:
    return (
        f"{mention(ticket.owner_id)}, how would you rate the service you received? "
        f"Pick a score from {RATING_MIN} to {RATING_MAX}."
    )


def staff_rating_prompt(ticket: Ticket) -> str:
    staff_id = ticket.claimed_by or ticket.closed_by
    return (
        f"{mention(ticket.owner_id)}, now please rate the staff member {mention(staff_id)} "
        f"from {RATING_MIN} to {RATING_MAX}. You can leave a comment as well."
    )


def rating_recorded(label: str, rating: int | None) -> str:
    return f"**{label} rating recorded:** {stars(rating)}"


def positive_review(ticket: Ticket) -> str:
    average = ((ticket.service_rating or 0) + (ticket.staff_rating or 0)) / 2
    return (
        f"**Positive review for {ticket.id}** ({average:.1f}/{RATING_MAX})\n"
        f"Thanks {mention(ticket.owner_id)}! Feel free to share your experience in this channel."
    )


def reviews_completed(ticket: Ticket) -> str:
    return (
        "**Reviews Completed**\n"
        f"Service: {stars(ticket.service_rating)}\n"
        f"Staff: {stars(ticket.staff_rating)}\n"
        "Thank you! This channel will be closed in a few seconds."
    )


def rating_summary(ticket: Ticket) -> str:
    lines = [
        f"**Ratings for {ticket.id}**",
        f"Owner: {mention(ticket.owner_id)}",
        f"Staff: {mention(ticket.claimed_by or ticket.closed_by)}",
        f"Service: {stars(ticket.service_rating)}",
        f"Staff: {stars(ticket.staff_rating)}",
    ]
    if ticket.staff_rating_comment:
        lines.append(f"Comment: {ticket.staff_rating_comment}")
    return "\n".join(lines)


def open_log(ticket: Ticket) -> str:
    line = f"Ticket {ticket.id} opened by {mention(ticket.owner_id)} in {ticket.category} (<#{ticket.channel_id}>)"
    if ticket.invoice_id:
        line += f", invoice `{ticket.invoice_id}`"
    return line


def close_log(ticket: Ticket, reason: str | None) -> str:
    return (
        f"Ticket {ticket.id} closed by {mention(ticket.closed_by)} ({ticket.closed_by_role or 'system'})\n"
        f"Reason: {reason or 'No reason provided'}\n"
        f"Service: {stars(ticket.service_rating)} | Staff: {stars(ticket.staff_rating)}"
    )


def transcript_summary(ticket: Ticket, message_count: int, participant_count: int) -> str:
    return (
        f"Transcript for {ticket.id} ({ticket.category})\n"
        f"Owner: {mention(ticket.owner_id)} | Claimed by: {mention(ticket.claimed_by)}\n"
        f"Messages: {message_count} | Participants: {participant_count}"
    )
