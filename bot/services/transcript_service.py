from __future__ import annotations

import html
import logging
import tempfile
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from core.config import TranscriptConfig
from database.models import Ticket
from gateway.base import Message, PlatformGateway
from services.notification_service import Notifier
from utils import messages as texts
from utils.constants import TRANSCRIPT_MESSAGE_CAP, TRANSCRIPT_PAGE_SIZE

LOGGER = logging.getLogger(__name__)

EMBED_PREVIEW_CHARS = 200


@dataclass(slots=True)
class TranscriptResult:
    ticket_id: str
    message_count: int
    participant_ids: list[int] = field(default_factory=list)
    delivered: list[str] = field(default_factory=list)


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


class TranscriptGenerator:
    def __init__(self, gateway: PlatformGateway, notifier: Notifier, config: TranscriptConfig) -> None:
        self.gateway = gateway
        self.notifier = notifier
        self.config = config

    async def collect(self, channel_id: int) -> list[Message]:
        """Page backwards through history, then return it oldest first."""
        collected: list[Message] = []
        before: int | None = None
        while len(collected) < TRANSCRIPT_MESSAGE_CAP:
            limit = min(TRANSCRIPT_PAGE_SIZE, TRANSCRIPT_MESSAGE_CAP - len(collected))
            page = await self.gateway.fetch_messages(channel_id, before=before, limit=limit)
            if not page:
                break
            collected.extend(page)
            before = min(m.id for m in page)
            if len(page) < limit:
                break
        collected.sort(key=lambda m: (m.created_at, m.id))
        return collected

    @staticmethod
    def participants(ticket: Ticket, history: Iterable[Message]) -> list[int]:
        ordered: list[int] = []
        candidates = [ticket.owner_id, ticket.claimed_by, ticket.closed_by]
        candidates.extend(m.author_id for m in history if not m.author_is_bot)
        for user_id in candidates:
            if user_id and user_id not in ordered:
                ordered.append(user_id)
        return ordered

    async def archive(self, ticket: Ticket) -> TranscriptResult | None:
        if not (self.config.html_enabled or self.config.txt_enabled):
            return None

        history = await self.collect(ticket.channel_id)
        participant_ids = self.participants(ticket, history)
        result = TranscriptResult(
            ticket_id=ticket.id,
            message_count=len(history),
            participant_ids=participant_ids,
        )
        summary = texts.transcript_summary(ticket, len(history), len(participant_ids))

        with tempfile.TemporaryDirectory(prefix=f"transcript-{ticket.id.lower()}-") as tmp:
            base = Path(tmp) / f"transcript-{ticket.id.lower()}"
            if self.config.html_enabled:
                html_path = base.with_suffix(".html")
                html_path.write_text(
                    self.render_html(ticket, history, participant_ids), encoding="utf-8"
                )
                await self.notifier.deliver_transcript(html_path, summary)
                result.delivered.append(html_path.name)
            if self.config.txt_enabled:
                txt_path = base.with_suffix(".txt")
                txt_path.write_text(self.render_text(ticket, history), encoding="utf-8")
                await self.notifier.deliver_transcript(txt_path, summary)
                result.delivered.append(txt_path.name)

        LOGGER.info(
            "Transcript for %s archived (%s messages)",
            ticket.id,
            len(history),
            extra={"ticket_id": ticket.id},
        )
        return result

    @staticmethod
    def render_text(ticket: Ticket, history: Iterable[Message]) -> str:
        lines = [
            f"Transcript {ticket.id} - {ticket.category}",
            f"Owner: {ticket.owner_id} | Claimed by: {ticket.claimed_by or 'n/a'}",
            f"Closed by: {ticket.closed_by or 'system'} ({ticket.closed_by_role or 'n/a'})",
            f"Reason: {ticket.close_reason or 'n/a'}",
            f"Service rating: {ticket.service_rating or 'n/a'} | Staff rating: {ticket.staff_rating or 'n/a'}",
            "",
        ]
        for msg in history:
            lines.append(f"[{msg.created_at.isoformat()}] {msg.author_name} ({msg.author_id}): {msg.content}")
            for embed in msg.embeds:
                lines.append(f"  embed: {embed.title or ''} {_truncate(embed.description or '', EMBED_PREVIEW_CHARS)}")
            for attach in msg.attachments:
                lines.append(f"  attachment: {attach.url}")
        return "\n".join(lines)

    def render_html(
        self, ticket: Ticket, history: Sequence[Message], participant_ids: Sequence[int]
    ) -> str:
        names = {m.author_id: m.author_name for m in history}
        esc = html.escape

        meta_rows = [
            ("Ticket", ticket.id),
            ("Category", ticket.category),
            ("Owner", f"{names.get(ticket.owner_id, 'Unknown')} ({ticket.owner_id})"),
            ("Invoice", ticket.invoice_id or "n/a"),
            ("Created", ticket.created_at or "n/a"),
            ("Claimed by", str(ticket.claimed_by or "n/a")),
            ("Closed", ticket.closed_at or "n/a"),
            ("Closed by", f"{ticket.closed_by or 'system'} ({ticket.closed_by_role or 'n/a'})"),
            ("Reason", ticket.close_reason or "n/a"),
            ("Service rating", texts.stars(ticket.service_rating)),
            ("Staff rating", texts.stars(ticket.staff_rating)),
        ]
        if ticket.staff_rating_comment:
            meta_rows.append(("Comment", ticket.staff_rating_comment))
        meta_html = "".join(
            f"<tr><th>{esc(label)}</th><td>{esc(value)}</td></tr>" for label, value in meta_rows
        )
        roster_html = "".join(
            f"<li>{esc(names.get(uid, 'Unknown'))} <span class='id'>({uid})</span></li>"
            for uid in participant_ids
        )

        rows: list[str] = []
        for msg in history:
            extras: list[str] = []
            for embed in msg.embeds:
                title = f"<strong>{esc(embed.title)}</strong><br>" if embed.title else ""
                body = esc(_truncate(embed.description or "", EMBED_PREVIEW_CHARS))
                extras.append(f"<div class='embed'>{title}{body}</div>")
            if msg.attachments:
                items: list[str] = []
                for attach in msg.attachments:
                    link = f'<a href="{esc(attach.url)}">{esc(attach.filename)}</a>'
                    if attach.is_image and self.config.inline_images:
                        link += f'<br><img src="{esc(attach.url)}" alt="{esc(attach.filename)}">'
                    items.append(f"<li>{link}</li>")
                extras.append(f"<ul>{''.join(items)}</ul>")
            css_class = "msg bot" if msg.author_is_bot else "msg"
            rows.append(
                f"<div class='{css_class}'>"
                f"<div class='meta'>{esc(msg.author_name)} | {msg.created_at.isoformat()}</div>"
                f"<div class='content'>{esc(msg.content or '')}</div>"
                f"{''.join(extras)}"
                "</div>"
            )

        return (
            "<!doctype html><html><head><meta charset='utf-8'>"
            f"<title>Transcript {esc(ticket.id)}</title>"
            "<style>"
            "body{font-family:Arial,sans-serif;background:#f5f7fb;color:#1f2937;padding:16px;}"
            "table{border-collapse:collapse;margin-bottom:16px;}"
            "th{text-align:left;padding:4px 12px 4px 0;color:#6b7280;}"
            ".msg{background:white;border:1px solid #e5e7eb;border-radius:8px;padding:10px;margin-bottom:8px;}"
            ".msg.bot{background:#eef2ff;}"
            ".meta{font-size:12px;color:#6b7280;margin-bottom:6px;}"
            ".content{white-space:pre-wrap;}"
            ".embed{border-left:4px solid #5865f2;padding:6px 10px;margin-top:6px;background:#f9fafb;}"
            ".id{color:#9ca3af;}"
            "img{max-width:480px;margin-top:6px;border-radius:4px;}"
            "</style></head><body>"
            f"<h1>Transcript - {esc(ticket.id)}</h1>"
            f"<table>{meta_html}</table>"
            f"<h2>Participants</h2><ul>{roster_html}</ul>"
            f"<h2>Messages ({len(history)})</h2>"
            + "".join(rows)
            + "</body></html>"
        )
