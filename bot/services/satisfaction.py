from __future__ import annotations

import re
from collections.abc import Iterable

from gateway.base import Message
from utils.constants import CLOSE_NOTICE_TITLE


class SatisfactionDetector:
    """Matches explicit thanks or "solved" phrases on word boundaries."""

    def __init__(self, phrases: Iterable[str]) -> None:
        cleaned = sorted({p.strip().lower() for p in phrases if p and p.strip()}, key=len, reverse=True)
        self.phrases = cleaned
        if cleaned:
            alternation = "|".join(r"\s+".join(map(re.escape, p.split())) for p in cleaned)
            self._pattern: re.Pattern[str] | None = re.compile(
                rf"(?<!\w)(?:{alternation})(?!\w)", re.IGNORECASE
            )
        else:
            self._pattern = None

    def matches(self, content: str | None) -> bool:
        if not content or self._pattern is None:
            return False
        return self._pattern.search(content) is not None


def close_in_progress(recent: Iterable[Message]) -> bool:
    for message in recent:
        if not message.author_is_bot:
            continue
        if CLOSE_NOTICE_TITLE in (message.content or ""):
            return True
        if any(CLOSE_NOTICE_TITLE in (embed.title or "") for embed in message.embeds):
            return True
    return False
