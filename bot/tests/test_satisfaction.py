from __future__ import annotations

import pytest

from fakes import make_member, make_message
from gateway.base import EmbedSummary
from services.satisfaction import SatisfactionDetector, close_in_progress
from utils.constants import CLOSE_NOTICE_TITLE, DEFAULT_SATISFACTION_PHRASES

BOT = make_member(99, "TicketBot", bot=True)
USER = make_member(1, "Alice")


@pytest.mark.parametrize(
    "content",
    ["Thank you!", "ok thanks", "THX", "problem   solved, bye", "ty <3", "Gracias amigo"],
)
def test_detector_matches_phrases(content: str) -> None:
    assert SatisfactionDetector(DEFAULT_SATISFACTION_PHRASES).matches(content)


@pytest.mark.parametrize(
    "content",
    ["thankfully it works", "typing...", "the problem is not solved", "", None],
)
def test_detector_needs_word_boundaries(content) -> None:
    assert not SatisfactionDetector(DEFAULT_SATISFACTION_PHRASES).matches(content)


def test_empty_phrase_list_never_matches() -> None:
    assert not SatisfactionDetector(["", "  "]).matches("thanks")


def test_close_in_progress_checks_bot_content_and_embeds() -> None:
    notice = make_message(1, 5, BOT, f"**{CLOSE_NOTICE_TITLE}**")
    embedded = make_message(2, 5, BOT, "")
    embedded.embeds.append(EmbedSummary(title=CLOSE_NOTICE_TITLE))
    quoted = make_message(3, 5, USER, CLOSE_NOTICE_TITLE)

    assert close_in_progress([notice])
    assert close_in_progress([embedded])
    assert not close_in_progress([quoted, make_message(4, 5, BOT, "hello")])
