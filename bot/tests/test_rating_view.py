from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.errors import OperationResult, OrderingError
from views.rating_view import (
    RatingView,
    StaffCommentModal,
    handle_rating_interaction,
    parse_rating_custom_id,
    rating_custom_id,
)


def _interaction(custom_id: str, user_id: int = 1) -> MagicMock:
    interaction = MagicMock()
    interaction.data = {"custom_id": custom_id}
    interaction.user = SimpleNamespace(id=user_id)
    interaction.response.send_message = AsyncMock()
    interaction.response.send_modal = AsyncMock()
    return interaction


def test_custom_id_round_trip_and_rejects_foreign_ids() -> None:
    assert parse_rating_custom_id(rating_custom_id("service", 4, "TKT-0001")) == ("service", 4, "TKT-0001")
    assert parse_rating_custom_id("ticket:claim:TKT-0001") is None
    assert parse_rating_custom_id("rating:bogus:4:TKT-0001") is None
    assert parse_rating_custom_id("rating:staff:x:TKT-0001") is None


@pytest.mark.asyncio
async def test_rating_view_has_five_persistent_buttons() -> None:
    view = RatingView("service", "TKT-0001")

    assert view.timeout is None
    assert [item.custom_id for item in view.children][0] == "rating:service:1:TKT-0001"
    assert len(view.children) == 5


@pytest.mark.asyncio
async def test_service_click_submits_rating() -> None:
    bot = SimpleNamespace(ratings=MagicMock())
    bot.ratings.submit_service_rating = AsyncMock(return_value=OperationResult(value=object()))
    interaction = _interaction("rating:service:4:TKT-0001")

    handled = await handle_rating_interaction(bot, interaction)

    assert handled
    bot.ratings.submit_service_rating.assert_awaited_once_with("TKT-0001", 1, 4)
    assert interaction.response.send_message.await_args.kwargs["ephemeral"] is True


@pytest.mark.asyncio
async def test_failed_click_shows_error() -> None:
    bot = SimpleNamespace(ratings=MagicMock())
    bot.ratings.submit_service_rating = AsyncMock(return_value=OperationResult(error=OrderingError()))
    interaction = _interaction("rating:service:4:TKT-0001")

    await handle_rating_interaction(bot, interaction)

    embed = interaction.response.send_message.await_args.kwargs["embed"]
    assert embed.description == OrderingError.user_message


@pytest.mark.asyncio
async def test_staff_click_opens_comment_modal() -> None:
    bot = SimpleNamespace(ratings=MagicMock())
    interaction = _interaction("rating:staff:5:TKT-0001")

    await handle_rating_interaction(bot, interaction)

    modal = interaction.response.send_modal.await_args.args[0]
    assert isinstance(modal, StaffCommentModal)
    assert (modal.ticket_id, modal.rating) == ("TKT-0001", 5)


@pytest.mark.asyncio
async def test_unrelated_interactions_are_ignored() -> None:
    interaction = _interaction("panel:open")

    assert await handle_rating_interaction(SimpleNamespace(), interaction) is False
    interaction.response.send_message.assert_not_awaited()
