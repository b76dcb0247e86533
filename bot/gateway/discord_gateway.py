from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path

import discord

from gateway.base import (
    AclEntry,
    Attachment,
    Channel,
    Container,
    EmbedSummary,
    GatewayError,
    Member,
    Message,
    MessageRef,
    RatingPrompt,
    Role,
)
from utils.constants import ACL_TARGET_EVERYONE, ACL_TARGET_MEMBER, ACL_TARGET_ROLE
from views.rating_view import RatingView

LOGGER = logging.getLogger(__name__)

Target = discord.Role | discord.Member | discord.Object


def _overwrite_for(entry: AclEntry) -> discord.PermissionOverwrite:
    values: dict[str, bool] = {name: True for name in entry.allow}
    values.update({name: False for name in entry.deny})
    return discord.PermissionOverwrite(**values)


def _entry_from(target: Target, overwrite: discord.PermissionOverwrite, guild: discord.Guild) -> AclEntry:
    allow = frozenset(name for name, value in overwrite if value is True)
    deny = frozenset(name for name, value in overwrite if value is False)
    if target.id == guild.id:
        kind = ACL_TARGET_EVERYONE
    elif isinstance(target, discord.Role):
        kind = ACL_TARGET_ROLE
    else:
        kind = ACL_TARGET_MEMBER
    return AclEntry(target_id=target.id, target_type=kind, allow=allow, deny=deny)


def _to_member(member: discord.Member) -> Member:
    return Member(
        id=member.id,
        display_name=member.display_name,
        tag=member.name,
        role_ids=frozenset(role.id for role in member.roles),
        is_bot=member.bot,
        is_administrator=member.guild_permissions.administrator,
    )


def to_member(user: discord.Member | discord.User) -> Member:
    if isinstance(user, discord.Member):
        return _to_member(user)
    return Member(id=user.id, display_name=user.display_name, tag=user.name, is_bot=user.bot)


def _to_message(message: discord.Message) -> Message:
    return Message(
        id=message.id,
        channel_id=message.channel.id,
        author_id=message.author.id,
        author_name=message.author.display_name,
        created_at=message.created_at,
        content=message.content or "",
        author_is_bot=message.author.bot,
        embeds=[EmbedSummary(title=e.title, description=e.description) for e in message.embeds],
        attachments=[
            Attachment(filename=a.filename, url=a.url, content_type=a.content_type)
            for a in message.attachments
        ],
    )


class DiscordGateway:
    """PlatformGateway over a connected discord.py client."""

    def __init__(self, client: discord.Client) -> None:
        self.client = client

    def _guild(self, workspace_id: int) -> discord.Guild:
        guild = self.client.get_guild(workspace_id)
        if guild is None:
            raise GatewayError(f"Guild {workspace_id} is not available")
        return guild

    async def _text_channel(self, channel_id: int) -> discord.TextChannel:
        channel = self.client.get_channel(channel_id)
        if channel is None:
            try:
                channel = await self.client.fetch_channel(channel_id)
            except discord.NotFound as exc:
                raise GatewayError(f"Channel {channel_id} not found") from exc
            except discord.HTTPException as exc:
                raise GatewayError(str(exc)) from exc
        if not isinstance(channel, discord.TextChannel):
            raise GatewayError(f"Channel {channel_id} is not a text channel")
        return channel

    async def _target(self, guild: discord.Guild, entry: AclEntry) -> Target:
        if entry.target_type == ACL_TARGET_EVERYONE:
            return guild.default_role
        if entry.target_type == ACL_TARGET_ROLE:
            return guild.get_role(entry.target_id) or discord.Object(id=entry.target_id, type=discord.Role)
        member = guild.get_member(entry.target_id)
        if member is None:
            try:
                member = await guild.fetch_member(entry.target_id)
            except discord.HTTPException:
                return discord.Object(id=entry.target_id, type=discord.Member)
        return member

    async def _overwrites(
        self, guild: discord.Guild, entries: Sequence[AclEntry]
    ) -> dict[Target, discord.PermissionOverwrite]:
        return {await self._target(guild, entry): _overwrite_for(entry) for entry in entries}

    def _to_channel(self, channel: discord.abc.GuildChannel) -> Channel:
        return Channel(
            id=channel.id,
            name=channel.name,
            workspace_id=channel.guild.id,
            parent_id=channel.category_id,
            acl=[_entry_from(t, o, channel.guild) for t, o in channel.overwrites.items()],
        )

    async def create_container(
        self, workspace_id: int, name: str, acl: Sequence[AclEntry]
    ) -> Container:
        guild = self._guild(workspace_id)
        try:
            category = await guild.create_category(
                name=name, overwrites=await self._overwrites(guild, acl), reason="Ticket category"
            )
        except discord.HTTPException as exc:
            raise GatewayError(str(exc)) from exc
        return Container(id=category.id, name=category.name, workspace_id=guild.id)

    async def list_containers(self, workspace_id: int) -> list[Container]:
        guild = self._guild(workspace_id)
        try:
            channels = await guild.fetch_channels()
        except discord.HTTPException as exc:
            raise GatewayError(str(exc)) from exc
        return [
            Container(id=c.id, name=c.name, workspace_id=guild.id)
            for c in channels
            if isinstance(c, discord.CategoryChannel)
        ]

    async def create_channel(
        self, workspace_id: int, name: str, parent_id: int, acl: Sequence[AclEntry]
    ) -> Channel:
        guild = self._guild(workspace_id)
        category = guild.get_channel(parent_id)
        if not isinstance(category, discord.CategoryChannel):
            category = None
        try:
            channel = await guild.create_text_channel(
                name=name,
                category=category,
                overwrites=await self._overwrites(guild, acl),
                reason="Ticket opened",
            )
        except discord.HTTPException as exc:
            raise GatewayError(str(exc)) from exc
        return self._to_channel(channel)

    async def fetch_channel(self, channel_id: int) -> Channel | None:
        try:
            channel = await self.client.fetch_channel(channel_id)
        except discord.NotFound:
            return None
        except discord.HTTPException as exc:
            raise GatewayError(str(exc)) from exc
        if not isinstance(channel, discord.abc.GuildChannel):
            return None
        return self._to_channel(channel)

    async def move_channel(self, channel_id: int, parent_id: int) -> None:
        channel = await self._text_channel(channel_id)
        category = channel.guild.get_channel(parent_id)
        if not isinstance(category, discord.CategoryChannel):
            raise GatewayError(f"Category {parent_id} not found")
        try:
            await channel.edit(category=category, sync_permissions=False)
        except discord.HTTPException as exc:
            raise GatewayError(str(exc)) from exc

    async def set_channel_acl(self, channel_id: int, entries: Sequence[AclEntry]) -> None:
        channel = await self._text_channel(channel_id)
        try:
            await channel.edit(overwrites=await self._overwrites(channel.guild, entries))
        except discord.HTTPException as exc:
            raise GatewayError(str(exc)) from exc

    async def upsert_acl_entry(self, channel_id: int, entry: AclEntry) -> None:
        channel = await self._text_channel(channel_id)
        try:
            await channel.set_permissions(
                await self._target(channel.guild, entry), overwrite=_overwrite_for(entry)
            )
        except discord.HTTPException as exc:
            raise GatewayError(str(exc)) from exc

    async def rename_channel(self, channel_id: int, name: str) -> None:
        channel = await self._text_channel(channel_id)
        try:
            await channel.edit(name=name)
        except discord.HTTPException as exc:
            raise GatewayError(str(exc)) from exc

    async def delete_channel(self, channel_id: int, reason: str | None = None) -> None:
        try:
            channel = await self._text_channel(channel_id)
        except GatewayError:
            LOGGER.info("Channel %s already gone", channel_id)
            return
        try:
            await channel.delete(reason=reason)
        except discord.NotFound:
            return
        except discord.HTTPException as exc:
            raise GatewayError(str(exc)) from exc

    async def send_message(
        self,
        channel_id: int,
        content: str,
        *,
        file: Path | None = None,
        prompt: RatingPrompt | None = None,
    ) -> MessageRef:
        channel = await self._text_channel(channel_id)
        kwargs: dict[str, object] = {"content": content}
        if file is not None:
            kwargs["file"] = discord.File(file, filename=file.name)
        view: RatingView | None = None
        if prompt is not None:
            view = RatingView(prompt.kind, prompt.ticket_id)
            kwargs["view"] = view
        try:
            sent = await channel.send(**kwargs)  # type: ignore[arg-type]
        except discord.HTTPException as exc:
            raise GatewayError(str(exc)) from exc
        finally:
            if view is not None:
                # Clicks are routed by custom_id in on_interaction, not by this view instance.
                view.stop()
        return MessageRef(id=sent.id, channel_id=channel.id)

    async def edit_message(
        self, channel_id: int, message_id: int, content: str, *, clear_prompt: bool = False
    ) -> None:
        channel = await self._text_channel(channel_id)
        kwargs: dict[str, object] = {"content": content}
        if clear_prompt:
            kwargs["view"] = None
        try:
            await channel.get_partial_message(message_id).edit(**kwargs)  # type: ignore[arg-type]
        except discord.HTTPException as exc:
            raise GatewayError(str(exc)) from exc

    async def fetch_messages(
        self, channel_id: int, *, before: int | None = None, limit: int = 100
    ) -> list[Message]:
        channel = await self._text_channel(channel_id)
        cursor = discord.Object(id=before) if before else None
        try:
            return [_to_message(m) async for m in channel.history(limit=limit, before=cursor)]
        except discord.HTTPException as exc:
            raise GatewayError(str(exc)) from exc

    async def fetch_role(self, workspace_id: int, role_id: int) -> Role | None:
        guild = self._guild(workspace_id)
        role = guild.get_role(role_id)
        if role is None:
            try:
                role = next((r for r in await guild.fetch_roles() if r.id == role_id), None)
            except discord.HTTPException as exc:
                raise GatewayError(str(exc)) from exc
        return Role(id=role.id, name=role.name) if role else None

    async def fetch_member(self, workspace_id: int, member_id: int) -> Member | None:
        guild = self._guild(workspace_id)
        member = guild.get_member(member_id)
        if member is None:
            try:
                member = await guild.fetch_member(member_id)
            except discord.NotFound:
                return None
            except discord.HTTPException as exc:
                raise GatewayError(str(exc)) from exc
        return _to_member(member)

    async def list_channel_ids(self, workspace_id: int) -> set[int]:
        guild = self._guild(workspace_id)
        try:
            channels = await guild.fetch_channels()
        except discord.HTTPException as exc:
            raise GatewayError(str(exc)) from exc
        return {c.id for c in channels}
