from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Protocol

from utils.constants import ACL_TARGET_EVERYONE, ACL_TARGET_MEMBER, ACL_TARGET_ROLE


class GatewayError(RuntimeError):
    """Raised by gateway adapters when the platform rejects a call."""


@dataclass(slots=True, frozen=True)
class AclEntry:
    target_id: int
    target_type: str
    allow: frozenset[str] = frozenset()
    deny: frozenset[str] = frozenset()

    @classmethod
    def everyone(cls, workspace_id: int, *, deny: frozenset[str]) -> AclEntry:
        return cls(target_id=workspace_id, target_type=ACL_TARGET_EVERYONE, deny=deny)

    @classmethod
    def role(cls, role_id: int, *, allow: frozenset[str], deny: frozenset[str] = frozenset()) -> AclEntry:
        return cls(target_id=role_id, target_type=ACL_TARGET_ROLE, allow=allow, deny=deny)

    @classmethod
    def member(
        cls, member_id: int, *, allow: frozenset[str], deny: frozenset[str] = frozenset()
    ) -> AclEntry:
        return cls(target_id=member_id, target_type=ACL_TARGET_MEMBER, allow=allow, deny=deny)


@dataclass(slots=True)
class Container:
    id: int
    name: str
    workspace_id: int


@dataclass(slots=True)
class Channel:
    id: int
    name: str
    workspace_id: int
    parent_id: int | None = None
    acl: list[AclEntry] = field(default_factory=list)

    def acl_for(self, target_id: int) -> AclEntry | None:
        for entry in self.acl:
            if entry.target_id == target_id:
                return entry
        return None


@dataclass(slots=True)
class Member:
    id: int
    display_name: str
    tag: str = ""
    role_ids: frozenset[int] = frozenset()
    is_bot: bool = False
    is_administrator: bool = False

    @property
    def username(self) -> str:
        return (self.tag or self.display_name).split("#", 1)[0]


@dataclass(slots=True)
class Role:
    id: int
    name: str


@dataclass(slots=True)
class EmbedSummary:
    title: str | None = None
    description: str | None = None


@dataclass(slots=True)
class Attachment:
    filename: str
    url: str
    content_type: str | None = None

    @property
    def is_image(self) -> bool:
        return bool(self.content_type and self.content_type.startswith("image/"))


@dataclass(slots=True)
class Message:
    id: int
    channel_id: int
    author_id: int
    author_name: str
    created_at: datetime
    content: str = ""
    author_is_bot: bool = False
    embeds: list[EmbedSummary] = field(default_factory=list)
    attachments: list[Attachment] = field(default_factory=list)


@dataclass(slots=True)
class MessageRef:
    id: int
    channel_id: int


@dataclass(slots=True, frozen=True)
class RatingPrompt:
    """Asks the adapter to attach 1-5 rating controls to a message."""

    kind: str
    ticket_id: str


class PlatformGateway(Protocol):
    async def create_container(
        self, workspace_id: int, name: str, acl: Sequence[AclEntry]
    ) -> Container: ...

    async def list_containers(self, workspace_id: int) -> list[Container]: ...

    async def create_channel(
        self, workspace_id: int, name: str, parent_id: int, acl: Sequence[AclEntry]
    ) -> Channel: ...

    async def fetch_channel(self, channel_id: int) -> Channel | None: ...

    async def move_channel(self, channel_id: int, parent_id: int) -> None: ...

    async def set_channel_acl(self, channel_id: int, entries: Sequence[AclEntry]) -> None: ...

    async def upsert_acl_entry(self, channel_id: int, entry: AclEntry) -> None: ...

    async def rename_channel(self, channel_id: int, name: str) -> None: ...

    async def delete_channel(self, channel_id: int, reason: str | None = None) -> None: ...

    async def send_message(
        self,
        channel_id: int,
        content: str,
        *,
        file: Path | None = None,
        prompt: RatingPrompt | None = None,
    ) -> MessageRef: ...

    async def edit_message(
        self, channel_id: int, message_id: int, content: str, *, clear_prompt: bool = False
    ) -> None: ...

    async def fetch_messages(
        self, channel_id: int, *, before: int | None = None, limit: int = 100
    ) -> list[Message]: ...

    async def fetch_role(self, workspace_id: int, role_id: int) -> Role | None: ...

    async def fetch_member(self, workspace_id: int, member_id: int) -> Member | None: ...

    async def list_channel_ids(self, workspace_id: int) -> set[int]: ...
