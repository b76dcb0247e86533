from __future__ import annotations

import logging
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from core.errors import CategoryResolutionError
from gateway.base import AclEntry, Container, GatewayError, PlatformGateway
from utils.constants import PERM_VIEW_CHANNEL

LOGGER = logging.getLogger(__name__)

_DECORATIONS_RE = re.compile(
    "["
    "\U0001F300-\U0001F9FF"
    "\U0001F600-\U0001F64F"
    "\U0001F680-\U0001F6FF"
    "\U0001F900-\U0001F9FF"
    "\U0001FA00-\U0001FAFF"
    "\u2600-\u26FF"
    "\u2700-\u27BF"
    "\U0001F000-\U0001F02F"
    "\uFE00-\uFE0F"
    "\u200D"
    "$€£¥₹₽¢"
    "•·▪▫◦‣⁃‾"
    "→←↑↓↔"
    "]"
)
_WHITESPACE_RE = re.compile(r"\s+")


def normalize_category_name(name: str | None) -> str:
    if not name:
        return ""
    cleaned = _DECORATIONS_RE.sub("", name)
    return _WHITESPACE_RE.sub(" ", cleaned).strip().lower()


def display_name_for(category_key: str) -> str:
    if not category_key:
        return ""
    return (category_key[0].upper() + category_key[1:]).replace("_", " ")


def _significant_words(normalized: str) -> list[str]:
    return [w for w in normalized.split(" ") if len(w) > 2]


@dataclass(slots=True, frozen=True)
class CategoryQuery:
    key: str
    display_name: str
    normalized: str
    keyword: str

    @classmethod
    def for_key(cls, category_key: str) -> CategoryQuery:
        display = display_name_for(category_key)
        return cls(
            key=category_key,
            display_name=display,
            normalized=normalize_category_name(display),
            keyword=category_key.strip().lower(),
        )


Matcher = Callable[[CategoryQuery, Sequence[Container]], Container | None]


def match_exact(query: CategoryQuery, containers: Sequence[Container]) -> Container | None:
    for container in containers:
        if normalize_category_name(container.name) == query.normalized:
            return container
    return None


def match_keyword(query: CategoryQuery, containers: Sequence[Container]) -> Container | None:
    if not query.keyword:
        return None
    for container in containers:
        existing = normalize_category_name(container.name)
        if not existing:
            continue
        if query.keyword in existing or existing in query.keyword:
            return container
    return None


def _words_overlap(expected: str, existing: str) -> bool:
    if expected == existing or expected in existing or existing in expected:
        return True
    # Catches typos such as "purachase" vs "purchase".
    return len(expected) > 4 and len(existing) > 4 and expected[:4] == existing[:4]


def match_word_overlap(query: CategoryQuery, containers: Sequence[Container]) -> Container | None:
    expected_words = _significant_words(query.normalized)
    if not expected_words:
        return None
    for container in containers:
        existing_words = _significant_words(normalize_category_name(container.name))
        if any(_words_overlap(e, x) for e in expected_words for x in existing_words):
            return container
    return None


def match_variations(query: CategoryQuery, containers: Sequence[Container]) -> Container | None:
    spaced = query.key.replace("_", " ")
    variations = [
        query.display_name,
        query.display_name.lower(),
        query.key,
        query.key.lower(),
        spaced,
        spaced.lower(),
    ]
    for variation in variations:
        wanted = normalize_category_name(variation)
        if not wanted:
            continue
        for container in containers:
            existing = normalize_category_name(container.name)
            if not existing:
                continue
            if existing == wanted or wanted in existing or existing in wanted:
                return container
    return None


DEFAULT_MATCHERS: tuple[Matcher, ...] = (
    match_exact,
    match_keyword,
    match_word_overlap,
    match_variations,
)


class CategoryResolver:
    """Maps a logical category key to a container id, creating one as a last resort.

    Containers are evaluated in ascending id order so the first hit is stable
    across runs.
    """

    def __init__(
        self,
        gateway: PlatformGateway,
        *,
        overrides: dict[str, int] | None = None,
        matchers: Sequence[Matcher] = DEFAULT_MATCHERS,
    ) -> None:
        self.gateway = gateway
        self.overrides = {k.lower(): v for k, v in (overrides or {}).items()}
        self.matchers = tuple(matchers)
        self._cache: dict[tuple[int, str], int] = {}

    def invalidate(self, workspace_id: int, category_key: str) -> None:
        self._cache.pop((workspace_id, category_key.lower()), None)

    async def resolve(self, workspace_id: int, category_key: str) -> int:
        cache_key = (workspace_id, category_key.lower())
        try:
            containers = sorted(
                await self.gateway.list_containers(workspace_id), key=lambda c: c.id
            )
        except GatewayError as exc:
            raise CategoryResolutionError(f"Could not list containers: {exc}") from exc
        live_ids = {c.id for c in containers}

        cached = self._cache.get(cache_key)
        if cached is not None:
            if cached in live_ids:
                return cached
            LOGGER.info("Cached container %s for %s disappeared, re-resolving", cached, category_key)
            self._cache.pop(cache_key, None)

        override = self.overrides.get(category_key.lower())
        if override is not None:
            if override in live_ids:
                self._cache[cache_key] = override
                return override
            LOGGER.warning("Configured container %s for %s no longer exists", override, category_key)

        query = CategoryQuery.for_key(category_key)
        for matcher in self.matchers:
            found = matcher(query, containers)
            if found is not None:
                LOGGER.debug(
                    "Category %s resolved to %s (%s) via %s",
                    category_key,
                    found.name,
                    found.id,
                    matcher.__name__,
                )
                self._cache[cache_key] = found.id
                return found.id

        LOGGER.info("No container matches %s, creating %r", category_key, query.display_name)
        try:
            container = await self.gateway.create_container(
                workspace_id,
                query.display_name,
                [AclEntry.everyone(workspace_id, deny=frozenset({PERM_VIEW_CHANNEL}))],
            )
        except GatewayError as exc:
            raise CategoryResolutionError(f"Could not create container {query.display_name}: {exc}") from exc
        self._cache[cache_key] = container.id
        return container.id
