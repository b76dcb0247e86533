from __future__ import annotations

import random
from dataclasses import dataclass, field

import pytest

from core.config import TicketsConfig, TranscriptConfig
from database.models import Ticket
from database.repositories import TicketStore
from fakes import (
    ADMIN_ROLE_ID,
    STAFF_ROLE_ID,
    FakeClock,
    FakeGateway,
    FakeNotifier,
    FakeScheduler,
    MemoryDocumentBackend,
)
from services.cache import MemoryCache
from services.category_resolver import CategoryResolver
from services.rating_service import RatingWorkflow
from services.reconciliation_service import ReconciliationService
from services.ticket_service import LifecycleDeps, TicketLifecycle
from services.transcript_service import TranscriptGenerator


@dataclass
class Engine:
    config: TicketsConfig
    backend: MemoryDocumentBackend
    store: TicketStore
    gateway: FakeGateway
    notifier: FakeNotifier
    scheduler: FakeScheduler
    clock: FakeClock
    cache: MemoryCache
    lifecycle: TicketLifecycle
    ratings: RatingWorkflow
    reconciliation: ReconciliationService
    closed_hook_calls: list[str] = field(default_factory=list)


@pytest.fixture
def tickets_config() -> TicketsConfig:
    return TicketsConfig(
        staff_role_id=STAFF_ROLE_ID,
        admin_role_id=ADMIN_ROLE_ID,
        log_channel_id=900,
        transcript_channel_id=901,
        rating_channel_id=902,
        operation_throttle_seconds=0,
    )


@pytest.fixture
def engine(tickets_config: TicketsConfig) -> Engine:
    backend = MemoryDocumentBackend()
    store = TicketStore(backend, write_retries=2, retry_delay_seconds=0)
    gateway = FakeGateway()
    notifier = FakeNotifier()
    scheduler = FakeScheduler()
    clock = FakeClock()
    cache = MemoryCache()
    hook_calls: list[str] = []

    async def learning_hook(ticket: Ticket) -> None:
        hook_calls.append(ticket.id)

    deps = LifecycleDeps(
        store=store,
        resolver=CategoryResolver(gateway, overrides=tickets_config.category_map),
        gateway=gateway,
        notifier=notifier,
        scheduler=scheduler,
        transcripts=TranscriptGenerator(gateway, notifier, TranscriptConfig()),
        cache=cache,
        clock=clock,
    )
    lifecycle = TicketLifecycle(tickets_config, deps, close_hooks=[learning_hook])
    ratings = RatingWorkflow(tickets_config, lifecycle, rng=random.Random(7))
    reconciliation = ReconciliationService(tickets_config, lifecycle, ratings)
    return Engine(
        config=tickets_config,
        backend=backend,
        store=store,
        gateway=gateway,
        notifier=notifier,
        scheduler=scheduler,
        clock=clock,
        cache=cache,
        lifecycle=lifecycle,
        ratings=ratings,
        reconciliation=reconciliation,
        closed_hook_calls=hook_calls,
    )
