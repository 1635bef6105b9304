"""Composition root: settings -> store -> services -> dispatcher."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

import structlog

from src.attention.registry import AttentionRegistry
from src.catalog.kinds import KindCatalog
from src.config.settings import Settings, get_settings
from src.gateway.dispatch import RPCDispatcher
from src.guard.mutation_guard import MutationGuard
from src.infra.logging import setup_logging
from src.leases.manager import LeaseManager
from src.store.database import create_db_engine, ensure_schema, make_session_factory
from src.store.memory_store import MemoryGuardStore
from src.store.sql_store import SqlGuardStore
from src.workitems.service import WorkItemService

if TYPE_CHECKING:
    from src.store.ports import GuardStore

logger = structlog.get_logger()


@dataclass
class GuardRuntime:
    store: GuardStore
    guard: MutationGuard
    leases: LeaseManager
    attention: AttentionRegistry
    catalog: KindCatalog
    work_items: WorkItemService
    dispatcher: RPCDispatcher


def build_runtime(
    store: GuardStore,
    settings: Settings,
    *,
    clock: Callable[[], datetime] | None = None,
    id_factory: Callable[[], str] | None = None,
) -> GuardRuntime:
    """Wire services over one store. Clock and id factory are shared when given."""
    guard_settings = settings.guard
    guard = MutationGuard(require_agent_lease=guard_settings.require_agent_lease, clock=clock)
    lease_kwargs: dict = {}
    if clock is not None:
        lease_kwargs["clock"] = clock
    if id_factory is not None:
        lease_kwargs["id_factory"] = id_factory
    leases = LeaseManager(
        store,
        default_ttl=timedelta(seconds=guard_settings.default_lease_ttl_seconds),
        max_ttl=timedelta(seconds=guard_settings.max_lease_ttl_seconds),
        **lease_kwargs,
    )
    catalog = KindCatalog(store, clock=clock)
    attention = AttentionRegistry(store, guard, clock=clock, id_factory=id_factory)
    work_items = WorkItemService(store, guard, catalog, clock=clock, id_factory=id_factory)
    dispatcher = RPCDispatcher(leases=leases, attention=attention, work_items=work_items)
    return GuardRuntime(
        store=store,
        guard=guard,
        leases=leases,
        attention=attention,
        catalog=catalog,
        work_items=work_items,
        dispatcher=dispatcher,
    )


async def build_memory_runtime(settings: Settings | None = None, **kwargs) -> GuardRuntime:
    """In-process runtime for tests and embedding; kind catalog pre-seeded."""
    settings = settings or get_settings()
    runtime = build_runtime(MemoryGuardStore(), settings, **kwargs)
    if settings.guard.bootstrap_kind_catalog:
        await runtime.catalog.ensure_defaults()
    return runtime


@asynccontextmanager
async def open_runtime(settings: Settings | None = None) -> AsyncIterator[GuardRuntime]:
    """PostgreSQL-backed runtime. Startup fails if the DB or schema is unavailable."""
    settings = settings or get_settings()
    setup_logging(json_output=settings.logging.json_output, log_level=settings.logging.level)

    engine = await create_db_engine(settings.database)
    try:
        await ensure_schema(engine, settings.database.schema_)
        store = SqlGuardStore(make_session_factory(engine))
        runtime = build_runtime(store, settings)
        if settings.guard.bootstrap_kind_catalog:
            await runtime.catalog.ensure_defaults()
        logger.info(
            "guard_runtime_started",
            require_agent_lease=settings.guard.require_agent_lease,
            methods=runtime.dispatcher.methods,
        )
        yield runtime
    finally:
        await engine.dispose()
        logger.info("db_engine_disposed")
