"""Wiring: builds the storage, executor and scheduler stack from a ServerConfig."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from contextlib import AsyncExitStack
from dataclasses import dataclass
from datetime import timedelta

from mcp import ClientSession

from storyloom.breaker import GuardedStorage, PersistenceBreaker
from storyloom.config import ServerConfig
from storyloom.executor import NarrativeExecutor
from storyloom.llm import Backend, EchoBackend, HttpBackend
from storyloom.narratives import load_narratives
from storyloom.platforms import (
    AllowAllGate,
    McpPlatform,
    McpServerSettings,
    PlatformRegistry,
    PolicyGate,
    SecurityGate,
    connect_mcp,
)
from storyloom.processors import ProcessorRegistry, default_registry
from storyloom.resolver import InputResolver
from storyloom.scheduler import NarrativeTaskRunner, Scheduler, TaskStore
from storyloom.state import StateStore
from storyloom.storage import Storage
from storyloom.tracker import ExecutionTracker

logger = logging.getLogger(__name__)


@dataclass
class Services:
    storage: GuardedStorage
    breaker: PersistenceBreaker
    state: StateStore
    executor: NarrativeExecutor
    store: TaskStore
    tracker: ExecutionTracker
    scheduler: Scheduler


def make_backend(config: ServerConfig) -> Backend:
    settings = config.backend
    if settings.provider_format == "echo":
        return EchoBackend()
    return HttpBackend(
        provider_url=settings.provider_url,
        api_key=settings.api_key,
        provider_format=settings.provider_format,
        timeout=settings.timeout,
        default_model=settings.default_model,
    )


def make_security(config: ServerConfig) -> SecurityGate:
    if config.security is None:
        return AllowAllGate()
    return PolicyGate(config.security)


async def open_platforms(
    config: ServerConfig,
    stack: AsyncExitStack,
    connect: Callable[[McpServerSettings, AsyncExitStack], Awaitable[ClientSession]] = connect_mcp,
) -> PlatformRegistry:
    """Connect every configured MCP platform. Sessions close with `stack`."""
    registry = PlatformRegistry()
    for name, settings in config.platforms.items():
        session = await connect(settings, stack)
        registry.register(name, McpPlatform(session))
        logger.info("platform %s connected via %s", name, settings.url or settings.command)
    return registry


def build_services(
    config: ServerConfig,
    *,
    backend: Backend | None = None,
    platforms: PlatformRegistry | None = None,
    processors: ProcessorRegistry | None = None,
) -> Services:
    breaker = PersistenceBreaker(
        failure_threshold=config.persistence.failure_threshold,
        reset_after=timedelta(seconds=config.persistence.reset_after_seconds),
    )
    storage = GuardedStorage(Storage(config.data_dir), breaker)
    state = StateStore(storage)
    security = make_security(config)

    resolver_settings = config.resolver
    if resolver_settings.text_root is None:
        resolver_settings = resolver_settings.model_copy(update={"text_root": config.narratives_dir})
    resolver = InputResolver(storage, state, platforms, security, resolver_settings)

    executor = NarrativeExecutor(
        storage,
        resolver,
        backend or make_backend(config),
        processors or default_registry(),
        state,
        retry=config.retry,
        security=security,
    )

    store = TaskStore(storage)
    for definition in config.tasks:
        store.register(definition)
    narratives = load_narratives([t.narrative for t in config.tasks], config.narratives_dir)
    tracker = ExecutionTracker(storage, config.circuit_breaker)
    scheduler = Scheduler(
        store,
        tracker,
        NarrativeTaskRunner(executor, narratives),
        breaker=breaker,
        settings=config.scheduler,
    )
    logger.info("storyloom ready tasks=%d narratives=%d", len(config.tasks), len(narratives))
    return Services(storage, breaker, state, executor, store, tracker, scheduler)
