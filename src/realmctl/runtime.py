"""Assemble the objects shared by CLI commands and the console."""
from __future__ import annotations

from dataclasses import dataclass

from .accounts import CredentialIssuer
from .cache import InstanceCache
from .config import AppConfig
from .database import Connection
from .datasets import DatasetCache
from .ids import RealmIdAllocator
from .lifecycle import RealmLifecycle
from .locking import LockManager
from .logging import StructuredLogger
from .modules import ModuleIndex
from .router import CommandRouter
from .state import StateRegistry
from .templates import TemplateEngine


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    registry: StateRegistry
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    index: ModuleIndex
    cache: InstanceCache
    datasets: DatasetCache
    auth: Connection
    lifecycle: RealmLifecycle
    router: CommandRouter

    async def aclose(self) -> None:
        """Dispose of every database engine opened during the run."""
        await self.cache.aclose()
        await self.datasets.aclose()
        await self.auth.close()


def build_runtime(config: AppConfig) -> RuntimeContext:
    """Wire up a :class:`RuntimeContext` for *config*."""
    registry = StateRegistry(config.registry_dir)
    registry.ensure_root()
    locks = LockManager(config.runtime_dir, config.lock_timeout)
    logger = StructuredLogger(config.logs_dir)
    templates = TemplateEngine.with_overrides(config.templates_dir)
    index = ModuleIndex(config.modules_root)
    cache = InstanceCache(config.databases.characters)
    datasets = DatasetCache(
        world=config.databases.world,
        install_root=config.install_root,
        templates=templates,
    )
    auth = Connection(config.databases.auth, "auth")
    lifecycle = RealmLifecycle(
        config=config,
        index=index,
        cache=cache,
        ids=RealmIdAllocator(index.all_realms, locks),
        datasets=datasets,
        auth=auth,
        registry=registry,
        templates=templates,
        logger=logger,
        locks=locks,
    )
    router = CommandRouter(config=config, lifecycle=lifecycle, issuer=CredentialIssuer(auth))
    return RuntimeContext(
        config=config,
        registry=registry,
        locks=locks,
        logger=logger,
        templates=templates,
        index=index,
        cache=cache,
        datasets=datasets,
        auth=auth,
        lifecycle=lifecycle,
        router=router,
    )


__all__ = ["RuntimeContext", "build_runtime"]
