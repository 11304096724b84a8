"""
Dependency injection container for PageFlow components.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Dict, Generic, Optional, TypeVar
from uuid import uuid4

import structlog

from pageflow.config import Config, find_config_file
from pageflow.errors import GeneratorNotConfiguredError
from pageflow.observability.events import StructlogEventSink
from pageflow.protocols import EventSink

if TYPE_CHECKING:
    from pageflow.crawler.fetcher import PageFetcher
    from pageflow.generator.client import OpenAICompatibleGenerator
    from pageflow.locking.manager import StageLockManager
    from pageflow.pipeline import StageBatchRunner
    from pageflow.protocols import LockStore
    from pageflow.scheduling.candidates import CandidateSelector
    from pageflow.scheduling.recrawl import RecrawlPolicy
    from pageflow.stages import StageRegistry
    from pageflow.storage.page_store import PageStore

T = TypeVar("T")


class LazyInstance(Generic[T]):
    """Lazy-loaded instance with lifecycle management."""

    def __init__(self, factory: Callable[..., T], *args: Any, **kwargs: Any) -> None:
        self._factory = factory
        self._args = args
        self._kwargs = kwargs
        self._instance: Optional[T] = None
        self._initialized = False

    async def get(self) -> T:
        """Get or create the instance."""
        if not self._initialized:
            self._instance = self._factory(*self._args, **self._kwargs)
            if callable(getattr(self._instance, "initialize", None)):
                await self._instance.initialize()  # type: ignore
            self._initialized = True
        assert self._instance is not None
        return self._instance

    async def cleanup(self) -> None:
        """Clean up the instance."""
        if self._instance is not None and callable(getattr(self._instance, "close", None)):
            await self._instance.close()  # type: ignore
        self._instance = None
        self._initialized = False


class DependencyContainer:
    """
    Owns the page store, lock backend, generator client and fetcher of one
    process and wires them into stage runners.
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        config: Optional[Config] = None,
        events: Optional[EventSink] = None,
    ) -> None:
        self.config_path = config_path
        self.config: Optional[Config] = config
        self.events: EventSink = events or StructlogEventSink()
        self.logger = structlog.get_logger(self.__class__.__name__)

        self._instances: Dict[str, LazyInstance[Any]] = {}
        self._instances_lock = asyncio.Lock()

        self.container_id = str(uuid4())
        self.is_running = False

    async def initialize(self) -> None:
        """Load configuration (unless one was passed in) and prepare lazy instances."""
        if self.config is None:
            self.load_config()
        self._create_instances()
        self.is_running = True

        self.logger.info(
            "Dependency container initialized",
            container_id=self.container_id,
            config_path=str(self.config_path) if self.config_path else "default",
            db_path=str(self.require_config().storage.db_path),
            lock_backend=self.require_config().locks.backend,
        )

    def load_config(self) -> None:
        self.config_path = self.config_path or find_config_file()
        if self.config_path and self.config_path.exists():
            self.config = Config.from_yaml(self.config_path)
        else:
            self.config = Config()

    def require_config(self) -> Config:
        if self.config is None:
            raise RuntimeError("Configuration must be loaded before creating instances")
        return self.config

    def _create_instances(self) -> None:
        config = self.require_config()

        # Import modules only when needed to avoid circular imports
        from pageflow.crawler.fetcher import PageFetcher
        from pageflow.locking import build_lock_store
        from pageflow.storage.page_store import PageStore

        self._instances = {
            "store": LazyInstance(PageStore, config.storage),
            "lock_store": LazyInstance(build_lock_store, config.locks, config.storage.db_path),
            "fetcher": LazyInstance(PageFetcher, config.crawler),
        }

    async def _get(self, name: str) -> Any:
        return await self._instances[name].get()

    async def get_store(self) -> PageStore:
        async with self._instances_lock:
            return await self._get("store")  # type: ignore[no-any-return]

    async def get_lock_store(self) -> LockStore:
        async with self._instances_lock:
            return await self._get("lock_store")  # type: ignore[no-any-return]

    async def get_fetcher(self) -> PageFetcher:
        async with self._instances_lock:
            return await self._get("fetcher")  # type: ignore[no-any-return]

    async def get_generator(self) -> OpenAICompatibleGenerator:
        """Generator client; its request log lives in the page database."""
        async with self._instances_lock:
            return await self._generator()

    async def _generator(self) -> OpenAICompatibleGenerator:
        if "generator" not in self._instances:
            from pageflow.generator.client import OpenAICompatibleGenerator
            from pageflow.storage.request_log import AiRequestLogger

            store = await self._get("store")
            self._instances["generator"] = LazyInstance(
                OpenAICompatibleGenerator, self.require_config().generator, AiRequestLogger(store)
            )
        return await self._get("generator")  # type: ignore[no-any-return]

    async def get_lock_manager(self) -> StageLockManager:
        from pageflow.locking.manager import StageLockManager

        lock_config = self.require_config().locks
        return StageLockManager(
            await self.get_lock_store(),
            ttl_seconds=lock_config.ttl_seconds,
            key_prefix=lock_config.key_prefix,
            events=self.events,
        )

    def recrawl_policy(self) -> RecrawlPolicy:
        from pageflow.scheduling.recrawl import RecrawlPolicy

        return RecrawlPolicy.from_config(self.require_config().recrawl)

    def get_registry(self, new_only: bool = False) -> StageRegistry:
        from pageflow.stages import default_registry

        return default_registry(self.recrawl_policy(), new_only=new_only)

    async def get_selector(self) -> CandidateSelector:
        from pageflow.scheduling.candidates import CandidateSelector

        return CandidateSelector(await self.get_store())

    async def ensure_stage_ready(self, stage: str) -> None:
        """
        Raise :class:`GeneratorNotConfiguredError` for a generator stage
        without a usable model or endpoint.
        """
        from pageflow.stages.base import GeneratorStage

        definition = self.get_registry().get(stage)
        if not isinstance(definition, GeneratorStage):
            return
        config = self.require_config()
        generator = await self.get_generator()
        if generator.is_configured():
            return
        if config.generator.base_url and config.stages.for_stage(stage).model:
            return
        raise GeneratorNotConfiguredError(
            f"Stage '{stage}' needs a generation service: set generator.base_url and generator.model"
        )

    async def get_runner(self, new_only: bool = False) -> StageBatchRunner:
        """
        Build a batch runner with a processor for every registered stage.

        ``new_only`` restricts the crawl stage to pages never fetched before.
        """
        from pageflow.crawler.fetcher import CrawlProcessor
        from pageflow.extraction.engine import ExtractionRetryEngine
        from pageflow.pipeline import StageBatchRunner
        from pageflow.stages.base import GeneratorStage

        config = self.require_config()
        registry = self.get_registry(new_only)
        store = await self.get_store()
        generator = await self.get_generator()
        fetcher = await self.get_fetcher()

        processors: Dict[str, Any] = {}
        for definition in registry:
            if isinstance(definition, GeneratorStage):
                processors[definition.name] = ExtractionRetryEngine(
                    definition,
                    generator,
                    store,
                    events=self.events,
                    assets_dir=config.storage.assets_dir,
                    model=config.stages.for_stage(definition.name).model,
                )
            else:
                processors[definition.name] = CrawlProcessor(store, fetcher, config.crawler.max_content_chars)

        return StageBatchRunner(
            await self.get_selector(),
            await self.get_lock_manager(),
            registry,
            processors,
            events=self.events,
        )

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator[DependencyContainer]:
        """Context manager for proper lifecycle management."""
        try:
            await self.initialize()
            yield self
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        """Close every instance that was created, newest first."""
        if not self.is_running:
            return

        await self._cleanup_instances()
        self.is_running = False
        self.logger.info("Dependency container shutdown complete", container_id=self.container_id)

    async def _cleanup_instances(self) -> None:
        for name, instance in reversed(list(self._instances.items())):
            try:
                await instance.cleanup()
            except Exception as e:
                self.logger.error("Error cleaning up instance", instance=name, error=str(e))
        self._instances.clear()

