"""
Dependency injection container for surgecore services.
"""

from __future__ import annotations

import asyncio
import signal
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Dict, Generic, List, Optional, TypeVar
from uuid import uuid4

import structlog
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from surgecore.config import Config
from surgecore.observability import MetricsManager, configure_logging

if TYPE_CHECKING:
    from surgecore.engine.service import LoadTestService
    from surgecore.notifications import AlertNotifier
    from surgecore.protocols import RequestExecutor
    from surgecore.regression.runner import RegressionRunner
    from surgecore.regression.store import JsonBaselineStore

T = TypeVar("T")


class LazyInstance(Generic[T]):
    """Lazy-loaded instance with lifecycle management."""

    def __init__(self, factory: Callable[..., T], *args: Any, **kwargs: Any) -> None:
        self._factory = factory
        self._args = args
        self._kwargs = kwargs
        self._instance: Optional[T] = None
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

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
        if self._instance is not None and callable(getattr(self._instance, "close", None)):
            await self._instance.close()  # type: ignore
        self._instance = None
        self._initialized = False


class ConfigWatcher(FileSystemEventHandler):
    """Reloads configuration when the watched YAML file changes."""

    def __init__(self, container: DependencyContainer, loop: asyncio.AbstractEventLoop) -> None:
        self.container = container
        self.loop = loop
        self.logger = structlog.get_logger(self.__class__.__name__)

    def on_modified(self, event: FileSystemEvent) -> None:
        if event.is_directory or self.container.config_path is None:
            return
        if Path(str(event.src_path)).name != self.container.config_path.name:
            return
        self.logger.info("Configuration file changed, reloading", path=event.src_path)
        # watchdog calls back on its own thread
        asyncio.run_coroutine_threadsafe(self.container.reload_config(), self.loop)


class DependencyContainer:
    """
    Builds the service graph once per process: configuration, load test
    service, baseline store, notifier and regression runner.

    Instances are created on first use. A configuration reload applies to
    tests started afterwards; running tests keep the settings they started with.
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        *,
        config: Optional[Config] = None,
        executor: Optional[RequestExecutor] = None,
        watch_config: bool = False,
        handle_signals: bool = False,
    ) -> None:
        self.config_path = config_path
        self.config: Optional[Config] = config
        self.executor = executor
        self.watch_config = watch_config
        self.handle_signals = handle_signals
        self.logger = structlog.get_logger(self.__class__.__name__)

        self._instances: Dict[str, LazyInstance[Any]] = {}
        self._instances_lock = asyncio.Lock()
        self._observer: Optional[Any] = None
        self._metrics_manager: Optional[MetricsManager] = None
        self._shutdown_handlers: List[Callable[[], Any]] = []

        self.container_id = str(uuid4())
        self.is_running = False

    async def initialize(self) -> None:
        if self.config is None:
            self.config = self._read_config()
        configure_logging(self.config.monitoring)
        self._metrics_manager = MetricsManager(self.config.monitoring)
        self._metrics_manager.start()
        self._create_instances()

        if self.watch_config:
            self._setup_config_watching()
        if self.handle_signals:
            self._setup_signal_handlers()

        self.is_running = True
        self.logger.info(
            "Dependency container initialized",
            container_id=self.container_id,
            config_path=str(self.config_path) if self.config_path else "default",
        )

    def _read_config(self) -> Config:
        if self.config_path and self.config_path.exists():
            return Config.from_yaml(self.config_path)
        return Config()

    def _create_instances(self) -> None:
        if self.config is None:
            raise RuntimeError("Configuration must be loaded before creating instances")

        # Imported here to keep `surgecore.container` cheap to import
        from surgecore.engine.service import LoadTestService
        from surgecore.notifications import AlertNotifier, build_sinks
        from surgecore.regression.store import JsonBaselineStore

        notifications = self.config.notifications
        self._instances = {
            "store": LazyInstance(
                JsonBaselineStore, self.config.baselines.path, seed_default=self.config.baselines.seed_default
            ),
            "notifier": LazyInstance(
                lambda: AlertNotifier(
                    build_sinks(
                        notifications.channels,
                        file_path=notifications.file_path,
                        webhook_url=notifications.webhook_url,
                        webhook_timeout=notifications.webhook_timeout,
                    )
                )
            ),
            "service": LazyInstance(LoadTestService, self.config, executor=self.executor),
        }

    async def reload_config(self) -> None:
        """Re-read the configuration file and hand it to live instances."""
        old_config = self.config
        try:
            new_config = self._read_config()
        except (OSError, ValueError) as e:
            self.logger.error("Configuration reload failed, keeping previous settings", error=str(e))
            return

        self.config = new_config
        configure_logging(new_config.monitoring)
        async with self._instances_lock:
            service = self._instances.get("service")
            if service is not None and service.initialized:
                (await service.get()).config = new_config
            runner = self._instances.get("runner")
            if runner is not None and runner.initialized:
                (await runner.get()).reporting = new_config.reporting

        self.logger.info(
            "Configuration reloaded",
            container_id=self.container_id,
            changes_detected=old_config != new_config,
        )

    async def get_service(self) -> LoadTestService:
        async with self._instances_lock:
            return await self._instances["service"].get()  # type: ignore

    async def get_store(self) -> JsonBaselineStore:
        async with self._instances_lock:
            return await self._instances["store"].get()  # type: ignore

    async def get_notifier(self) -> AlertNotifier:
        async with self._instances_lock:
            return await self._instances["notifier"].get()  # type: ignore

    async def get_runner(self) -> RegressionRunner:
        """The regression runner shares the container's service, store and notifier."""
        from surgecore.regression.runner import RegressionRunner

        assert self.config is not None
        async with self._instances_lock:
            if "runner" not in self._instances:
                self._instances["runner"] = LazyInstance(
                    RegressionRunner,
                    await self._instances["store"].get(),
                    await self._instances["service"].get(),
                    notifier=await self._instances["notifier"].get(),
                    reporting=self.config.reporting,
                )
            return await self._instances["runner"].get()  # type: ignore

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator[DependencyContainer]:
        try:
            await self.initialize()
            yield self
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        """Stop running tests and release every managed instance."""
        if not self.is_running:
            return
        self.is_running = False
        self.logger.info("Shutting down dependency container", container_id=self.container_id)

        if self._observer:
            self._observer.stop()
            self._observer.join()
            self._observer = None

        if self.handle_signals:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)

        for handler in self._shutdown_handlers:
            try:
                if asyncio.iscoroutinefunction(handler):
                    await handler()
                else:
                    handler()
            except Exception as e:
                self.logger.error("Error in shutdown handler", error=str(e))

        await self._cleanup_instances()
        self.logger.info("Dependency container shutdown complete")

    def _setup_config_watching(self) -> None:
        if not self.config_path:
            return
        self._observer = Observer()
        handler = ConfigWatcher(self, asyncio.get_running_loop())
        self._observer.schedule(handler, str(self.config_path.resolve().parent), recursive=False)
        self._observer.start()

    def _setup_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()

        def _stop_tests(signum: int) -> None:
            service = self._instances.get("service")
            if service is None or not service.initialized:
                # Nothing to stop gracefully: fall back to the default behaviour
                loop.remove_signal_handler(signum)
                signal.raise_signal(signum)
                return
            self.logger.info("Received signal, stopping running tests", signal=signum)
            asyncio.ensure_future(self._stop_all())

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, _stop_tests, sig)

    async def _stop_all(self) -> None:
        service = await self.get_service()
        for metrics in service.list_active():
            await service.stop(metrics.test_id)

    async def _cleanup_instances(self) -> None:
        # Dependents first: runner, service, notifier, store
        for name in reversed(list(self._instances)):
            try:
                await self._instances[name].cleanup()
            except Exception as e:
                self.logger.error("Error cleaning up instance", instance=name, error=str(e))
        self._instances.clear()

    def add_shutdown_handler(self, handler: Callable[[], Any]) -> None:
        self._shutdown_handlers.append(handler)

    def get_health_status(self) -> Dict[str, Any]:
        return {
            "container_id": self.container_id,
            "is_running": self.is_running,
            "config_loaded": self.config is not None,
            "instances_count": len(self._instances),
            "config_path": str(self.config_path) if self.config_path else None,
        }
