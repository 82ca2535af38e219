"""
Dependency injection container for the pipeline's collaborators.

Services are created lazily from registered factories and cached; async
resources (the gateway's HTTP client, the orchestrator's background runs)
are released by ``cleanup``.
"""

from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any

from ..observability.logging import get_logger
from .settings import Settings, get_settings

logger = get_logger(__name__)


class Container:
    """Dependency injection container with async lifecycle management."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self._services: dict[str, Any] = {}
        self._factories: dict[str, Any] = {}
        self._singletons: dict[str, Any] = {}

    def register_factory(self, name: str, factory: Any) -> None:
        self._factories[name] = factory

    def register_singleton(self, name: str, instance: Any) -> None:
        self._singletons[name] = instance

    def get(self, name: str, default: Any = None) -> Any:
        """Get a service by name, creating it on first use."""
        if name in self._singletons:
            return self._singletons[name]
        if name in self._services:
            return self._services[name]
        if name in self._factories:
            instance = self._factories[name](self)
            self._services[name] = instance
            return instance
        return default

    async def cleanup(self) -> None:
        """Stop background runs, then close network clients."""
        orchestrator = self._services.get("orchestrator") or self._singletons.get("orchestrator")
        if orchestrator is not None:
            await orchestrator.shutdown()

        for name in ("gateway", "http_client"):
            resource = self._services.get(name) or self._singletons.get(name)
            if resource is None:
                continue
            try:
                await resource.aclose()
            except Exception as e:
                logger.error(f"Error cleaning up {name}", error=str(e))
        self._services.clear()

    @asynccontextmanager
    async def lifespan(self):
        try:
            yield self
        finally:
            await self.cleanup()


def setup_container(settings: Settings | None = None) -> Container:
    """Setup container with default service factories."""
    container = Container(settings)

    def _http_client_factory(c: Container):
        import httpx

        return httpx.AsyncClient(
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=5),
        )

    def _gateway_factory(c: Container):
        from ..gateway.client import ModelGatewayClient

        return ModelGatewayClient(
            c.settings.models,
            c.settings.gateway,
            http_client=c.get("http_client"),
            temperature=c.settings.agents.temperature,
        )

    def _blob_store_factory(c: Container):
        from ..storage.blobs import LocalStore

        return LocalStore(c.settings.storage.root)

    def _artifact_store_factory(c: Container):
        from ..storage.versioned import VersionedArtifactStore

        return VersionedArtifactStore(c.get("blob_store"))

    def _run_repository_factory(c: Container):
        from ..storage.runs import RunRepository

        return RunRepository(c.get("blob_store"))

    def _agent_factory_factory(c: Container):
        from ..agents.factory import AgentFactory

        return AgentFactory(c.settings, c.get("gateway"))

    def _harness_factory(c: Container):
        from ..harness.harness import TestHarness

        return TestHarness(c.settings.harness)

    def _publisher_factory(c: Container):
        from ..publisher.publisher import ChangePublisher
        from ..storage.blobs import LocalStore

        return ChangePublisher(LocalStore(c.settings.publisher.directory))

    def _orchestrator_factory(c: Container):
        from ..core.orchestrator import Orchestrator

        return Orchestrator(
            c.settings,
            agents=c.get("agents"),
            artifacts=c.get("artifact_store"),
            runs=c.get("run_repository"),
            harness=c.get("harness"),
            publisher=c.get("publisher"),
        )

    container.register_factory("http_client", _http_client_factory)
    container.register_factory("gateway", _gateway_factory)
    container.register_factory("blob_store", _blob_store_factory)
    container.register_factory("artifact_store", _artifact_store_factory)
    container.register_factory("run_repository", _run_repository_factory)
    container.register_factory("agents", _agent_factory_factory)
    container.register_factory("harness", _harness_factory)
    container.register_factory("publisher", _publisher_factory)
    container.register_factory("orchestrator", _orchestrator_factory)

    return container


@lru_cache
def get_container() -> Container:
    """Get cached container instance."""
    return setup_container()
