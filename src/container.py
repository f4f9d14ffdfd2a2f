"""Dependency injection container for the search authorization service.

The container owns the process-wide services and hands the same instances to
the HTTP layer and to the task pipeline. It is built once by
``configure_services`` during application startup, stored on
``app.state.container`` and disposed on shutdown.

Registered Services:
    - settings: ``Settings`` instance (environment configuration)
    - clock: zero-argument callable returning the current UTC time
    - key_store: ``ApiKeyStore`` (the only shared mutable authorization state)
    - route_classifier: ``RouteClassifier`` over the static route table
    - index_registry: ``IndexRegistry``
    - dump_registry: ``DumpRegistry``
    - task_queue: ``TaskQueue`` (depends on index_registry, dump_registry, clock)

Service Lifetimes:
    - Singleton: Single instance shared across the application
    - Instance: Pre-created objects registered directly (settings, clock, test doubles)

Error Handling:
    - Circular Dependencies: Detected and reported with the service name
    - Missing Services: ValueError naming the service
    - Cleanup Errors: Logged, other services are still disposed
"""

import asyncio
from typing import Any, Callable, Optional, Union

import structlog

logger = structlog.get_logger()


class ServiceDescriptor:
    """Registration metadata: implementation and dependencies."""

    def __init__(
        self,
        implementation: Callable[..., Any],
        dependencies: Optional[list] = None,
    ):
        self.implementation = implementation
        self.dependencies = dependencies or []


class Container:
    """Lightweight dependency injection container.

    Internal State:
        _services: Registry of service descriptors by name
        _instances: Cache of singleton (and registered) instances by name
        _resolving: Names currently being resolved (circular detection)
    """

    def __init__(self):
        self._services: dict[str, ServiceDescriptor] = {}
        self._instances: dict[str, Any] = {}
        self._resolving: set = set()

    def register_singleton(
        self,
        name: str,
        implementation: Callable[..., Any],
        dependencies: Optional[list] = None,
    ) -> "Container":
        """Register a service created once, on first resolution.

        Dependencies are resolved by name and passed positionally to
        ``implementation``.

        Examples:
            >>> container.register_singleton("task_queue", TaskQueue, ["index_registry", "dump_registry"])
        """
        self._services[name] = ServiceDescriptor(implementation, dependencies)
        return self

    def register_instance(self, name: str, instance: Any) -> "Container":
        """Register a pre-created instance (configuration, clocks, test doubles)."""
        self._instances[name] = instance
        return self

    def get(self, name: str) -> Any:
        """Resolve a service by name.

        Raises:
            ValueError: If a circular dependency is detected or the service is
                not registered
        """
        if name in self._resolving:
            raise ValueError(f"Circular dependency detected for {name}")

        if name in self._instances:
            return self._instances[name]

        if name not in self._services:
            raise ValueError(f"Service {name} is not registered")

        descriptor = self._services[name]
        self._resolving.add(name)

        try:
            resolved_dependencies = [self.get(dep) for dep in descriptor.dependencies]
            instance = descriptor.implementation(*resolved_dependencies)

            self._instances[name] = instance

            logger.debug(
                "Service resolved successfully",
                service=name,
                dependencies=descriptor.dependencies,
            )
            return instance

        finally:
            self._resolving.discard(name)

    def is_registered(self, name: str) -> bool:
        return name in self._services or name in self._instances

    async def dispose_async(self):
        """Close every instance exposing an async ``close()``.

        Individual failures are logged and do not stop the disposal of the
        remaining services.
        """
        for instance in self._instances.values():
            if hasattr(instance, "close") and asyncio.iscoroutinefunction(instance.close):
                try:
                    await instance.close()
                except Exception as e:
                    logger.error(f"Error disposing service: {e}")

        self._instances.clear()
        logger.info("Container disposed successfully")


def configure_services(
    settings: Any = None,
    clock: Union[Callable[[], Any], None] = None,
) -> Container:
    """Build the container holding every service of one process.

    Args:
        settings: ``Settings`` to use; read from the environment when None
        clock: Time source; ``utc_now`` when None (tests pass a controllable clock)

    Returns:
        Container: Fully configured container
    """
    # Import here to avoid circular dependencies
    from .auth.key_backend import InMemoryKeyBackend, SQLiteKeyBackend
    from .auth.key_store import ApiKeyStore
    from .auth.models import utc_now
    from .auth.routes import RouteClassifier
    from .config import Settings
    from .indexes import DumpRegistry, IndexRegistry
    from .tasks import TaskQueue

    settings = settings if settings is not None else Settings.from_env()
    clock = clock if clock is not None else utc_now

    container = Container()
    container.register_instance("settings", settings)
    container.register_instance("clock", clock)

    def build_key_store(settings, clock):
        backend = (
            SQLiteKeyBackend(settings.key_store_path)
            if settings.key_store_path
            else InMemoryKeyBackend()
        )
        return ApiKeyStore(
            backend=backend,
            master_key=settings.master_key,
            prefix_length=settings.key_prefix_length,
            clock=clock,
        )

    container.register_singleton("key_store", build_key_store, ["settings", "clock"])
    container.register_singleton("route_classifier", RouteClassifier)
    container.register_singleton("index_registry", IndexRegistry, ["clock"])
    container.register_singleton("dump_registry", DumpRegistry, ["clock"])
    container.register_singleton(
        "task_queue",
        lambda indexes, dumps, clock, settings: TaskQueue(
            indexes, dumps, clock=clock, error_docs_url=settings.error_docs_url
        ),
        ["index_registry", "dump_registry", "clock", "settings"],
    )

    logger.info("Service container configured successfully")
    return container
