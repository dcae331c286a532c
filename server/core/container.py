"""Dependency injection container for the application."""

from dependency_injector import containers, providers

from core.config import Settings
from core.database import Database
from services.execution import WorkflowExecutor
from services.handlers import register_builtin_handlers
from services.usage import UsageTracker
from services.vault import StaticConnectionVault
from services.worker import JobProcessor


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    # Database (the workflow store)
    database = providers.Singleton(
        Database,
        settings=settings
    )

    # Handler registry with built-ins registered
    registry = providers.Singleton(
        register_builtin_handlers,
        settings=settings
    )

    vault = providers.Singleton(
        StaticConnectionVault,
        connections=settings.provided.vault_connections
    )

    usage_tracker = providers.Singleton(
        UsageTracker
    )

    executor = providers.Singleton(
        WorkflowExecutor,
        store=database,
        registry=registry,
        vault=vault,
        usage_tracker=usage_tracker
    )

    job_processor = providers.Factory(
        JobProcessor,
        store=database,
        executor=executor,
        max_jobs_per_request=settings.provided.max_jobs_per_request,
        worker_id_prefix=settings.provided.worker_id_prefix
    )


# Global container instance
container = Container()
