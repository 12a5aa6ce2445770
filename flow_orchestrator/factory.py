"""Application factory: builds the engine components and the FastAPI app around them."""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from sqlalchemy.orm import sessionmaker

from .api.endpoints import router
from .config import AppConfig, get_config
from .core.flow_engine import FlowEngine
from .core.flow_selector import FlowSelector
from .core.invocation_guard import InvocationGuard
from .core.logging import get_logger, setup_logging
from .core.middleware import ErrorHandlingMiddleware, RequestLoggingMiddleware
from .core.node_handlers import NodeHandlerRegistry, create_default_registry
from .core.ports import NodeServices
from .core.repository import FlowRepository, SqlAlchemyFlowRepository
from .storage.database import build_engine, create_session_factory, create_tables

logger = get_logger(__name__)


class FlowOrchestrator:
    """Container for the engine components of one application."""

    def __init__(
        self,
        config: AppConfig,
        guard: InvocationGuard,
        registry: NodeHandlerRegistry,
        repository: FlowRepository,
        selector: FlowSelector,
        engine: FlowEngine,
    ):
        self.config = config
        self.guard = guard
        self.registry = registry
        self.repository = repository
        self.selector = selector
        self.engine = engine

    def start(self) -> None:
        """Start background maintenance; needs a running event loop."""
        self.guard.start_cleanup_task(self.config.guard_cleanup_interval_ms)

    async def shutdown(self) -> None:
        logger.info("Shutting down flow orchestrator")
        try:
            await self.engine.shutdown()
        except Exception as e:
            logger.error(f"Error during flow engine shutdown: {str(e)}")
        try:
            await self.guard.stop_cleanup_task()
        except Exception as e:
            logger.error(f"Error stopping guard cleanup task: {str(e)}")


def build_orchestrator(
    config: Optional[AppConfig] = None,
    services: Optional[NodeServices] = None,
    session_factory: Optional[sessionmaker] = None,
) -> FlowOrchestrator:
    """
    Wire guard, registry, repository, selector and engine together.

    Args:
        config: Application configuration; the global one when omitted
        services: Capability ports handed to node handlers
        session_factory: SQLAlchemy session factory; built from
            ``config.database_url`` (tables included) when omitted
    """
    config = config or get_config()

    if session_factory is None:
        db_engine = build_engine(config.database_url, config.database_echo)
        create_tables(db_engine)
        logger.info("Database tables created")
        session_factory = create_session_factory(db_engine)

    guard = InvocationGuard(config.guard_config())
    registry = create_default_registry(
        guard=guard,
        max_delay_seconds=config.max_delay_seconds,
        default_provider=config.default_ai_provider,
        default_model=config.default_ai_model,
    )
    repository = SqlAlchemyFlowRepository(session_factory)
    selector = FlowSelector(repository)
    engine = FlowEngine(
        repository=repository,
        registry=registry,
        services=services or NodeServices(),
        settings=config.engine_settings(),
        selector=selector,
    )

    logger.info(f"Flow orchestrator built with {len(registry.list_handlers())} node handlers")
    return FlowOrchestrator(config, guard, registry, repository, selector, engine)


def create_app(
    config: Optional[AppConfig] = None,
    services: Optional[NodeServices] = None,
    orchestrator: Optional[FlowOrchestrator] = None,
) -> FastAPI:
    """Create and configure the FastAPI application instance."""
    if config is None:
        config = orchestrator.config if orchestrator else get_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.log_structured,
            max_size=config.log_max_size,
            backup_count=config.log_backup_count
        )
        logger.info(f"Starting {config.app_name} v{config.app_version}")

        components = orchestrator or build_orchestrator(config, services)
        app.state.orchestrator = components
        components.start()
        logger.info("Application startup completed successfully")

        yield

        await components.shutdown()
        app.state.orchestrator = None

    app = FastAPI(
        title=config.app_name,
        description="Orchestrates robot conversation and automation flows defined as node graphs",
        version=config.app_version,
        debug=config.debug,
        lifespan=lifespan
    )

    app.add_middleware(ErrorHandlingMiddleware)
    if config.debug:
        app.add_middleware(RequestLoggingMiddleware)

    app.include_router(router)
    add_health_endpoints(app, config)
    return app


def add_health_endpoints(app: FastAPI, config: AppConfig) -> None:
    """Add health check endpoints to the application."""

    @app.get("/")
    async def root():
        """Root endpoint for basic health check."""
        return {"message": f"{config.app_name} is running", "version": config.app_version}

    @app.get("/health")
    async def health_check():
        """Basic health check endpoint."""
        components = getattr(app.state, "orchestrator", None)
        return {
            "status": "healthy" if components is not None else "starting",
            "service": config.app_name.lower().replace(" ", "-"),
            "version": config.app_version,
            "active_executions": components.engine.active_executions if components else 0,
        }
