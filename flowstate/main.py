"""Application factory and entry point for the flow engine API."""

from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.endpoints import init_dependencies, router
from .api.middleware import ErrorHandlingMiddleware
from .config import AppConfig, get_config, load_config
from .core.error_recovery import RetryConfig
from .core.flow_engine import FlowEngine
from .core.flow_store import FlowStore
from .core.logging import get_logger, setup_logging
from .core.node_registry import NodeTypeRegistry
from .core.template_manager import TemplateManager
from .operations import register_builtin_operations
from .storage.database import create_tables, get_database_engine, get_session_factory
from .storage.repository import SqlFlowRepository, SqlIntegrationRepository


class ApplicationState:
    """Container for application components."""

    def __init__(self):
        self.config: Optional[AppConfig] = None
        self.registry: Optional[NodeTypeRegistry] = None
        self.template_manager: Optional[TemplateManager] = None
        self.flow_store: Optional[FlowStore] = None
        self.flow_engine: Optional[FlowEngine] = None


app_state = ApplicationState()


def initialize_components(config: AppConfig, logger) -> FlowEngine:
    """Build storage, registry, templates, store and engine, and wire the API to them."""
    engine = get_database_engine(
        config.database_url,
        echo=config.database_echo,
        connect_args=config.get_database_connect_args()
    )
    create_tables(engine)
    logger.info("Database tables created")

    session_factory = get_session_factory(config.database_url)

    registry = NodeTypeRegistry()
    register_builtin_operations(registry)

    template_manager = TemplateManager(registry, session_factory)

    flow_store = FlowStore(SqlFlowRepository(
        session_factory,
        RetryConfig(max_attempts=config.persistence_retry_attempts)
    ))
    flow_store.load()

    flow_engine = FlowEngine(
        store=flow_store,
        registry=registry,
        templates=template_manager,
        integrations=SqlIntegrationRepository(session_factory),
        run_in_background=config.run_in_background,
        max_concurrent_executions=config.max_concurrent_executions
    )

    app_state.config = config
    app_state.registry = registry
    app_state.template_manager = template_manager
    app_state.flow_store = flow_store
    app_state.flow_engine = flow_engine

    init_dependencies(
        flow_engine=flow_engine,
        template_manager=template_manager,
        registry=registry,
        flow_store=flow_store
    )
    logger.info("Core components initialized")
    return flow_engine


def create_lifespan_handler(config: AppConfig):
    """Create the application lifespan handler for ``config``."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.structured_logging,
            max_size=config.log_max_size,
            backup_count=config.log_backup_count
        )
        logger = get_logger(__name__)
        logger.info(f"Starting {config.app_name} v{config.app_version}")

        try:
            flow_engine = initialize_components(config, logger)
        except Exception as e:
            logger.error(f"Application startup failed: {e}")
            raise

        logger.info("Application startup completed successfully")
        yield

        logger.info(f"Shutting down {config.app_name}")
        try:
            flow_engine.shutdown()
        except Exception as e:
            logger.error(f"Error during flow engine shutdown: {str(e)}")

    return lifespan


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    """Create and configure a FastAPI application instance."""
    if config is None:
        config = get_config()

    app = FastAPI(
        title=config.app_name,
        description="Workflow graphs, data mapping and flow execution for marketing automation",
        version=config.app_version,
        debug=config.debug,
        lifespan=create_lifespan_handler(config)
    )

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
    app.add_middleware(ErrorHandlingMiddleware)

    app.include_router(router)

    @app.get("/")
    async def root():
        """Root endpoint for basic health check."""
        return {"message": f"{config.app_name} is running", "version": config.app_version}

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "service": config.app_name.lower().replace(" ", "-"),
            "version": config.app_version
        }

    return app


def main():
    """Run the API with uvicorn using configuration from the environment."""
    import uvicorn

    config = load_config()
    uvicorn.run(create_app(config), **config.get_uvicorn_config())


if __name__ == "__main__":
    main()
