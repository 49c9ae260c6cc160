"""FastAPI application entry point for the BuildBoard backend.

This module initializes the FastAPI application with all middleware,
routers, and the lifespan that owns every long-lived service.

Usage:
    uvicorn main:app --reload
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agents.coding_agent import create_agent_session
from api.routes import Services, router, set_services
from config import configure_logging, settings
from events import get_event_bus
from generation_service import CodeGenerationPipeline
from jobs import JobSupervisor
from models.database import ProjectStore
from sandbox import SandboxLifecycleManager, build_provider
from vcs import GitHubClient, VersionControlIntegrator
from workflow import TaskWorkflow

# Configure structured logging
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Build the services on startup and tear them down on shutdown.

    The lifespan is the only owner of service lifecycles: it starts the
    sandbox expiry sweep and, on shutdown, cancels background jobs, closes
    every registered sandbox and releases the GitHub client.
    """
    logger.info(
        "application_starting",
        backend_port=settings.backend_port,
        log_level=settings.log_level,
        sandbox_provider=settings.sandbox_provider,
        use_mock_llm=settings.use_mock_llm,
    )

    store = ProjectStore(settings.database_path)
    await store.init()

    lifecycle = SandboxLifecycleManager(
        build_provider(settings),
        store,
        ttl_seconds=settings.sandbox_ttl_seconds,
        sweep_interval_seconds=settings.sandbox_cleanup_interval_seconds,
        workdir=settings.sandbox_workdir,
        preview_port=settings.preview_port,
        preview_settle_seconds=settings.preview_settle_seconds,
    )
    github = GitHubClient(settings.github_token, settings.github_api_url)
    integrator = VersionControlIntegrator(store, lifecycle, github, workdir=settings.sandbox_workdir)
    pipeline = CodeGenerationPipeline(
        store,
        lifecycle,
        get_event_bus(),
        agent_factory=create_agent_session,
        vcs_integrator=integrator,
    )
    supervisor = JobSupervisor()
    workflow = TaskWorkflow(store, pipeline, supervisor, integrator)

    set_services(
        Services(
            store=store,
            lifecycle=lifecycle,
            pipeline=pipeline,
            integrator=integrator,
            supervisor=supervisor,
            workflow=workflow,
            sandbox_provider=settings.sandbox_provider,
            webhook_secret=settings.github_webhook_secret,
        )
    )
    app.state.lifecycle = lifecycle
    app.state.supervisor = supervisor

    await lifecycle.start()
    logger.info("application_started")

    yield

    logger.info("application_shutting_down")
    await supervisor.shutdown()
    await lifecycle.shutdown()
    await github.aclose()
    set_services(None)
    logger.info("application_shutdown_complete")


# Create FastAPI application
app = FastAPI(
    title="BuildBoard",
    description="Kanban-driven code generation: tasks become sandboxed previews, "
    "branches, commits and pull requests.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# Configure CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(router, tags=["buildboard"])


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    return {
        "message": "BuildBoard API",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.backend_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
