"""
Clinic Workflow API Application Factory
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from .deps import WorkflowSystem
from .errors import register_exception_handlers
from .definitions import router as definitions_router
from .workflows import router as workflows_router
from .tasks import router as tasks_router
from .delegations import router as delegations_router
from .reporting import router as reporting_router
from .admin import router as admin_router
from .. import __version__
from ..config import get_config
from ..logging_config import setup_logging
from ..tenancy import tenant_context


def create_app(system: Optional[WorkflowSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    if system is None:
        config = get_config()
        setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
        system = WorkflowSystem(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await system.startup()
        yield
        await system.shutdown()

    app = FastAPI(
        title="Clinic Workflow API",
        description="Approval workflow engine for clinic administration",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.workflow_system = system

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def tenant_middleware(request: Request, call_next):
        """Scope the request to the tenant named in X-Tenant-ID"""
        if not system.config.multi_tenant or request.url.path in ("/", "/health"):
            return await call_next(request)
        tenant_id = request.headers.get("x-tenant-id")
        if not tenant_id:
            return JSONResponse(
                status_code=400,
                content={"error": "TENANT_REQUIRED", "message": "X-Tenant-ID header is required"},
            )
        with tenant_context(tenant_id):
            return await call_next(request)

    register_exception_handlers(app)

    app.include_router(definitions_router, prefix="/definitions", tags=["Definitions"])
    app.include_router(workflows_router, prefix="/workflows", tags=["Workflows"])
    app.include_router(tasks_router, prefix="/tasks", tags=["Tasks"])
    app.include_router(delegations_router, prefix="/delegations", tags=["Delegations"])
    app.include_router(reporting_router, prefix="/reports", tags=["Reports"])
    app.include_router(admin_router, prefix="/admin", tags=["Admin"])

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "service": "clinic_workflow_api",
            "version": __version__,
        }

    @app.get("/")
    async def get_api_info():
        return {
            "name": "Clinic Workflow API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "definitions": "/definitions",
                "workflows": "/workflows",
                "tasks": "/tasks",
                "delegations": "/delegations",
                "reports": "/reports",
                "admin": "/admin",
            }
        }

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    uvicorn.run(
        "clinic_workflow.api:create_app",
        factory=True,
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower(),
    )
