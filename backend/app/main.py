from contextlib import asynccontextmanager
import logging
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.core.config import settings
from app.core.container import Container, build_container
from app.core.database import init_db
from app.core.errors import register_error_handlers
from app.routes.billing import router as billing_router
from app.routes.health import router as health_router
from app.routes.tenant_context import router as tenant_context_router
from app.routes.tenants import router as tenants_router


logger = logging.getLogger(__name__)


def create_app(container: Optional[Container] = None) -> FastAPI:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    container = container or build_container(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        init_db(container.engine)
        if container.settings.billing_scheduler_enabled:
            container.scheduler.start()
        yield
        container.shutdown()

    app = FastAPI(title="Nexus Control Plane API", version="0.1.0", lifespan=lifespan)
    app.state.container = container

    origins = container.settings.cors_origins
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    register_error_handlers(app)

    app.include_router(health_router, tags=["health"])
    app.include_router(tenant_context_router, tags=["tenant"])
    app.include_router(tenants_router, prefix="/tenants", tags=["tenants"])
    app.include_router(billing_router, prefix="/billing", tags=["billing"])

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app.main:app", host="0.0.0.0", port=settings.port)
