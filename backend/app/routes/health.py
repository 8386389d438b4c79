from fastapi import APIRouter, Depends

from app.core.container import Container
from app.core.database import ping
from app.core.deps import get_container

router = APIRouter()


@router.get("/health")
def health(container: Container = Depends(get_container)):
    database = "up" if ping(container.engine) else "down"
    return {
        "status": "ok" if database == "up" else "degraded",
        "database": database,
        "scheduler": container.scheduler.running,
        "tenant_databases": len(container.databases),
        "tenant_storages": len(container.storages),
    }
