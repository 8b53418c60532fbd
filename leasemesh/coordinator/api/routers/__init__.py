from api.routers.health import router as health_router
from api.routers.jobs import router as jobs_router
from api.routers.leases import router as lease_router

__all__ = ["health_router", "jobs_router", "lease_router"]
