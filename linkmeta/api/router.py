from fastapi import APIRouter

from linkmeta.api.routes import health, links, queue

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(queue.router, prefix="/queue", tags=["queue"])
api_router.include_router(links.router, prefix="/links", tags=["links"])
