import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from field_sync_core.issues_api import router as issues_router
from field_sync_core.lookups import router as lookups_router
from field_sync_core.categories_admin import router as categories_admin_router
from field_sync_core.ticket_numbers import AllocatorUnavailable

logger = logging.getLogger(__name__)

app = FastAPI(title="Field Issue Sync API")
app.include_router(lookups_router)
app.include_router(issues_router)
app.include_router(categories_admin_router)

@app.exception_handler(AllocatorUnavailable)
async def allocator_unavailable(request: Request, exc: AllocatorUnavailable):
    # nothing was committed; the client retries with the same idempotency key
    logger.warning("Allocator unavailable for %s: %s", request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": "Ticket allocator unavailable"})

@app.get("/health")
async def health():
    return {"ok": True}
