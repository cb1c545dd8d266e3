"""
Health & Operations Router

Endpoints:
- /healthz              liveness (is the process running?)
- /readyz               readiness: database, storage providers, ledger, queue
- /api/storage/queue    retry queue status
- /api/storage/queue/drain   one drain pass now (admin)
"""

import time
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from credchain import __version__
from credchain.core.errors import UnauthorizedError
from credchain.core.identity import Actor, get_actor
from credchain.routers.documents import get_custody
from credchain.services.custody import DocumentCustodyService


router = APIRouter()

# Track startup time for uptime calculation
_start_time = time.time()


@router.get("/healthz")
async def health_check():
    """Liveness probe. Returns 200 while the process is alive."""
    return {
        "status": "ok",
        "version": __version__,
        "uptime_seconds": round(time.time() - _start_time, 1),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/readyz")
async def readiness_check(custody: DocumentCustodyService = Depends(get_custody)):
    """
    Readiness probe.

    503 unless the database answers and at least one store (remote or
    local) is available. The ledger is reported but not required:
    verification degrades to an "unknown" ledger check without it.
    """
    start = time.perf_counter()
    report = await custody.health()
    report["check_duration_ms"] = round((time.perf_counter() - start) * 1000, 2)
    report["timestamp"] = datetime.now(timezone.utc).isoformat()
    status_code = 200 if report["status"] == "ready" else 503
    return JSONResponse(status_code=status_code, content=report)


@router.get("/api/storage/queue")
async def queue_status(custody: DocumentCustodyService = Depends(get_custody)):
    return custody.queue_status()


@router.post("/api/storage/queue/drain")
async def drain_queue(
    actor: Actor = Depends(get_actor),
    custody: DocumentCustodyService = Depends(get_custody),
):
    if not actor.is_admin:
        raise UnauthorizedError("Only administrators may drain the queue")
    report = await custody.drain_queue()
    return report.to_dict()
