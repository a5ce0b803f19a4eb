from fastapi import APIRouter, Depends, Query

from engine.app.logging_config import read_log_lines

from ..auth import get_service, require_auth
from ..schemas import ApiResponse

router = APIRouter(prefix="/api", tags=["status"], dependencies=[Depends(require_auth)])


@router.get("/status", response_model=ApiResponse)
def read_status(service=Depends(get_service)):
    return ApiResponse(data=service.status().to_dict())


@router.get("/history", response_model=ApiResponse)
def read_history(limit: int = Query(50, ge=1, le=1000), service=Depends(get_service)):
    return ApiResponse(data=[run.model_dump(mode="json") for run in service.history(limit)])


@router.get("/history/ledger", response_model=ApiResponse)
def read_ledger(limit: int = Query(50, ge=1, le=1000), service=Depends(get_service)):
    """Finished runs as persisted, including those from before the last restart."""
    if service.ledger is None:
        return ApiResponse(data=[])
    return ApiResponse(data=service.ledger.recent_runs(limit))


@router.get("/scheduler", response_model=ApiResponse)
def read_scheduler(service=Depends(get_service)):
    snapshot = service.status()
    next_run = snapshot.next_run
    return ApiResponse(
        data={
            "running": snapshot.scheduler_running,
            "shutdown_state": snapshot.shutdown_state,
            "next_run": next_run.isoformat() if next_run else None,
            "in_flight": sorted(name for name, job in snapshot.jobs.items() if job.running),
            "jobs": {
                name: {
                    "schedule": job.schedule,
                    "next_due": job.next_due.isoformat() if job.next_due else None,
                    "running": job.running,
                }
                for name, job in snapshot.jobs.items()
            },
        }
    )


@router.get("/logs", response_model=ApiResponse)
def read_logs(limit: int = Query(100, ge=1, le=1000), service=Depends(get_service)):
    return ApiResponse(data=[event.model_dump(mode="json") for event in service.recent_events(limit)])


@router.get("/logs/file", response_model=ApiResponse)
def read_log_file(lines: int = Query(200, ge=1, le=5000)):
    return ApiResponse(data=[line.rstrip("\n") for line in read_log_lines(lines)])
