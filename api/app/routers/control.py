import logging

from fastapi import APIRouter, Depends

from ..auth import get_service, require_auth
from ..schemas import ApiResponse, ControlResult

logger = logging.getLogger("backupd.api")

router = APIRouter(prefix="/api", tags=["control"], dependencies=[Depends(require_auth)])


def _control_result(service) -> dict:
    return ControlResult(
        scheduler_running=service.scheduler.is_running(),
        shutdown_state=service.coordinator.state.value,
    ).model_dump()


@router.post("/scheduler/start", response_model=ApiResponse)
def start_scheduler(user=Depends(require_auth), service=Depends(get_service)):
    service.start_scheduler()
    logger.info("Scheduler started from dashboard by %s", user)
    return ApiResponse(data=_control_result(service))


@router.post("/scheduler/stop", response_model=ApiResponse)
def stop_scheduler(user=Depends(require_auth), service=Depends(get_service)):
    service.stop_scheduler()
    logger.info("Scheduler stopped from dashboard by %s", user)
    return ApiResponse(data=_control_result(service))


@router.post("/jobs/{name}/run", response_model=ApiResponse)
def run_job(name: str, user=Depends(require_auth), service=Depends(get_service)):
    logger.info("Job %s triggered from dashboard by %s", name, user)
    run = service.trigger_job(name)
    return ApiResponse(success=run.succeeded, data=run.model_dump(mode="json"), error=run.error)


@router.post("/shutdown", response_model=ApiResponse)
def request_shutdown(user=Depends(require_auth), service=Depends(get_service)):
    logger.warning("Shutdown requested from dashboard by %s", user)
    service.request_shutdown()
    return ApiResponse(data=_control_result(service))


@router.delete("/logs", response_model=ApiResponse)
def clear_logs(user=Depends(require_auth), service=Depends(get_service)):
    service.clear_events()
    logger.info("Recent events cleared from dashboard by %s", user)
    return ApiResponse()
