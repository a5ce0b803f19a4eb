from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from engine.app.errors import JobAlreadyRunning, ShutdownInProgress, UnknownJobError
from engine.app.service import BackupService

from .routers import control, events, status


def create_app(service: BackupService, allow_origins=None) -> FastAPI:
    app = FastAPI(title="backupd dashboard API")
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins or [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health():
        return {"status": "ok", "shutdown_state": service.coordinator.state.value}

    @app.exception_handler(UnknownJobError)
    async def unknown_job(request, exc: UnknownJobError):
        return JSONResponse(status_code=404, content={"success": False, "error": str(exc)})

    @app.exception_handler(JobAlreadyRunning)
    async def job_running(request, exc: JobAlreadyRunning):
        return JSONResponse(status_code=409, content={"success": False, "error": str(exc)})

    @app.exception_handler(ShutdownInProgress)
    async def shutting_down(request, exc: ShutdownInProgress):
        return JSONResponse(status_code=409, content={"success": False, "error": str(exc)})

    app.include_router(status.router)
    app.include_router(control.router)
    app.include_router(events.router)

    @app.middleware("http")
    async def add_security_headers(request, call_next):
        response: Response = await call_next(request)
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "same-origin"
        response.headers["Content-Security-Policy"] = "default-src 'self'; img-src 'self' data:;"
        if request.url.scheme == "https":
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response

    return app
