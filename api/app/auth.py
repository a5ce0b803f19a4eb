import secrets

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from engine.app.service import BackupService

security = HTTPBasic(auto_error=False, realm="backupd dashboard")


def get_service(request: Request) -> BackupService:
    return request.app.state.service


def require_auth(
    credentials: HTTPBasicCredentials | None = Depends(security),
    service: BackupService = Depends(get_service),
) -> str:
    web = service.config.web
    if not web.username and not web.password:
        return "anonymous"
    if credentials is None:
        raise HTTPException(status_code=401, detail="Unauthorized", headers={"WWW-Authenticate": "Basic"})
    user_ok = secrets.compare_digest(credentials.username.encode(), web.username.encode())
    password_ok = secrets.compare_digest(credentials.password.encode(), web.password.encode())
    if not (user_ok and password_ok):
        raise HTTPException(status_code=401, detail="Unauthorized", headers={"WWW-Authenticate": "Basic"})
    return credentials.username
