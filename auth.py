import secrets

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from config import Settings, get_settings

security = HTTPBasic()


def get_current_user(credentials: HTTPBasicCredentials = Depends(security),
                     settings: Settings = Depends(get_settings)) -> str:
    """Dependency guarding admin routes with HTTP basic credentials from settings"""
    user_ok = secrets.compare_digest(credentials.username.encode(), settings.admin_user.encode())
    pass_ok = secrets.compare_digest(credentials.password.encode(), settings.admin_pass.encode())
    if not (user_ok and pass_ok):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": 'Basic realm="Admin"'},
        )
    return credentials.username
