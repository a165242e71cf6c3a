"""FastAPI dependency injection: auth guards and organization scoping."""
import os
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from tender_app.db import get_db
from tender_app.models.orm_models import User, Project
from tender_app.services.errors import TakingOffError

SECRET_KEY = os.getenv("JWT_SECRET_KEY", "changethis_use_a_real_secret_in_production_64chars")
ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

security = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> User:
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        payload = jwt.decode(credentials.credentials, SECRET_KEY, algorithms=[ALGORITHM])
        user_id: str = payload.get("sub")
        if not user_id:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    except JWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if not user or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found or inactive")
    return user


async def require_admin(current_user: User = Depends(get_current_user)) -> User:
    """Require the admin flag. Returns 403 for any other authenticated user."""
    if not current_user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return current_user


def get_organization_id(user: User = Depends(get_current_user)) -> str:
    if not user.organization_id:
        raise HTTPException(status_code=400, detail="User has no organization assigned")
    return str(user.organization_id)


async def load_project_for_org(db: AsyncSession, project_id: str, organization_id: str) -> Project:
    """404 when the project does not exist, 403 when it belongs to another organization."""
    result = await db.execute(select(Project).where(Project.id == project_id))
    project = result.scalar_one_or_none()
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")
    if str(project.organization_id) != str(organization_id):
        raise HTTPException(status_code=403, detail="Unauthorized")
    return project


def http_error(err: TakingOffError) -> HTTPException:
    """Translate a core error into the matching HTTP response."""
    return HTTPException(status_code=err.status_code, detail=err.to_dict())
