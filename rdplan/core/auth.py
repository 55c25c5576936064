"""Request identity extraction and permission guard utilities."""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from rdplan.core.config import get_settings
from rdplan.db.dependencies import get_db_session
from rdplan.models.entities import Permission, Project, User

FINANCE_PERMISSIONS = {Permission.ADMIN, Permission.MANAGER}


@dataclass(frozen=True)
class RequestUserContext:
    """Authenticated request actor resolved from headers and DB state."""

    user_id: UUID
    email: str
    name: str
    permission: Permission

    @property
    def is_manager(self) -> bool:
        """Whether the user may see every project's finances."""

        return self.permission in FINANCE_PERMISSIONS


def _resolve_identity(x_user_email: str | None, x_user_name: str | None) -> tuple[str, str, Permission]:
    settings = get_settings()
    if x_user_email:
        email = x_user_email.strip().lower()
        return email, (x_user_name or email).strip(), Permission.COMMON

    if settings.auth_allow_dev_principal:
        return settings.auth_dev_email.strip().lower(), settings.auth_dev_name.strip(), Permission.ADMIN

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Missing identity header. Expected X-User-Email or enable development principal fallback.",
    )


def _get_or_create_user(db: Session, *, email: str, name: str, permission: Permission) -> User:
    user = db.scalar(select(User).where(User.email == email))
    if user is not None:
        return user

    user = User(email=email, name=name or email, permission=permission)
    db.add(user)
    db.flush()
    return user


def ensure_user_principal(
    db: Session,
    *,
    email: str,
    name: str,
    permission: Permission = Permission.COMMON,
) -> User:
    """Ensure user exists and return persisted row.

    Utility exported for tests and seed helpers.
    """

    normalized_email = email.strip().lower()
    user = _get_or_create_user(db, email=normalized_email, name=name.strip(), permission=permission)
    db.commit()
    db.refresh(user)
    return user


def get_current_user_context(
    x_user_email: str | None = Header(default=None, alias="X-User-Email"),
    x_user_name: str | None = Header(default=None, alias="X-User-Name"),
    db: Session = Depends(get_db_session),
) -> RequestUserContext:
    """Resolve the current request user from trusted proxy headers."""

    email, name, permission = _resolve_identity(x_user_email, x_user_name)
    user = _get_or_create_user(db, email=email, name=name, permission=permission)
    if not user.active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User is inactive.")
    db.commit()

    return RequestUserContext(
        user_id=user.id,
        email=user.email,
        name=user.name,
        permission=user.permission,
    )


def has_permission(context: RequestUserContext, allowed: set[Permission]) -> bool:
    return context.permission in allowed


def ensure_project_finance_access(context: RequestUserContext, project: Project) -> None:
    """Managers see every project; other users only the projects they are responsible for."""

    if context.is_manager or project.responsible_id == context.user_id:
        return
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Insufficient permissions for this project's finances.",
    )


def require_permissions(*permissions: Permission):
    """Dependency factory requiring at least one provided permission level."""

    allowed = set(permissions)

    def dependency(context: RequestUserContext = Depends(get_current_user_context)) -> RequestUserContext:
        if not has_permission(context, allowed):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions for this operation.",
            )
        return context

    return dependency
