from fastapi import Depends, HTTPException, status, Request, Header
from typing import Optional
from proctorexam.models.user_model import User, UserRole
from .security import current_active_user


def current_user_has_role(required_role: UserRole):
    async def current_user_contains_role(user: User = Depends(current_active_user)):
        if user.role != required_role:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Operation not permitted",
            )
        return user
    return current_user_contains_role


current_admin = current_user_has_role(UserRole.ADMIN)
current_student = current_user_has_role(UserRole.STUDENT)


async def users_router_permission(request: Request, user: User = Depends(current_active_user)):
    method = request.method.upper()
    # Admin-only methods
    if method in ("POST", "PUT", "PATCH", "DELETE"):
        if user.role != UserRole.ADMIN:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Operation not permitted")
    return True


class ClientBinding:
    """IP address and browser fingerprint presented with an attempt request."""

    def __init__(self, ip_address: str, fingerprint: Optional[str], user_agent: Optional[str] = None):
        self.ip_address = ip_address
        self.fingerprint = fingerprint
        self.user_agent = user_agent


async def client_binding(
    request: Request,
    x_browser_fingerprint: Optional[str] = Header(None),
    user_agent: Optional[str] = Header(None),
) -> ClientBinding:
    # behind a proxy the first X-Forwarded-For hop is the client
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        ip = forwarded.split(",")[0].strip()
    else:
        ip = request.client.host if request.client else "unknown"
    return ClientBinding(ip_address=ip, fingerprint=x_browser_fingerprint, user_agent=user_agent)
