from __future__ import annotations

from fastapi import APIRouter, Depends

from app.dependencies import require_auth
from app.models.auth import AdminSession, WhoAmIResponse

router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.get("/whoami", response_model=WhoAmIResponse)
def whoami(session: AdminSession = Depends(require_auth)) -> WhoAmIResponse:
    """Identity and role of the signed-in administrator."""
    return WhoAmIResponse(who=session.identity, role=session.role)
