from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from ..db import get_db
from ..errors import AuthenticationError
from ..models.models import User
from ..schemas.auth import LoginRequest, TokenResponse, MeResponse
from .security import verify_password, create_access_token, get_current_user


router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/login", response_model=TokenResponse)
def login(req: LoginRequest, request: Request, db: Session = Depends(get_db)):
    user = db.query(User).filter(User.username == req.username).first()
    ip = request.client.host if request.client else "unknown"
    audit = request.app.state.security_audit
    if not user or not user.is_active or not verify_password(req.password, user.password_hash):
        audit.log_security_event("login_attempt", "medium", f"Failed login for {req.username}", ip)
        raise AuthenticationError("Invalid credentials")
    audit.log_security_event("login_attempt", "low", f"Login for {user.username}", ip, user_id=user.id)
    return TokenResponse(access_token=create_access_token(user.id, user.role))


@router.get("/me", response_model=MeResponse)
def me(user: User = Depends(get_current_user)):
    return MeResponse(
        id=user.id,
        username=user.username,
        full_name=user.full_name,
        role=user.role,
        technician_id=user.technician_id,
    )
