"""
Authentication API routes
"""
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, EmailStr
from sqlalchemy.orm import Session

from app.db import get_db
from app.db.models import User
from app.core import verify_password, create_access_token, get_current_user_id, logger

router = APIRouter()


# Request/Response schemas
class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user_id: str
    role: str
    facility_id: str


class UserResponse(BaseModel):
    user_id: str
    email: str
    full_name: str
    role: str
    facility_id: str
    specialist_certifications: list[str]


@router.post("/login", response_model=TokenResponse)
async def login(request: LoginRequest, db: Session = Depends(get_db)):
    """Authenticate a staff member and return a facility-bound token."""
    user = db.query(User).filter(User.email == request.email).first()

    if not user or not user.is_active or not verify_password(request.password, user.password_hash):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )

    token = create_access_token({
        "sub": str(user.user_id),
        "email": user.email,
        "role": user.role.value,
        "facility_id": str(user.facility_id),
    })

    logger.info(f"User logged in: {user.email}")

    return TokenResponse(
        access_token=token,
        user_id=str(user.user_id),
        role=user.role.value,
        facility_id=str(user.facility_id),
    )


@router.post("/logout")
async def logout():
    """Logout user (client-side token invalidation)."""
    return {"message": "Logged out successfully"}


@router.get("/me", response_model=UserResponse)
async def get_me(user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    """Get the current staff member."""
    try:
        user = db.get(User, UUID(user_id))
    except ValueError:
        user = None
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    return UserResponse(
        user_id=str(user.user_id),
        email=user.email,
        full_name=user.full_name,
        role=user.role.value,
        facility_id=str(user.facility_id),
        specialist_certifications=user.specialist_certifications or [],
    )
