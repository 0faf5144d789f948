import logging

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from database import get_session
from errors import TransientError, ValidationFailed
from models import User, UserRole
from services.access import ROLE_CAPABILITIES
from services.auth import (
    authenticate_user,
    create_access_token,
    get_current_user,
    hash_password,
    require_roles,
    user_payload,
)

router = APIRouter(prefix="/auth", tags=["auth"])
logger = logging.getLogger("medflow.auth")


class LoginRequest(BaseModel):
    email: str = Field(min_length=3, max_length=254)
    password: str = Field(min_length=1, max_length=256)


class RegisterRequest(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    email: str = Field(min_length=3, max_length=254)
    password: str = Field(min_length=8, max_length=256)
    role: UserRole
    department: str = Field(default="", max_length=80)


@router.post("/register", status_code=201)
def register(
    body: RegisterRequest,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_roles(UserRole.ADMIN)),
):
    name = body.name.strip()
    email = body.email.strip().lower()
    if not name:
        raise ValidationFailed("Name cannot be empty")
    if not email:
        raise ValidationFailed("Email cannot be empty")

    existing = session.exec(select(User).where(User.email == email)).first()
    if existing:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already registered")

    user = User(
        name=name,
        email=email,
        password_hash=hash_password(body.password),
        role=body.role,
        department=body.department.strip(),
    )
    session.add(user)
    try:
        session.commit()
        session.refresh(user)
    except SQLAlchemyError as exc:
        session.rollback()
        raise TransientError("Failed to register user") from exc

    logger.info("[AUTH] %s registered %s as %s", current_user.email, user.email, user.role.value)
    return user_payload(user)


@router.post("/login")
def login(body: LoginRequest, session: Session = Depends(get_session)):
    email = body.email.strip().lower()
    if not email:
        raise ValidationFailed("Email cannot be empty")

    user = authenticate_user(email, body.password, session)
    if not user:
        logger.warning("[AUTH] Failed login for %s", email)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")

    return {
        "access_token": create_access_token(user),
        "token_type": "bearer",
        "user": user_payload(user),
    }


@router.get("/me")
def me(current_user: User = Depends(get_current_user)):
    return user_payload(current_user)


@router.get("/capabilities")
def role_capabilities(_current_user: User = Depends(get_current_user)):
    """Role to capability map, so clients can hide actions the gate would refuse."""
    return {
        role.value: sorted(capability.value for capability in capabilities)
        for role, capabilities in ROLE_CAPABILITIES.items()
    }
