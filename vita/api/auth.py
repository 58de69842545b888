from enum import Enum
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from jose import JWTError
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.orm import Session

from vita.core.context_builder import Identity
from vita.core.security import (
    create_access_token,
    decode_access_token,
    encrypt_provider_key,
    get_password_hash,
    mask_provider_key,
    verify_password,
)
from vita.db.models import User, UserAIConfig
from vita.db.session import get_db

router = APIRouter(prefix="/auth", tags=["auth"])
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


class AIProvider(str, Enum):
    openai = "openai"
    gemini = "gemini"


class AIConfigInput(BaseModel):
    ai_provider: AIProvider
    ai_model: str = Field(min_length=1, max_length=128)
    ai_api_key: str = Field(min_length=8, max_length=512)


class SignupRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8, max_length=128)
    full_name: Optional[str] = Field(default=None, max_length=120)
    ai_config: Optional[AIConfigInput] = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class WhoAmIResponse(BaseModel):
    id: int
    display_name: str
    email: str


class AIConfigResponse(BaseModel):
    ai_provider: AIProvider
    ai_model: str
    api_key_masked: str
    configured: bool = True


def _bad_credentials() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )


def _upsert_ai_config(db: Session, user_id: int, ai: AIConfigInput) -> UserAIConfig:
    existing = db.query(UserAIConfig).filter(UserAIConfig.user_id == user_id).first()
    encrypted = encrypt_provider_key(ai.ai_api_key)
    if existing:
        existing.ai_provider = ai.ai_provider.value
        existing.ai_model = ai.ai_model.strip()
        existing.encrypted_api_key = encrypted
        return existing

    created = UserAIConfig(
        user_id=user_id,
        ai_provider=ai.ai_provider.value,
        ai_model=ai.ai_model.strip(),
        encrypted_api_key=encrypted,
    )
    db.add(created)
    return created


def get_current_user(
    token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)
) -> User:
    try:
        claims = decode_access_token(token)
    except JWTError:
        raise _bad_credentials()

    user = db.query(User).filter(User.id == claims.user_id).first()
    # A token minted for a since-changed email no longer identifies this account.
    if not user or user.email != claims.email:
        raise _bad_credentials()
    return user


def identity_for(user: User) -> Identity:
    return Identity(id=user.id, display_name=(user.full_name or "").strip(), email=user.email)


@router.post("/signup", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
def signup(payload: SignupRequest, db: Session = Depends(get_db)) -> TokenResponse:
    existing = db.query(User).filter(User.email == payload.email.lower()).first()
    if existing:
        raise HTTPException(status_code=409, detail="Email already registered")

    user = User(
        email=payload.email.lower(),
        full_name=(payload.full_name or "").strip() or None,
        password_hash=get_password_hash(payload.password),
    )
    db.add(user)
    db.flush()

    if payload.ai_config:
        _upsert_ai_config(db, user.id, payload.ai_config)

    db.commit()
    return TokenResponse(access_token=create_access_token(user.id, user.email))


@router.post("/login", response_model=TokenResponse)
def login(form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)) -> TokenResponse:
    user = db.query(User).filter(User.email == form_data.username.lower()).first()
    if not user or not verify_password(form_data.password, user.password_hash):
        raise _bad_credentials()
    return TokenResponse(access_token=create_access_token(user.id, user.email))


@router.get("/me", response_model=WhoAmIResponse)
def whoami(user: User = Depends(get_current_user)) -> WhoAmIResponse:
    identity = identity_for(user)
    return WhoAmIResponse(id=identity.id, display_name=identity.display_name, email=identity.email)


@router.put("/ai-config", response_model=AIConfigResponse)
def set_ai_config(
    payload: AIConfigInput,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> AIConfigResponse:
    cfg = _upsert_ai_config(db, user.id, payload)
    db.commit()
    return AIConfigResponse(
        ai_provider=AIProvider(cfg.ai_provider),
        ai_model=cfg.ai_model,
        api_key_masked=mask_provider_key(payload.ai_api_key),
    )


@router.get("/ai-config", response_model=AIConfigResponse)
def get_ai_config(
    user: User = Depends(get_current_user), db: Session = Depends(get_db)
) -> AIConfigResponse:
    cfg = db.query(UserAIConfig).filter(UserAIConfig.user_id == user.id).first()
    if not cfg:
        raise HTTPException(status_code=404, detail="AI config not found")

    # The stored key is never echoed back, masked or not.
    return AIConfigResponse(
        ai_provider=AIProvider(cfg.ai_provider),
        ai_model=cfg.ai_model,
        api_key_masked="****...****",
    )


@router.delete("/ai-config", status_code=status.HTTP_204_NO_CONTENT)
def revoke_ai_config(user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> None:
    cfg = db.query(UserAIConfig).filter(UserAIConfig.user_id == user.id).first()
    if not cfg:
        raise HTTPException(status_code=404, detail="AI config not found")
    db.delete(cfg)
    db.commit()
