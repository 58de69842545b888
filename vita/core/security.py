import base64
import hashlib
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from cryptography.fernet import Fernet, InvalidToken
from jose import JWTError, jwt
from passlib.context import CryptContext

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-change-me")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))

# Derived from SECRET_KEY: rotating it makes every stored provider key unreadable.
_provider_key_cipher = Fernet(base64.urlsafe_b64encode(hashlib.sha256(SECRET_KEY.encode("utf-8")).digest()))


@dataclass(frozen=True)
class AccessTokenClaims:
    user_id: int
    email: str


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def create_access_token(user_id: int, email: str, expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    claims: dict[str, Any] = {"sub": str(user_id), "email": email, "exp": expire}
    return jwt.encode(claims, SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str) -> AccessTokenClaims:
    """Validate signature and expiry and return the identity the token was issued for.

    Raises ``JWTError`` for any token that is not a well-formed VITA access token.
    """
    payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    subject = str(payload.get("sub") or "")
    email = payload.get("email")
    if not subject.isdigit() or not isinstance(email, str):
        raise JWTError("Malformed access token claims")
    return AccessTokenClaims(user_id=int(subject), email=email)


def encrypt_provider_key(api_key: str) -> str:
    return _provider_key_cipher.encrypt(api_key.encode("utf-8")).decode("utf-8")


def decrypt_provider_key(encrypted_api_key: str) -> str:
    try:
        return _provider_key_cipher.decrypt(encrypted_api_key.encode("utf-8")).decode("utf-8")
    except InvalidToken as exc:
        raise ValueError("Stored AI provider key cannot be decrypted") from exc


def mask_provider_key(api_key: str) -> str:
    if len(api_key) <= 8:
        return "*" * len(api_key)
    return f"{api_key[:4]}...{api_key[-4:]}"
