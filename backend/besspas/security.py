from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import jwt, JWTError
from passlib.context import CryptContext

from . import config, models

SECRET_KEY = config.SECRET_KEY
ALGORITHM = config.JWT_ALGORITHM
ACCESS_TOKEN_EXPIRE_MINUTES = config.ACCESS_TOKEN_EXPIRE_MINUTES

# Use a PBKDF2-based scheme to avoid optional bcrypt native backend issues in some containers.
pwd_context = CryptContext(schemes=['pbkdf2_sha256'], deprecated='auto')


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def create_access_token(subject: str, role: str, expires_delta: Optional[timedelta] = None) -> str:
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode = {"sub": subject, "role": role, "exp": int(expire.timestamp())}
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> dict:
    """Raises JWTError on a bad signature or an expired token."""
    return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])


@dataclass(frozen=True)
class Actor:
    """Caller identity resolved once per request and handed to the domain layer."""
    user_id: int
    role: str
    name: str
    location: Optional[str] = None

    @classmethod
    def from_user(cls, user: models.User) -> 'Actor':
        return cls(user_id=user.id, role=user.role, name=user.public_name, location=user.location)

    def has_role(self, *roles: str) -> bool:
        return self.role in roles

    @property
    def is_admin(self) -> bool:
        return self.role == models.ROLE_ADMIN


__all__ = [
    'Actor',
    'JWTError',
    'create_access_token',
    'decode_token',
    'get_password_hash',
    'verify_password',
]
