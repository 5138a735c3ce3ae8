import re
import time
from typing import Iterable, NamedTuple, Optional

import jwt
from fastapi import Request
from passlib.context import CryptContext

from .config import get_settings
from .errors import Forbidden, Unauthorized
from .models import STAFF_ROLES

# Use pbkdf2_sha256 as default to avoid bcrypt 72-byte limitation in some envs
pwd_context = CryptContext(schemes=["pbkdf2_sha256", "bcrypt"], deprecated="auto")

ALGORITHM = "HS256"

_DURATION_UNITS = {"s": 1, "m": 60, "h": 60 * 60, "d": 60 * 60 * 24, "w": 60 * 60 * 24 * 7}
_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhdw]?)\s*$")


class Principal(NamedTuple):
    id: int
    email: str
    role: str

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES


def parse_duration(value: str) -> int:
    """Turn ``"7d"``, ``"12h"``, ``"30m"``, ``"45s"`` or ``"3600"`` into seconds."""
    match = _DURATION_RE.match(str(value))
    if not match:
        raise ValueError(f"invalid duration: {value!r}")
    amount, unit = match.groups()
    return int(amount) * _DURATION_UNITS[unit or "s"]


def create_access_token(user_id: int, email: str, role: str, expires_delta: Optional[int] = None) -> str:
    settings = get_settings()
    now = int(time.time())
    exp = now + (expires_delta if expires_delta is not None else parse_duration(settings.jwt_expires_in))
    payload = {"sub": str(user_id), "id": user_id, "email": email, "role": role, "iat": now, "exp": exp}
    return jwt.encode(payload, settings.jwt_secret, algorithm=ALGORITHM)


def decode_access_token(token: str) -> dict:
    try:
        return jwt.decode(token, get_settings().jwt_secret, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError as e:
        raise Unauthorized("Token expired") from e
    except jwt.PyJWTError as e:
        raise Unauthorized("Invalid token") from e


def principal_from_token(token: str) -> Principal:
    claims = decode_access_token(token)
    try:
        return Principal(id=int(claims["id"]), email=str(claims.get("email") or ""), role=str(claims["role"]))
    except (KeyError, TypeError, ValueError) as e:
        raise Unauthorized("Invalid token") from e


def bearer_token(header: Optional[str]) -> Optional[str]:
    parts = (header or "").split(None, 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1].strip() or None


def get_current_principal(request: Request) -> Principal:
    token = bearer_token(request.headers.get("authorization"))
    if token is None:
        raise Unauthorized()
    return principal_from_token(token)


def ensure_role(principal: Principal, roles: Iterable[str]) -> Principal:
    if principal.role not in set(roles):
        raise Forbidden("Insufficient role")
    return principal


def require_roles(*roles: str):
    """Dependency factory: the authenticated principal must hold one of ``roles``."""
    allowed = frozenset(roles)

    def dependency(request: Request) -> Principal:
        return ensure_role(get_current_principal(request), allowed)

    return dependency


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    return pwd_context.verify(plain, hashed)
