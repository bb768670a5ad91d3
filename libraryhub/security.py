import logging
from datetime import datetime, timedelta
from typing import Optional

import jwt
from werkzeug.security import check_password_hash, generate_password_hash

from libraryhub.config import settings
from libraryhub.errors import UnauthorizedError
from libraryhub.utils import utcnow

logger = logging.getLogger(__name__)


def hash_password(password: str) -> str:
    return generate_password_hash(password)


def verify_password(password_hash: str, password: str) -> bool:
    return check_password_hash(password_hash, password)


def create_access_token(user_id: str, now: Optional[datetime] = None) -> str:
    """Issue a signed bearer token carrying the user id."""
    issued_at = now or utcnow()
    payload = {
        "id": user_id,
        "iat": issued_at,
        "exp": issued_at + timedelta(minutes=settings.jwt_expiration_minutes),
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> str:
    """Return the user id in ``token`` or raise ``UnauthorizedError``."""
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.PyJWTError as e:
        logger.debug(f"Rejected token: {e}")
        raise UnauthorizedError("Invalid token") from e
    user_id = payload.get("id")
    if not user_id:
        raise UnauthorizedError("Invalid token")
    return user_id
