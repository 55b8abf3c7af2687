import logging
from datetime import timedelta
from jose import jwt
from marketplace.core.config import SECRET_KEY, ALGORITHM
from marketplace.core.clock import utcnow

logger = logging.getLogger(__name__)


def create_access_token(data: dict, expires_delta: timedelta = None):
    """
    Sign a bearer token. Sessions are issued by the auth service; this helper
    exists for tooling and tests that need to act as a given user.

    Expected claims: ``sub`` (user id) and ``role``.
    """
    to_encode = data.copy()
    to_encode["sub"] = str(to_encode["sub"])
    expire = utcnow() + (expires_delta or timedelta(minutes=60))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)
