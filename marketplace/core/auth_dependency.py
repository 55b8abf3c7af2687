from dataclasses import dataclass
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import jwt, JWTError
from marketplace.core.config import SECRET_KEY, ALGORITHM, AUTH_TOKEN_URL
from marketplace.db.models.user import UserRole
from marketplace.db.session import SessionLocal

oauth2_scheme = OAuth2PasswordBearer(tokenUrl=AUTH_TOKEN_URL)


@dataclass(frozen=True)
class CurrentUser:
    user_id: int
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


def get_db():
    """Database session dependency."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_current_user(token: str = Depends(oauth2_scheme)) -> CurrentUser:
    """Resolve ``{user_id, role}`` from the bearer token supplied by the auth service."""
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        subject = payload.get("sub")
        role = payload.get("role")

        if subject is None or role not in UserRole.ALL:
            raise HTTPException(status_code=401, detail="Invalid token")

        return CurrentUser(user_id=int(subject), role=role)

    except (JWTError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid token")


def require_roles(*roles: str):
    """
    Dependency factory restricting an endpoint to the given roles.

    Usage:
        user: CurrentUser = Depends(require_roles(UserRole.PROVIDER, UserRole.ADMIN))
    """
    def role_checker(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if user.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"This action requires one of the roles: {', '.join(roles)}"
            )
        return user

    return role_checker
