from typing import Annotated, Callable, Generator
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlmodel import Session, select

from tenantbill.core.config import settings
from tenantbill.core.errors import BillingError, GatewayDeclinedError, GatewayError
from tenantbill.db.session import get_session
from tenantbill.models.user import User, UserRole
from tenantbill.services.gateway import GatewayClient
from tenantbill.utils.security import TokenType, decode_token

oauth2_scheme = OAuth2PasswordBearer(tokenUrl=f"{settings.api_v1_str}/auth/login")


def get_db() -> Session:
    yield from get_session()


def get_gateway() -> Generator[GatewayClient, None, None]:
    client = GatewayClient(settings.gateway_config())
    try:
        yield client
    finally:
        client.close()


def get_current_user(
    token: Annotated[str, Depends(oauth2_scheme)],
    session: Annotated[Session, Depends(get_db)],
) -> User:
    try:
        payload = decode_token(token)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from exc

    if payload.get("token_type") != TokenType.ACCESS.value:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    try:
        user_id = UUID(str(payload["sub"]))
    except (KeyError, ValueError, TypeError) as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token subject") from exc

    user = session.exec(select(User).where(User.id == user_id)).first()
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")

    return user


def get_current_active_user(current_user: Annotated[User, Depends(get_current_user)]) -> User:
    if not current_user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User inactive")
    return current_user


def require_roles(*roles: UserRole, owner_passes: bool = True) -> Callable[[User], User]:
    allowed = {role.value for role in roles}

    def dependency(current_user: Annotated[User, Depends(get_current_active_user)]) -> User:
        if owner_passes and current_user.profile == UserRole.OWNER.value:
            return current_user
        if current_user.profile not in allowed:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
        return current_user

    return dependency


def http_error(exc: BillingError) -> HTTPException:
    """Stable error body for a domain error; gateway payloads stay in the logs."""
    message = exc.message
    if isinstance(exc, GatewayDeclinedError):
        message = "The payment was declined."
    elif isinstance(exc, GatewayError):
        message = "The payment provider could not complete the request."
    return HTTPException(status_code=exc.status_code, detail={"code": exc.code, "message": message})
