"""
Bearer token authentication and actor resolution for routes
"""
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
import jwt
import logging
import uuid

from config import get_db, JWT_SECRET_KEY, JWT_ALGORITHM
from models import User, UserRole
from services.actors import Actor, resolve_actor

logger = logging.getLogger(__name__)

security = HTTPBearer()


def verify_token(token: str) -> dict:
    """
    Verify a JWT locally and return its claims.
    The role is read from user_metadata.role, then from a top level role claim.
    """
    try:
        payload = jwt.decode(
            token,
            JWT_SECRET_KEY,
            algorithms=[JWT_ALGORITHM],
            options={
                "verify_exp": True,
                "verify_iat": True,
                "verify_signature": True,
                "verify_aud": False
            }
        )
    except jwt.ExpiredSignatureError:
        logger.warning("JWT token expired")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token expired"
        )
    except jwt.InvalidTokenError as e:
        logger.warning(f"Invalid JWT token: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token"
        )

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: missing user ID"
        )
    try:
        user_uuid = uuid.UUID(str(user_id))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: malformed user ID"
        )

    user_metadata = payload.get("user_metadata") or {}
    return {
        "user_id": user_uuid,
        "email": payload.get("email"),
        "role": user_metadata.get("role") or payload.get("user_role"),
    }


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db)
):
    """Get current user from JWT token"""
    current_user = verify_token(credentials.credentials)

    if current_user["role"] not in {role.value for role in UserRole}:
        # Fallback: Get role from database
        result = await db.execute(select(User.role).where(User.id == current_user["user_id"]))
        stored_role = result.scalar_one_or_none()
        if stored_role is None:
            logger.warning(f"No account found for {current_user['user_id']}")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Account not found"
            )
        current_user["role"] = stored_role

    request.state.current_user = current_user
    return current_user


async def get_current_actor(
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
) -> Actor:
    return await resolve_actor(db, current_user["user_id"], current_user["role"])
