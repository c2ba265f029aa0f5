from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.utils.security import decode_access_token

# Security scheme
security = HTTPBearer()


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> dict:
    """
    Get current authenticated user from JWT token
    Returns user data with owner_id and role
    """
    token = credentials.credentials
    
    payload = decode_access_token(token)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    
    user_id = payload.get("sub")
    role = payload.get("role")
    parent_user_id = payload.get("parent_user_id")
    
    if user_id is None or role is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )
    
    # Child accounts work inside their master account's scope
    owner_id = parent_user_id if parent_user_id is not None else user_id
    
    return {
        "user_id": int(user_id),
        "owner_id": int(owner_id),
        "role": role,
        "username": payload.get("username"),
    }


def require_role(*allowed_roles: str):
    """
    Dependency to check if user has required role
    Usage: Depends(require_role("MASTER", "ADMIN"))
    """
    def role_checker(current_user: dict = Depends(get_current_user)) -> dict:
        if current_user["role"] not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. Required role: {', '.join(allowed_roles)}"
            )
        return current_user
    return role_checker


def get_owner_context(
    current_user: dict = Depends(get_current_user)
) -> int:
    """
    Get owner_id (master account) from current user
    Useful for filtering queries by tenant
    """
    return current_user["owner_id"]
