from fastapi import Depends, HTTPException, status, Request
from jose import jwt, JWTError

from trustgate.config import JWT_SECRET, JWT_ALGORITHM


def _extract_bearer_token(request: Request) -> str | None:
    auth = request.headers.get("Authorization")
    if auth and auth.startswith("Bearer "):
        return auth.split(" ", 1)[1]
    return None


# Dependency to extract full JWT claims
def get_current_claims(request: Request) -> dict:
    token = _extract_bearer_token(request)
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing or invalid token.")
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token.")


def get_current_user_id(claims: dict = Depends(get_current_claims)) -> str:
    user_id = claims.get("sub")
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token has no subject.")
    return str(user_id)


# Service callers carry "roles" (a list); end-user tokens carry a single "role"
def claim_roles(claims: dict) -> set:
    roles = claims.get("roles")
    if isinstance(roles, (list, tuple)):
        return {str(r) for r in roles}
    return {str(claims.get("role", "user"))}


# Dependency to require specific roles; returns claims for downstream usage
def require_roles(*roles: str):
    def dependency(claims: dict = Depends(get_current_claims)):
        if not claim_roles(claims) & set(roles):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions.")
        return claims
    return dependency
