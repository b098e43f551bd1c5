from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from fastapi import Depends, Header, HTTPException, status
from config import config
import secrets

# Instantiate the HTTP Bearer scheme
bearer_scheme = HTTPBearer()

def get_current_client(credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme)):
    """Validates the Bearer token (one of VALID_TOKENS) for every secured endpoint."""
    token = credentials.credentials
    valid = any(secrets.compare_digest(token, candidate) for candidate in config.valid_tokens)
    if credentials.scheme.lower() != "bearer" or not valid:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing Bearer token.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return token

def get_current_actor(x_user_id: str | None = Header(default=None)) -> str:
    """Who performs an admin action, recorded as created_by and in the audit trail."""
    return x_user_id or "api-client"
