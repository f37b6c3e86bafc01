"""Access token verification for authenticated routes."""
import os
import logging
from typing import Optional
import jwt
from dotenv import load_dotenv
from fastapi import HTTPException, Request, Security
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

logger = logging.getLogger(__name__)

load_dotenv()

ACCESS_TOKEN_SECRET = os.getenv("ACCESS_TOKEN_SECRET")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
if not ACCESS_TOKEN_SECRET:
    logger.warning("ACCESS_TOKEN_SECRET not set. Every authenticated request will be rejected.")

# auto_error is off so the accessToken cookie can be used instead of the header
security = HTTPBearer(auto_error=False)


def decode_access_token(token: str) -> str:
    """Verifies a token and returns the user id it was issued for."""
    if not ACCESS_TOKEN_SECRET:
        raise HTTPException(status_code=401, detail="Invalid access token")
    try:
        payload = jwt.decode(token, ACCESS_TOKEN_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Access token expired")
    except jwt.PyJWTError as e:
        logger.warning(f"Rejected access token: {e}")
        raise HTTPException(status_code=401, detail="Invalid access token")

    user_id = payload.get("_id") or payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid access token")
    return str(user_id)


async def get_current_user_id(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Security(security),
) -> str:
    """Dependency resolving the caller's user id from the accessToken cookie or a Bearer header."""
    token = request.cookies.get("accessToken")
    if not token and credentials is not None:
        token = credentials.credentials
    if not token:
        raise HTTPException(status_code=401, detail="Unauthorized request")
    return decode_access_token(token)
