from typing import Dict, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from .config import ALGORITHM, SECRET_KEY

# Security scheme for Bearer token
security = HTTPBearer()
optional_security = HTTPBearer(auto_error=False)


def decode_token(token: str) -> Dict:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise credentials_exception

    subject = payload.get("sub")
    try:
        customer_id = int(subject)
    except (TypeError, ValueError):
        raise credentials_exception

    return {
        "id": customer_id,
        "email": payload.get("email"),
        "username": payload.get("username"),
        "is_admin": bool(payload.get("is_admin", False)),
    }


def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> Dict:
    return decode_token(credentials.credentials)


def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(optional_security),
) -> Optional[Dict]:
    """Current user for routes guests may also call.

    A missing token means guest; a bad token is still rejected.
    """
    if credentials is None:
        return None
    return decode_token(credentials.credentials)


def get_current_admin(current_user: Dict = Depends(get_current_user)) -> Dict:
    if not current_user.get("is_admin", False):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not enough permissions. Admin access required.",
        )
    return current_user
