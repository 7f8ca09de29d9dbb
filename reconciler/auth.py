from fastapi import Header, HTTPException
from jose import JWTError, jwt

from reconciler.config import get_settings


def verify_token(authorization: str | None = Header(None)):
    secret = get_settings().jwt_secret
    if not secret:
        return None
    try:
        scheme, token = (authorization or "").split()
        if scheme.lower() != "bearer":
            raise ValueError("unsupported scheme")
        return jwt.decode(token, secret, algorithms=["HS256"])
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")
