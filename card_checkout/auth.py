from fastapi import Header, HTTPException
from jose import jwt, JWTError

from card_checkout.config import settings


def verify_token(authorization: str = Header(...)):
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("unsupported scheme")
        return jwt.decode(token, settings.jwt_secret, algorithms=["HS256"])
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")
