from fastapi import Header, HTTPException
from jose import jwt

from coachpay import config


def current_user(authorization: str = Header(None)) -> dict:
    """Resolve the caller from a bearer JWT issued by the auth provider."""
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("Unsupported authorization scheme")
        claims = jwt.decode(
            token,
            config.jwt_secret(),
            algorithms=["HS256"],
            options={"verify_aud": False},
        )
        user_id = claims["sub"]
    except Exception:
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    return {"user_id": user_id, "email": claims.get("email")}
