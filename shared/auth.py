import uuid
import os
from fastapi import Depends, HTTPException, Request
from jose import jwt, JWTError

JWT_SECRET = os.getenv("JWT_SECRET", "demo_secret")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")


def decode_jwt_token(token: str):
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError:
        return None


async def get_optional_user(request: Request):
    auth = request.headers.get("Authorization")
    trace_id = request.headers.get("x-trace-id") or str(uuid.uuid4())
    request.state.trace_id = trace_id

    if not auth or not auth.lower().startswith("bearer "):
        return {"id": None, "role": None, "trace_id": trace_id}

    payload = decode_jwt_token(auth.split(" ", 1)[1].strip())
    if not payload:
        return {"id": None, "role": None, "trace_id": trace_id}

    return {
        "id": payload.get("sub"),
        "role": (payload.get("role") or "").lower() or None,
        "trace_id": trace_id
    }


def require_roles(*roles: str):
    """Dependency: a valid bearer token whose role is one of `roles` (any role if none given)."""

    async def dependency(user=Depends(get_optional_user)):
        if not user["id"]:
            raise HTTPException(status_code=401, detail="Missing or invalid bearer token")
        if roles and user["role"] not in roles:
            raise HTTPException(status_code=403, detail=f"Requires role: {', '.join(roles)}")
        return user

    return dependency
