from fastapi import HTTPException, Request
from jose import JWTError, jwt
import os
import logging
import httpx

from core.config import ENVIRONMENT

logger = logging.getLogger("app.auth")

SUPABASE_JWT_SECRET = os.getenv("SUPABASE_JWT_SECRET")
SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_API_KEY = os.getenv("SUPABASE_SERVICE_KEY") or os.getenv("SUPABASE_ANON_KEY") or os.getenv("SUPABASE_KEY")
ALLOW_UNVERIFIED_JWT_DEV = str(os.getenv("ALLOW_UNVERIFIED_JWT_DEV", "false")).strip().lower() in {"1", "true", "yes", "on"}


async def _verify_with_supabase_async(token: str) -> str | None:
    if not SUPABASE_URL or not SUPABASE_API_KEY:
        return None

    url = f"{SUPABASE_URL.rstrip('/')}/auth/v1/user"
    try:
        async with httpx.AsyncClient(timeout=6.0) as client:
            response = await client.get(
                url,
                headers={
                    "Authorization": f"Bearer {token}",
                    "apikey": SUPABASE_API_KEY,
                },
            )
    except httpx.HTTPError as exc:
        logger.warning("supabase token verification failed | err=%s", exc)
        return None

    if response.status_code != 200:
        return None

    try:
        data = response.json()
    except ValueError:
        return None

    user_id = data.get("id") if isinstance(data, dict) else None
    return str(user_id) if user_id else None


async def resolve_user_id_from_token_async(token: str) -> str:
    payload = None
    if SUPABASE_JWT_SECRET:
        try:
            payload = jwt.decode(
                token,
                SUPABASE_JWT_SECRET,
                algorithms=["HS256"],
                options={"verify_aud": False},
            )
        except JWTError:
            raise HTTPException(401, "invalid_token")
    else:
        user_id = await _verify_with_supabase_async(token)
        if user_id:
            payload = {"sub": user_id}
        else:
            if ENVIRONMENT == "production":
                raise HTTPException(500, "auth_not_configured")
            if not ALLOW_UNVERIFIED_JWT_DEV:
                raise HTTPException(401, "unauthorized")
            try:
                payload = jwt.get_unverified_claims(token)
                logger.warning("ALLOW_UNVERIFIED_JWT_DEV enabled; using unverified token claims in non-production mode")
            except JWTError:
                raise HTTPException(401, "invalid_token")

    user_id = (payload or {}).get("sub")
    if not user_id:
        raise HTTPException(401, "invalid_token")
    return str(user_id)


async def get_user_id_async(request: Request) -> str:
    auth = request.headers.get("Authorization")
    if not auth:
        raise HTTPException(401, "unauthorized")

    if not auth.startswith("Bearer "):
        raise HTTPException(401, "unauthorized")

    token = auth.replace("Bearer ", "", 1)
    return await resolve_user_id_from_token_async(token)
