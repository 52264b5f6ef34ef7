import hmac

from fastapi import Depends, HTTPException, Request, status

from jobsync.core.config import Settings, get_settings


async def require_control_key(request: Request, settings: Settings = Depends(get_settings)) -> None:
    if not settings.control_api_key:
        return
    presented = request.headers.get(settings.api_key_header)
    if not presented:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"control api requires {settings.api_key_header}",
        )
    if not hmac.compare_digest(presented.encode("utf-8"), settings.control_api_key.encode("utf-8")):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid control api key")
