import logging
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter
from fastapi.responses import PlainTextResponse, RedirectResponse, Response

from backend.api.deps import ServicesDep

logger = logging.getLogger("smartcharge.api.oauth")
router = APIRouter(tags=["oauth"])


@router.get("/callback")
async def oauth_callback(
    services: ServicesDep,
    code: Optional[str] = None,
    state: Optional[str] = None,
) -> Response:
    """Bounce Tesla's OAuth redirect into the mobile app's URL scheme."""
    if not code:
        return PlainTextResponse("Authorization code is missing.", status_code=400)

    query = urlencode({"code": code, "state": state or ""})
    target = f"{services.config.oauth.app_redirect_url}?{query}"
    logger.info("Redirecting OAuth callback to the app")
    return RedirectResponse(target, status_code=307)
