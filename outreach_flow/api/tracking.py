import logging
from typing import Optional
from urllib.parse import unquote, urlparse

from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse, Response
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from outreach_flow.api.monitoring import get_engine
from outreach_flow.config import Settings, get_settings
from outreach_flow.wiring import Engine

logger = logging.getLogger(__name__)
router = APIRouter()

# 1x1 transparent GIF pixel
TRACKING_PIXEL = (
    b'\x47\x49\x46\x38\x39\x61\x01\x00\x01\x00\x80\x00\x00\xff\xff\xff'
    b'\x00\x00\x00\x21\xf9\x04\x01\x00\x00\x00\x00\x2c\x00\x00\x00\x00'
    b'\x01\x00\x01\x00\x00\x02\x02\x44\x01\x00\x3b'
)
NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}
EVENT_FIELDS = {"open": "views", "click": "clicks"}


def pixel_response() -> Response:
    return Response(content=TRACKING_PIXEL, media_type="image/gif", headers=NO_CACHE_HEADERS)


def read_token(token: str, expected_type: str, config: Settings) -> Optional[str]:
    """Dispatch id carried by a signed tracking token, or None if the token is unusable."""
    if not token or not token.strip():
        logger.warning("[TRACKING] Empty tracking token received")
        return None
    serializer = URLSafeTimedSerializer(config.TRACKING_SECRET_KEY)
    try:
        data = serializer.loads(token, max_age=config.TRACKING_TOKEN_MAX_AGE_SECONDS)
    except SignatureExpired:
        logger.warning("[TRACKING] Expired tracking token received")
        return None
    except BadSignature:
        logger.warning("[TRACKING] Invalid tracking token received")
        return None

    if not isinstance(data, dict) or data.get("type") != expected_type or not data.get("dispatch_id"):
        logger.warning(f"[TRACKING] Token payload does not describe a {expected_type} event: {data}")
        return None
    return data["dispatch_id"]


async def record_event(engine: Engine, dispatch_id: str, event: str):
    try:
        dispatch = await engine.repository.increment_engagement(dispatch_id, EVENT_FIELDS[event])
    except Exception as e:
        logger.error(f"[TRACKING] Failed to record {event} for dispatch {dispatch_id}: {e}", exc_info=True)
        return
    if dispatch is None:
        logger.warning(f"[TRACKING] Dispatch {dispatch_id} not found for {event} event")
        return
    logger.info(
        f"[TRACKING] {event} recorded for dispatch {dispatch_id} "
        f"(execution {dispatch.execution_id}, views={dispatch.views}, clicks={dispatch.clicks})"
    )


def safe_redirect_target(url: str) -> Optional[str]:
    target = unquote(url or "").strip()
    if urlparse(target).scheme.lower() not in ("http", "https"):
        return None
    return target


@router.get("/track/open")
async def track_open(
    token: str = Query(..., description="Signed tracking token"),
    engine: Engine = Depends(get_engine),
    config: Settings = Depends(get_settings),
):
    """
    Tracking pixel. Counts one view on the dispatch named by the token.
    Always answers with the pixel, whatever happened to the token.
    """
    dispatch_id = read_token(token, "open", config)
    if dispatch_id:
        await record_event(engine, dispatch_id, "open")
    return pixel_response()


@router.get("/track/click")
async def track_click(
    token: str = Query(..., description="Signed tracking token"),
    url: str = Query(..., description="Original URL"),
    engine: Engine = Depends(get_engine),
    config: Settings = Depends(get_settings),
):
    """Counts one click on the dispatch named by the token, then redirects to the original link."""
    target = safe_redirect_target(url)
    if target is None:
        logger.warning(f"[TRACKING] Refusing to redirect to {url!r}")
        return Response(status_code=400, content="Invalid redirect target")

    dispatch_id = read_token(token, "click", config)
    if dispatch_id:
        await record_event(engine, dispatch_id, "click")
    return RedirectResponse(url=target, status_code=302)
