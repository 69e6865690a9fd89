import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, status

from linkmeta.core.config import Settings, get_settings
from linkmeta.core.urls import extract_host
from linkmeta.extractors.fetch import FetchError, classify_fetch_error
from linkmeta.extractors.registry import ExtractorRegistry, get_registry
from linkmeta.schemas.links import LinkPreviewRequest, LinkPreviewResponse

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/preview", response_model=LinkPreviewResponse)
async def preview_link(
    payload: LinkPreviewRequest,
    settings: Settings = Depends(get_settings),
    registry: ExtractorRegistry = Depends(get_registry),
) -> LinkPreviewResponse:
    if not settings.link_metadata_enabled:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="link metadata is disabled")

    url = payload.url.strip()
    if not url:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="url is required")
    if len(url) > settings.preview_max_url_length:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="url is too long")

    try:
        metadata = await asyncio.wait_for(registry.resolve(url), timeout=settings.job_timeout_seconds)
    except (FetchError, asyncio.TimeoutError) as exc:
        logger.info(
            "link preview degraded domain=%s error_type=%s",
            extract_host(url),
            classify_fetch_error(exc),
        )
        metadata = registry.fallback_metadata(url)

    return LinkPreviewResponse(metadata=metadata.to_record())
