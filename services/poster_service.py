"""
Memory Poster Service

Turns an event photo into a poster image through an external rendering
service. Without POSTER_SERVICE_URL the photo is stored as-is.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional

import aiohttp

from config import Config
from utils.data_sanitizer import sanitize_for_log
from utils.datetime_helpers import format_event_datetime

logger = logging.getLogger(__name__)


class PosterServiceError(Exception):
    pass


class MemoryPosterService:
    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.base_url = (base_url if base_url is not None else Config.POSTER_SERVICE_URL or "").rstrip("/")
        self.api_key = api_key if api_key is not None else Config.POSTER_SERVICE_API_KEY
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds or Config.HTTP_TIMEOUT_SECONDS)

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    async def generate_poster(self, photo: bytes, event_name: str, starts_at: datetime) -> bytes:
        if not self.enabled:
            logger.debug("Poster service not configured - storing original photo")
            return photo

        form = aiohttp.FormData()
        form.add_field("photo", photo, filename="photo.jpg", content_type="image/jpeg")
        form.add_field("title", event_name)
        form.add_field("subtitle", format_event_datetime(starts_at))

        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(f"{self.base_url}/v1/posters", data=form, headers=headers) as response:
                    if response.status != 200:
                        error_text = await response.text()
                        logger.error(f"Poster service error: {response.status} - {sanitize_for_log(error_text)[:300]}")
                        raise PosterServiceError(f"Poster generation failed (HTTP {response.status})")
                    poster = await response.read()
                    logger.info(f"🖼️ POSTER_GENERATED: {event_name} ({len(poster)} bytes)")
                    return poster
        except aiohttp.ClientError as e:
            logger.error(f"Network error connecting to poster service: {e}")
            raise PosterServiceError(f"Network error: {e}") from e
        except asyncio.TimeoutError as e:
            raise PosterServiceError("Poster service timed out") from e
