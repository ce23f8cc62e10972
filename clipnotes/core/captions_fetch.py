"""
Captions provider client (RapidAPI captions/transcript service).

- fetch_captions(video_id, language) -> raw SRT text
- fetch_video_info(video_id) -> {title, thumbnail, duration_seconds}
"""

import logging

import requests

from clipnotes.core.constants import CAPTIONS_API_BASE, UNTITLED
from clipnotes.core.error_codes import ExternalUnavailable
from clipnotes.core.security_utils import get_secret

logger = logging.getLogger(__name__)

_TIMEOUT_SEC = 60


def format_seconds_to_minutes(seconds) -> str:
    """125 -> '2:05'."""
    try:
        total = int(float(seconds))
    except (TypeError, ValueError):
        total = 0
    minutes, remaining = divmod(max(0, total), 60)
    return f"{minutes}:{remaining:02d}"


class CaptionsClient:
    def __init__(self, base_url: str = CAPTIONS_API_BASE,
                 api_key: str | None = None, api_host: str | None = None,
                 session: requests.Session | None = None):
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key or get_secret("RAPIDAPI_KEY")
        self.api_host = api_host or get_secret("RAPIDAPI_HOST")
        self.session = session or requests.Session()

    def _headers(self) -> dict:
        return {
            'x-rapidapi-key': self.api_key or "",
            'x-rapidapi-host': self.api_host or "",
        }

    def _get(self, path: str, params: dict) -> requests.Response:
        try:
            resp = self.session.get(
                f"{self.base_url}{path}",
                params=params,
                headers=self._headers(),
                timeout=_TIMEOUT_SEC,
            )
        except requests.exceptions.Timeout:
            raise ExternalUnavailable("Captions provider request timed out")
        except requests.exceptions.RequestException as e:
            raise ExternalUnavailable(f"Captions provider unreachable: {type(e).__name__}")
        return resp

    def fetch_captions(self, video_id: str, language: str = "en") -> str:
        logger.info("Fetching captions for %s (%s)", video_id, language)
        resp = self._get(f"/download-srt/{video_id}", {'language': language})
        if resp.status_code != 200:
            raise ExternalUnavailable(f"Failed to fetch captions: HTTP {resp.status_code}")
        captions = resp.text or ""
        if not captions.strip():
            raise ExternalUnavailable("Failed to fetch captions: empty response")
        return captions

    def fetch_video_info(self, video_id: str) -> dict:
        """
        Title, first thumbnail URL and duration in seconds.
        Metadata is cosmetic, so failures fall back to placeholders.
        """
        try:
            resp = self._get(f"/get-video-info/{video_id}", {'format': 'json'})
        except ExternalUnavailable as e:
            logger.warning("Video info unavailable for %s: %s", video_id, e.message)
            return {'title': UNTITLED, 'thumbnail': None, 'duration_seconds': 0}

        if resp.status_code != 200:
            logger.warning("Video info for %s returned HTTP %d", video_id, resp.status_code)
            return {'title': UNTITLED, 'thumbnail': None, 'duration_seconds': 0}

        try:
            data = resp.json()
        except ValueError:
            return {'title': UNTITLED, 'thumbnail': None, 'duration_seconds': 0}

        thumbnails = data.get('thumbnail') or []
        thumbnail = None
        if isinstance(thumbnails, list) and thumbnails and isinstance(thumbnails[0], dict):
            thumbnail = thumbnails[0].get('url')
        elif isinstance(thumbnails, str):
            thumbnail = thumbnails

        return {
            'title': data.get('title') or UNTITLED,
            'thumbnail': thumbnail,
            'duration_seconds': data.get('lengthSeconds') or 0,
        }
