"""
YouTube URL parsing and media reference helpers.
"""

import re
from urllib.parse import urlparse, parse_qs

from clipnotes.core.constants import YOUTUBE_HOSTS, YOUTUBE_SHORT_HOST, YOUTUBE_PATH_PREFIXES, ErrorCode
from clipnotes.core.error_codes import ValidationError

_VIDEO_ID_RE = re.compile(r'^[A-Za-z0-9_-]{11}$')


def _valid_id(candidate: str | None) -> str | None:
    if candidate and _VIDEO_ID_RE.match(candidate):
        return candidate
    return None


def extract_video_id(url: str) -> str | None:
    """
    Pull the 11-character video id out of the usual YouTube URL shapes:
    watch?v=, youtu.be/, /embed/, /v/, /shorts/ and /live/.
    Returns None for anything else.
    """
    url = (url or "").strip()
    if not url:
        return None
    if '://' not in url:
        url = f"https://{url}"

    try:
        parsed = urlparse(url)
    except ValueError:
        return None

    host = parsed.netloc.lower().split(':')[0]
    segments = [s for s in parsed.path.split('/') if s]

    if host == YOUTUBE_SHORT_HOST:
        return _valid_id(segments[0]) if segments else None
    if host not in YOUTUBE_HOSTS:
        return None

    if segments[:1] == ['watch']:
        return _valid_id(parse_qs(parsed.query).get('v', [None])[0])
    if len(segments) >= 2 and segments[0] in YOUTUBE_PATH_PREFIXES:
        return _valid_id(segments[1])
    return None


def validate_youtube_url(url: str) -> str:
    """
    Validate a YouTube URL and return the video_id.
    Raises ValidationError if invalid.
    """
    video_id = extract_video_id(url)
    if not video_id:
        raise ValidationError(f"Not a valid YouTube URL: {url}", code=ErrorCode.INVALID_URL)
    return video_id


def canonical_video_url(video_id: str) -> str:
    return f"https://www.youtube.com/watch?v={video_id}"


def media_extension(ref: str) -> str:
    """Lower-cased extension of a media reference (URL or store key), query string ignored."""
    path = urlparse(ref).path if '://' in ref else ref
    m = re.search(r'(\.[A-Za-z0-9]+)$', path)
    return m.group(1).lower() if m else ""
