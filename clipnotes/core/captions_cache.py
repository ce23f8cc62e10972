"""
Caption cache: one entry per video id, append-only.

Captions are stored in whatever language the first fetch used; later
requests for the same video reuse them regardless of requested language.
Every reuse bumps the entry's derive counter, which feeds derived slugs.
"""

import logging
from dataclasses import dataclass

from clipnotes.core.captions_fetch import format_seconds_to_minutes
from clipnotes.core.db_sqlite import Database
from clipnotes.core.models_sqlite import CaptionEntry
from clipnotes.core.url_parse import canonical_video_url

logger = logging.getLogger(__name__)


@dataclass
class CacheLookup:
    entry: CaptionEntry
    hit: bool
    counter: int            # derive counter attributed to this lookup


class CaptionCache:
    def __init__(self, db: Database, provider):
        self.db = db
        self.provider = provider

    def get_or_fetch(self, video_id: str, iso_language: str,
                     job_id: str | None = None,
                     on_fetch=None) -> CacheLookup:
        """
        Return the cached entry for video_id, fetching and storing it on a
        miss. job_id makes the counter bump idempotent for that job.
        on_fetch is called right before the external fetch starts.
        """
        entry = self.db.get_caption(video_id)
        if entry is not None:
            return self._reuse(video_id, job_id)

        if on_fetch:
            on_fetch()
        captions = self.provider.fetch_captions(video_id, iso_language)
        info = self.provider.fetch_video_info(video_id)

        entry = CaptionEntry(
            video_id=video_id,
            video_url=canonical_video_url(video_id),
            title=info.get('title'),
            raw_captions=captions,
            language=iso_language,
            thumbnail=info.get('thumbnail'),
            duration=format_seconds_to_minutes(info.get('duration_seconds', 0)),
        )
        if self.db.insert_caption_if_absent(entry, job_id=job_id):
            logger.info("Cached captions for %s", video_id)
            return CacheLookup(entry=self.db.get_caption(video_id), hit=False, counter=1)

        # Lost a first-fetch race; the stored entry wins.
        logger.info("Captions for %s were cached concurrently, reusing", video_id)
        return self._reuse(video_id, job_id)

    def _reuse(self, video_id: str, job_id: str | None) -> CacheLookup:
        counter = self.db.claim_caption_reuse(video_id, job_id)
        entry = self.db.get_caption(video_id)
        logger.info("Using cached captions for %s (counter=%s)", video_id, counter)
        return CacheLookup(entry=entry, hit=counter != 1, counter=counter)

    def remember_base_name(self, video_id: str, base_name: str) -> str | None:
        return self.db.set_caption_base_name(video_id, base_name)
