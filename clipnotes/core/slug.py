"""
Shareable-link slug allocation.

- allocate(): ask the naming model for a two-word name, reserve it, and
  disambiguate on collision (bounded attempts).
- derive(): for cached videos, build the slug from the stored base name and
  the cache's derive counter without any model call.
"""

import re
import logging

from clipnotes.core.constants import MAX_SLUG_ATTEMPTS, MAX_SLUG_LEN, FALLBACK_SLUG_BASE
from clipnotes.core.error_codes import ExternalUnavailable, RateLimited, SlugExhausted
from clipnotes.core.prompts import slug_prompt, slug_user_content
from clipnotes.core.security_utils import strip_quotes

logger = logging.getLogger(__name__)

_NAMING_MAX_TOKENS = 20


def slugify(text: str) -> str:
    """'Deep Learning: Basics!' -> 'deep-learning-basics'."""
    if not text:
        return ""
    slug = re.sub(r'[^a-z0-9]+', '-', text.lower()).strip('-')
    if len(slug) > MAX_SLUG_LEN:
        slug = slug[:MAX_SLUG_LEN].rstrip('-')
    return slug


def two_word_name(reply: str) -> str:
    """
    First two words of a naming reply as a slug. Any lead-in up to the last
    colon is dropped: 'Sure! Here's one: Deep Dive' -> 'deep-dive'.
    """
    text = strip_quotes(reply or "")
    if ':' in text:
        text = text.rsplit(':', 1)[1]
    words = [w for w in slugify(text).split('-') if w]
    return '-'.join(words[:2])


def fallback_name(seed_title: str) -> str:
    """First two words of the title, or a fixed base when there are none."""
    words = [w for w in slugify(seed_title).split('-') if w]
    if len(words) >= 2:
        return f"{words[0]}-{words[1]}"
    return FALLBACK_SLUG_BASE


class SlugAllocator:
    def __init__(self, db, generator, max_attempts: int = MAX_SLUG_ATTEMPTS):
        self.db = db
        self.generator = generator
        self.max_attempts = max_attempts

    def candidate(self, seed_title: str, language: str, attempt: int = 0) -> str:
        """One name suggestion from the naming model, slugified."""
        try:
            raw = self.generator.complete(slug_prompt(language),
                                          slug_user_content(seed_title, attempt),
                                          _NAMING_MAX_TOKENS)
        except (RateLimited, ExternalUnavailable) as e:
            logger.warning("Slug name generation failed (%s), using title words", e.code)
            return fallback_name(seed_title)
        name = two_word_name(raw)
        return name or fallback_name(seed_title)

    def allocate(self, seed_title: str, language: str, job_id: str | None = None) -> str:
        return self.allocate_named(seed_title, language, job_id)[0]

    def allocate_named(self, seed_title: str, language: str,
                       job_id: str | None = None) -> tuple[str, str]:
        """
        Reserve a unique slug for seed_title. A candidate that repeats an
        earlier suggestion gets a numeric suffix instead.
        Returns (slug, base) where base is the candidate without any suffix.
        """
        seen = set()
        for attempt in range(self.max_attempts):
            base = self.candidate(seed_title, language, attempt)
            slug = base if base not in seen else f"{base}-{attempt + 1}"
            seen.add(base)
            if self.db.reserve_slug(slug, job_id):
                logger.info("Allocated slug %s (attempt %d)", slug, attempt + 1)
                return slug, base
            logger.info("Slug %s already taken (attempt %d/%d)",
                        slug, attempt + 1, self.max_attempts)
        raise SlugExhausted(f"Could not allocate a unique link name after "
                            f"{self.max_attempts} attempts")

    def derive(self, base_name: str, counter: int, job_id: str | None = None) -> str:
        """
        base_name for counter 1, base_name-N afterwards. If that exact slug is
        already held elsewhere, move on to the next number.
        """
        n = max(1, counter)
        for _ in range(self.max_attempts):
            slug = base_name if n == 1 else f"{base_name}-{n}"
            if self.db.reserve_slug(slug, job_id):
                logger.info("Derived slug %s from cached base %s", slug, base_name)
                return slug
            n += 1
        raise SlugExhausted(f"Could not derive a unique link name from {base_name}")
