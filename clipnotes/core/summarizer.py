"""
Chunked summarizer.

Short inputs are summarized in one model call. Long inputs are split along
line boundaries, each part is summarized in order, and one combine call
merges the partial results. Every call is checked against a local token
budget first and retried on rate-limit signals.
"""

import time
import logging
from collections import deque
from typing import Callable, Optional

from clipnotes.core.constants import (
    SINGLE_CALL_TOKEN_LIMIT, PART_TOKEN_LIMIT, MIN_PART_TOKEN_LIMIT,
    MAX_OUTPUT_TOKENS, MAX_MODEL_ATTEMPTS, MAX_SPLIT_DEPTH,
    TOKEN_BUDGET_PER_MINUTE,
)
from clipnotes.core.chunking_text import (
    estimate_tokens, needs_chunking, split_by_lines, split_in_half,
)
from clipnotes.core.error_codes import JobError, ModelError, ParseError, RateLimited
from clipnotes.core.merge import parse_summary_json, combine_payload, finalize_summary
from clipnotes.core.models_sqlite import Summary, SummaryOptions
from clipnotes.core.prompts import transcript_prompt, combine_prompt
from clipnotes.core.rate_limit import RateLimitSignal, TokenBudget, sleep_with_ticks

logger = logging.getLogger(__name__)


class _RequestTooLarge(Exception):
    """Internal: the provider rejected a part as too large; split it and retry."""


class ChunkedSummarizer:
    """
    Produces {summary, keypoints, timestamps} for arbitrarily long text.

    One instance per worker: the token budget is that worker's own estimate.
    `calls` counts model requests issued, retries included.
    """

    def __init__(self, generator,
                 budget: Optional[TokenBudget] = None,
                 single_call_limit: int = SINGLE_CALL_TOKEN_LIMIT,
                 part_limit: int = PART_TOKEN_LIMIT,
                 min_part_limit: int = MIN_PART_TOKEN_LIMIT,
                 max_output_tokens: int = MAX_OUTPUT_TOKENS,
                 max_attempts: int = MAX_MODEL_ATTEMPTS,
                 max_split_depth: int = MAX_SPLIT_DEPTH,
                 sleep: Callable[[float], None] = time.sleep):
        self.generator = generator
        self.budget = budget or TokenBudget(TOKEN_BUDGET_PER_MINUTE)
        self.single_call_limit = single_call_limit
        self.part_limit = part_limit
        self.min_part_limit = min_part_limit
        self.max_output_tokens = max_output_tokens
        self.max_attempts = max_attempts
        self.max_split_depth = max_split_depth
        self._sleep = sleep
        self.calls = 0

    def summarize(self, text: str, options: SummaryOptions,
                  on_tick: Optional[Callable[[], None]] = None,
                  on_part: Optional[Callable[[int, int], None]] = None) -> Summary:
        """
        on_tick fires about once a second while waiting on the budget or a
        retry-after; on_part(done, total) fires after each part summary.
        """
        if not text or not text.strip():
            raise ParseError("Nothing to summarize: transcript is empty")

        prompt = transcript_prompt(options.language, options.normalized_length,
                                   options.normalized_tone)

        if not needs_chunking(text, self.single_call_limit):
            logger.info("Summarizing in a single call (~%d tokens)", estimate_tokens(text))
            try:
                result = self._call_structured(prompt, text, on_tick, can_split=True)
            except _RequestTooLarge:
                ceiling = max(self.min_part_limit,
                              min(self.part_limit, estimate_tokens(text) // 2))
                logger.warning("Single call rejected as too large, switching to %d-token parts",
                               ceiling)
                return self._summarize_parts(text, options, prompt, ceiling, on_tick, on_part)
            return finalize_summary(result)

        return self._summarize_parts(text, options, prompt, self.part_limit, on_tick, on_part)

    # ── Chunked path ──────────────────────────────────────────────────

    def _summarize_parts(self, text, options, prompt, ceiling, on_tick, on_part) -> Summary:
        queue = deque((part, 0) for part in split_by_lines(text, ceiling))
        logger.info("Summarizing in %d parts (ceiling=%d tokens)", len(queue), ceiling)

        partials: list[Summary] = []
        while queue:
            part, depth = queue.popleft()
            try:
                partials.append(self._call_structured(
                    prompt, part, on_tick, can_split=depth < self.max_split_depth))
            except _RequestTooLarge:
                ceiling = max(self.min_part_limit, ceiling // 2)
                pieces = split_by_lines(part, ceiling)
                if len(pieces) < 2:
                    pieces = split_in_half(part)
                if len(pieces) < 2:
                    raise ModelError("Request too large and cannot be split further")
                logger.warning("Part %d too large, re-split into %d pieces (ceiling=%d)",
                               len(partials) + 1, len(pieces), ceiling)
                queue.extendleft(reversed([(p, depth + 1) for p in pieces]))
                continue
            if on_part:
                on_part(len(partials), len(partials) + len(queue))

        logger.info("Combining %d partial summaries", len(partials))
        c_prompt = combine_prompt(options.language, options.normalized_length,
                                  options.normalized_tone)
        combined = self._call_structured(c_prompt, combine_payload(partials),
                                         on_tick, can_split=False)
        return finalize_summary(combined)

    # ── One model call with budget, retries and parsing ──────────────

    def _call_structured(self, system_prompt: str, content: str,
                         on_tick, can_split: bool) -> Summary:
        cost = (estimate_tokens(system_prompt) + estimate_tokens(content)
                + self.max_output_tokens)
        last_error = None

        for attempt in range(1, self.max_attempts + 1):
            wait = self.budget.wait_needed(cost)
            if wait > 0:
                logger.info("Token budget low (need %d, have %d), waiting %.1fs",
                            cost, self.budget.remaining, wait)
                sleep_with_ticks(wait, on_tick, self._sleep)
                self.budget.reset()

            self.calls += 1
            self.budget.spend(cost)
            try:
                raw = self.generator.complete(system_prompt, content, self.max_output_tokens)
                return parse_summary_json(raw)
            except RateLimited as e:
                signal = e.signal or RateLimitSignal()
                self.budget.apply_hint(signal.remaining_budget_hint)
                last_error = e
                if signal.request_too_large and can_split:
                    sleep_with_ticks(signal.retry_after, on_tick, self._sleep)
                    raise _RequestTooLarge() from e
                if attempt < self.max_attempts:
                    logger.warning("Rate limited, retrying in %.1fs (attempt %d/%d)",
                                   signal.retry_after, attempt, self.max_attempts)
                    sleep_with_ticks(signal.retry_after, on_tick, self._sleep)
                continue
            except JobError as e:
                if not e.retryable:
                    raise
                last_error = e
                logger.warning("Model call failed [%s] (attempt %d/%d): %s",
                               e.code, attempt, self.max_attempts, e.message)

        if isinstance(last_error, ParseError):
            raise ParseError(f"Model output could not be parsed after "
                             f"{self.max_attempts} attempts: {last_error.message}")
        raise ModelError(f"Text generation still rate limited after "
                         f"{self.max_attempts} attempts")
