"""
Parse structured model output and merge partial summaries.
Handles key-point deduplication and timestamp coverage across the source.
"""

import re
import json
import logging

from clipnotes.core.constants import MAX_TIMESTAMPS
from clipnotes.core.error_codes import ParseError
from clipnotes.core.models_sqlite import Summary

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r'^```(?:json)?\s*|\s*```$', re.IGNORECASE)
_TIMESTAMP_RE = re.compile(r'^\s*\[?(\d{1,2}):(\d{2})(?::(\d{2}))?')


def _strip_fences(text: str) -> str:
    return _FENCE_RE.sub('', text.strip()).strip()


def _load_object(text: str) -> dict:
    cleaned = _strip_fences(text)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        start = cleaned.find('{')
        end = cleaned.rfind('}')
        if start == -1 or end <= start:
            raise ParseError("Model response contained no JSON object")
        try:
            data = json.loads(cleaned[start:end + 1])
        except json.JSONDecodeError as e:
            raise ParseError(f"Model response was not valid JSON: {e.msg}")
    if not isinstance(data, dict):
        raise ParseError("Model response was not a JSON object")
    return data


def _string_list(data: dict, key: str) -> list[str]:
    value = data.get(key, [])
    if value is None:
        return []
    if not isinstance(value, list):
        raise ParseError(f"Field '{key}' must be a list")
    return [str(v).strip() for v in value if str(v).strip()]


def parse_summary_json(text: str) -> Summary:
    """
    Turn model text into a Summary.
    Tolerates code fences and chatter around the JSON object.
    """
    if not text or not text.strip():
        raise ParseError("Model returned an empty response")
    data = _load_object(text)

    summary = data.get('summary')
    if not isinstance(summary, str) or not summary.strip():
        raise ParseError("Field 'summary' is missing or empty")

    return Summary(
        summary=summary.strip(),
        keypoints=_string_list(data, 'keypoints'),
        timestamps=_string_list(data, 'timestamps'),
    )


def _normalize_point(text: str) -> str:
    return ' '.join(text.lower().split())


def dedupe_keypoints(points: list[str]) -> list[str]:
    """Drop repeated key points (case and whitespace insensitive), keeping the first."""
    seen = set()
    out = []
    for point in points:
        key = _normalize_point(point)
        if key and key not in seen:
            seen.add(key)
            out.append(point)
    if len(out) != len(points):
        logger.debug("Deduped %d repeated key points", len(points) - len(out))
    return out


def timestamp_position(marker: str) -> int | None:
    """Seconds for "MM:SS - ..." or "HH:MM:SS - ..." markers, else None."""
    m = _TIMESTAMP_RE.match(marker)
    if not m:
        return None
    a, b, c = m.group(1), m.group(2), m.group(3)
    if c is None:
        return int(a) * 60 + int(b)
    return int(a) * 3600 + int(b) * 60 + int(c)


def spread_timestamps(markers: list[str], limit: int = MAX_TIMESTAMPS) -> list[str]:
    """
    Pick at most `limit` unique markers covering beginning, middle and end.

    Markers are ordered by position (unparseable ones keep their relative
    order at the end), then sampled evenly so the first and last survive.
    """
    unique = dedupe_keypoints(markers)
    keyed = [(timestamp_position(m), i, m) for i, m in enumerate(unique)]
    keyed.sort(key=lambda k: (k[0] is None, k[0] if k[0] is not None else 0, k[1]))
    ordered = [m for _, _, m in keyed]

    if len(ordered) <= limit:
        return ordered
    if limit <= 1:
        return ordered[:limit]

    step = (len(ordered) - 1) / (limit - 1)
    picks = sorted({round(i * step) for i in range(limit)})
    return [ordered[i] for i in picks]


def union_parts(partials: list[Summary]) -> tuple[list[str], list[str]]:
    """All key points and timestamps from the partial summaries, in order."""
    keypoints: list[str] = []
    timestamps: list[str] = []
    for part in partials:
        keypoints.extend(part.keypoints)
        timestamps.extend(part.timestamps)
    return keypoints, timestamps


def combine_payload(partials: list[Summary]) -> str:
    """User content for the combine call: labeled partial summaries plus the unions."""
    keypoints, timestamps = union_parts(partials)
    return json.dumps({
        'summaries': [f"Part {i}: {p.summary}" for i, p in enumerate(partials, 1)],
        'keypoints': dedupe_keypoints(keypoints),
        'timestamps': timestamps,
    }, ensure_ascii=False)


def finalize_summary(summary: Summary) -> Summary:
    """Local clean-up applied to every final summary."""
    return Summary(
        summary=summary.summary,
        keypoints=dedupe_keypoints(summary.keypoints),
        timestamps=spread_timestamps(summary.timestamps),
    )
