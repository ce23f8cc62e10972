"""
SQLite data models (plain dataclasses) for ClipNotes.
"""

import json
from dataclasses import dataclass, field, asdict
from typing import Optional, Union

from clipnotes.core.constants import (
    JobKind, JobStatus, LANGUAGE_ISO_CODES, LENGTH_MAP, TONE_MAP,
    DEFAULT_LANGUAGE, DEFAULT_LENGTH, DEFAULT_TONE,
)


# ── Job payloads ──────────────────────────────────────────────────────

@dataclass(frozen=True)
class SummaryOptions:
    language: str = DEFAULT_LANGUAGE
    length: str = DEFAULT_LENGTH
    tone: str = DEFAULT_TONE

    @property
    def iso_language(self) -> str:
        return LANGUAGE_ISO_CODES.get(self.normalized_language, self.normalized_language)

    @property
    def normalized_language(self) -> str:
        return self.language.strip().lower()

    @property
    def normalized_length(self) -> str:
        return LENGTH_MAP.get(self.length, 'medium')

    @property
    def normalized_tone(self) -> str:
        return TONE_MAP.get(self.tone, 'formal')


@dataclass(frozen=True)
class RemoteVideoJob:
    video_url: str
    options: SummaryOptions = field(default_factory=SummaryOptions)
    owner: Optional[str] = None
    consumes_quota: bool = True
    kind: str = JobKind.REMOTE_VIDEO


@dataclass(frozen=True)
class UploadedMediaJob:
    media_ref: str                   # media store reference of the uploaded file
    public_id: str                   # storage handle the upload was saved under
    options: SummaryOptions = field(default_factory=SummaryOptions)
    owner: Optional[str] = None
    consumes_quota: bool = False
    kind: str = JobKind.UPLOADED_MEDIA


JobPayload = Union[RemoteVideoJob, UploadedMediaJob]


def payload_to_json(payload: JobPayload) -> str:
    return json.dumps(asdict(payload))


def payload_from_json(raw: str) -> JobPayload:
    data = json.loads(raw)
    data['options'] = SummaryOptions(**data.get('options', {}))
    kind = data.get('kind')
    if kind == JobKind.REMOTE_VIDEO:
        return RemoteVideoJob(**data)
    if kind == JobKind.UPLOADED_MEDIA:
        return UploadedMediaJob(**data)
    raise ValueError(f"Unknown job kind: {kind!r}")


# ── Rows ──────────────────────────────────────────────────────────────

@dataclass
class Job:
    id: str                          # UUID
    kind: str
    payload: str                     # JSON, see payload_to_json
    owner: Optional[str] = None
    video_id: Optional[str] = None
    status: str = JobStatus.PENDING
    stage: Optional[str] = None
    progress_pct: int = 0
    eta_sec: int = 0
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    result_id: Optional[str] = None
    slug: Optional[str] = None
    temp_assets: str = "[]"          # JSON list of media store refs to delete
    quota_consumed: int = 0
    quota_refunded: int = 0
    locked_by: Optional[str] = None
    lease_expires_at: Optional[float] = None
    attempts: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None

    def get_payload(self) -> JobPayload:
        return payload_from_json(self.payload)

    def get_temp_assets(self) -> list[str]:
        return json.loads(self.temp_assets or "[]")


@dataclass
class CaptionEntry:
    video_id: str
    video_url: str
    title: str
    raw_captions: str
    language: str
    thumbnail: Optional[str] = None
    duration: Optional[str] = None   # m:ss
    base_name: Optional[str] = None  # slug base used for derived slugs
    derive_counter: int = 1
    created_at: Optional[str] = None


@dataclass
class Summary:
    """Structured model output: prose summary, key points, timestamp markers."""
    summary: str
    keypoints: list[str] = field(default_factory=list)
    timestamps: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'keypoints': list(self.keypoints),
            'summary': self.summary,
            'timestamps': list(self.timestamps),
        }


@dataclass
class SummaryRecord:
    """Persisted summary, visible to its owner and through its shareable slug."""
    id: str
    job_id: str
    source_ref: str
    platform: str
    title: str
    summary_text: str
    keypoints: list[str]
    timestamps: list[str]
    language: str
    summary_length: str
    summary_tone: str
    owner: Optional[str] = None
    slug: Optional[str] = None
    shareable_link: Optional[str] = None
    thumbnail: Optional[str] = None
    duration: Optional[str] = None
    chats: list[dict] = field(default_factory=list)
    created_at: Optional[str] = None


@dataclass
class JobView:
    status: str
    progress: int
    estimated_time_remaining: int
    summary: dict = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> dict:
        out = {
            'status': self.status,
            'progress': self.progress,
            'estimatedTimeRemaining': self.estimated_time_remaining,
            'summary': dict(self.summary),
        }
        if self.error is not None:
            out['error'] = self.error
        return out
