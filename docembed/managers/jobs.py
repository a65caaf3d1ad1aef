"""
Embedding Job Types
===================

잡 종류별 페이로드 (tagged union) 와 잡 레코드 모델

  EMBED_DOCUMENT    : 문서 원문 → 청크 → 임베딩 → 저장 (우선순위 1, 최고)
  EMBED_TEXT        : 문서 없는 텍스트 임베딩 (우선순위 2)
  REINDEX_DOCUMENT  : 문서 청크 삭제 후 PENDING 초기화 (우선순위 3, 최저)
"""

from dataclasses import astuple, dataclass, field, fields
from enum import Enum
from typing import Any, Optional, Union

from docembed.common.errors import ValidationError


class JobType(str, Enum):
    EMBED_DOCUMENT = "EMBED_DOCUMENT"
    EMBED_TEXT = "EMBED_TEXT"
    REINDEX_DOCUMENT = "REINDEX_DOCUMENT"


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


# 숫자가 작을수록 먼저 처리
DEFAULT_PRIORITIES = {
    JobType.EMBED_DOCUMENT: 1,
    JobType.EMBED_TEXT: 2,
    JobType.REINDEX_DOCUMENT: 3,
}

DOCUMENT_SOURCE_TYPES = ("pdf", "excel", "csv", "text")


@dataclass(frozen=True)
class EmbedDocumentPayload:
    document_id: int
    content: str
    source_type: str
    metadata: dict[str, Any] = field(default_factory=dict)

    job_type = JobType.EMBED_DOCUMENT


@dataclass(frozen=True)
class EmbedTextPayload:
    content: str
    source_type: str
    account_id: Optional[int] = None
    opportunity_id: Optional[int] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    job_type = JobType.EMBED_TEXT


@dataclass(frozen=True)
class ReindexDocumentPayload:
    document_id: int

    job_type = JobType.REINDEX_DOCUMENT


JobPayload = Union[EmbedDocumentPayload, EmbedTextPayload, ReindexDocumentPayload]

_PAYLOAD_CLASSES = {
    JobType.EMBED_DOCUMENT: EmbedDocumentPayload,
    JobType.EMBED_TEXT: EmbedTextPayload,
    JobType.REINDEX_DOCUMENT: ReindexDocumentPayload,
}


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def payload_to_dict(payload: JobPayload) -> dict[str, Any]:
    """페이로드 → 직렬화용 dict (camelCase 키, 'jobType' 태그 포함)"""
    data = {_camel(f.name): value for f, value in zip(fields(payload), astuple(payload))}
    data["jobType"] = payload.job_type.value
    return data


def payload_from_dict(data: dict[str, Any]) -> JobPayload:
    """'jobType' 태그로 페이로드 클래스 선택 (camelCase 키)"""
    raw = dict(data)
    try:
        job_type = JobType(raw.pop("jobType"))
    except (KeyError, ValueError) as e:
        raise ValidationError(f"Unknown job type: {data.get('jobType')}") from e

    cls = _PAYLOAD_CLASSES[job_type]
    names = {_camel(f.name): f.name for f in fields(cls)}
    unknown = sorted(set(raw) - set(names))
    if unknown:
        raise ValidationError(f"Unknown {job_type.value} payload fields: {', '.join(unknown)}")

    try:
        return cls(**{names[key]: value for key, value in raw.items()})
    except TypeError as e:
        raise ValidationError(f"Invalid {job_type.value} payload: {e}") from e


@dataclass
class Job:
    """큐에 저장되는 잡 레코드"""
    id: str
    payload: JobPayload
    priority: int
    max_attempts: int
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    progress: int = 0
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    timestamp: int = 0                  # 생성 시각 (epoch ms)
    finished_on: Optional[int] = None

    @property
    def job_type(self) -> JobType:
        return self.payload.job_type

    def to_status(self) -> dict[str, Any]:
        """getJobStatus 응답 형식"""
        return {
            "id": self.id,
            "state": self.state.value,
            "progress": self.progress,
            "data": payload_to_dict(self.payload),
            "result": self.result,
            "error": self.error,
            "attemptsMade": self.attempts_made,
            "timestamp": self.timestamp,
        }
