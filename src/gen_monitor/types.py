from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from .errors import ProtocolError

STATUS_PENDING = "pending"
STATUS_QUEUED = "queued"
STATUS_RUNNING = "running"
STATUS_DONE = "done"
STATUS_ERROR = "error"
STATUS_FAILED = "failed"

TERMINAL_STATUSES = frozenset({STATUS_DONE, STATUS_ERROR, STATUS_FAILED})
FAILURE_STATUSES = frozenset({STATUS_ERROR, STATUS_FAILED})


def is_terminal_status(status: str) -> bool:
    return status in TERMINAL_STATUSES


@dataclass(frozen=True)
class JobStatus:
    """One observation of a job, from any channel."""

    status: str
    progress: Optional[float] = None
    result_ids: List[str] = field(default_factory=list)
    error_msg: Optional[str] = None
    model: Optional[str] = None
    job_id: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return is_terminal_status(self.status)


@dataclass(frozen=True)
class Variant:
    id: str
    job_id: str
    score: float
    image_id: str = ""
    thumb_path: str = ""
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProgressUpdate:
    status: str
    progress: float


@dataclass
class Job:
    id: str
    status: str = STATUS_PENDING
    progress: float = 0.0
    error_msg: Optional[str] = None
    result_ids: List[str] = field(default_factory=list)
    model: Optional[str] = None


def unwrap_envelope(data: Any) -> Any:
    """
    Strip the backend's `{success, data, error}` response envelope.

    Bare payloads pass through unchanged.
    """
    if isinstance(data, Mapping) and "success" in data and ("data" in data or "error" in data):
        if not data.get("success"):
            raise ProtocolError(str(data.get("error") or data.get("message") or "request failed"))
        return data.get("data")
    return data


def _coerce_progress(v: Any) -> Optional[float]:
    if v is None or isinstance(v, bool):
        return None
    try:
        p = float(v)
    except (TypeError, ValueError):
        return None
    return max(0.0, min(100.0, p))


def _extract_result_ids(data: Mapping[str, Any]) -> List[str]:
    for key in ("result_ids", "result_variant_ids"):
        raw = data.get(key)
        if isinstance(raw, list):
            return [str(x).strip() for x in raw if str(x or "").strip()]
    raw_variants = data.get("result_variants") or data.get("variants")
    if isinstance(raw_variants, list):
        out: List[str] = []
        for ent in raw_variants:
            if isinstance(ent, Mapping):
                vid = str(ent.get("id") or "").strip()
                if vid:
                    out.append(vid)
        return out
    return []


def parse_job_status(data: Any, *, default_status: str = "") -> JobStatus:
    data = unwrap_envelope(data)
    if not isinstance(data, Mapping):
        raise ProtocolError("unexpected job status shape")
    status = str(data.get("status") or default_status).strip().lower()
    if not status:
        raise ProtocolError("job status missing status")
    error_msg = data.get("error_msg") or data.get("error")
    model = data.get("model") or data.get("model_used")
    job_id = data.get("job_id") or data.get("id") or data.get("jobId")
    return JobStatus(
        status=status,
        progress=_coerce_progress(data.get("progress")),
        result_ids=_extract_result_ids(data),
        error_msg=str(error_msg) if error_msg else None,
        model=str(model) if model else None,
        job_id=str(job_id) if job_id else None,
    )


def parse_variant(data: Mapping[str, Any]) -> Variant:
    vid = str(data.get("id") or "").strip()
    if not vid:
        raise ProtocolError("variant missing id")
    try:
        score = float(data.get("score") or 0.0)
    except (TypeError, ValueError):
        score = 0.0
    meta = data.get("meta_json") or data.get("meta") or {}
    return Variant(
        id=vid,
        job_id=str(data.get("job_id") or ""),
        score=score,
        image_id=str(data.get("image_id") or ""),
        thumb_path=str(data.get("thumb_path") or data.get("image_url") or ""),
        meta=dict(meta) if isinstance(meta, Mapping) else {},
    )


def parse_variants(data: Any) -> List[Variant]:
    data = unwrap_envelope(data)
    if not isinstance(data, list):
        raise ProtocolError("unexpected variants shape")
    return [parse_variant(ent) for ent in data if isinstance(ent, Mapping)]
