"""CallScope Pydantic schemas — transcripts, analysis jobs, call records and API payloads."""

from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, Any
from enum import Enum


# ── PARSED TRANSCRIPT ──

class Participant(BaseModel):
    name: str
    email: str = Field(description="Case-insensitive identity key")


class TranscriptMetadata(BaseModel):
    """Header fields of a transcript. Empty strings when the header lacks them."""
    call_id: str = ""
    date: str = ""
    title: str = ""
    filename_date: Optional[str] = Field(None, description="YYYY-MM-DD from the filename, fallback only")
    filename_title: Optional[str] = Field(None, description="Title segment of the filename, fallback only")
    filename_external_id: Optional[str] = Field(None, description="Trailing digits from the filename, fallback only")


class SpeakerTurn(BaseModel):
    speaker_id: str
    timestamp: str = Field(description="MM:SS offset into the call")
    text: str
    topic_tag: Optional[str] = None


class ParsedTranscript(BaseModel):
    metadata: TranscriptMetadata
    participants: list[Participant] = Field(default_factory=list)
    turns: list[SpeakerTurn] = Field(default_factory=list)


# ── ANALYSIS JOB ──

class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    def can_transition_to(self, target: "JobStatus") -> bool:
        """Forward-only: pending → processing → completed | failed.

        pending → failed is allowed for jobs that die before processing starts.
        """
        return target in _ALLOWED_TRANSITIONS[self]


_ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.PROCESSING, JobStatus.FAILED},
    JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


class AnalysisJob(BaseModel):
    """One versioned request to analyze one call transcript for one user."""
    id: str = Field(description="'{call_id}_{user_id}_v{version}'")
    call_id: str
    user_id: str
    version: int = Field(ge=1)
    status: JobStatus = JobStatus.PENDING
    model_used: str
    created_at: float = Field(description="Epoch seconds, immutable")
    updated_at: Optional[float] = None
    result: Optional[dict[str, Any]] = Field(None, description="Only when status == completed")
    error: Optional[str] = Field(None, description="Only when status == failed")

    @staticmethod
    def make_id(call_id: str, user_id: str, version: int) -> str:
        return f"{call_id}_{user_id}_v{version}"


class StatusResponse(BaseModel):
    """Cheap status read for pollers; never carries the result payload."""
    status: str = Field(description="'none' or a JobStatus value")
    error: Optional[str] = None


class TriggerResponse(BaseModel):
    analysis_id: str


# ── ANALYZER OUTPUT ──

class CallAnalysisResult(BaseModel):
    """Structured coaching analysis returned by the LLM.

    Only the top-level classification fields and the summary are required;
    every other business field passes through as-is.
    """
    model_config = ConfigDict(extra="allow")

    call_type: str = Field(min_length=1)
    deal_stage: str = Field(min_length=1)
    participants: Any
    overall_summary: str = Field(min_length=1)

    @field_validator("participants")
    @classmethod
    def _participants_present(cls, v: Any) -> Any:
        if not v:
            raise ValueError("must not be empty")
        return v


# ── CALLS ──

class ContentFile(BaseModel):
    """A transcript file as listed by the content store."""
    id: str
    name: str
    modified_time: str = ""
    md5_checksum: Optional[str] = None
    size: Optional[int] = None


class CallRecord(BaseModel):
    """A transcript synced from the content store, keyed by a stable call id."""
    id: str
    file_id: str
    filename: str
    title: str
    call_date: str = Field(description="YYYY-MM-DD")
    external_call_id: str = ""
    participants: list[Participant] = Field(default_factory=list)
    transcript_hash: str
    created_at: float


class CallSummary(BaseModel):
    """Call list entry, annotated with the caller's latest analysis state."""
    id: str
    title: str
    call_date: str
    participants: list[Participant]
    external_call_id: str = ""
    has_analysis: bool = False
    call_type: Optional[str] = None
    deal_stage: Optional[str] = None
