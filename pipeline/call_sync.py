"""Call sync — turn content-store transcript files into CallRecords and list them per user.

First sight of a file: read, parse, hash, store a CallRecord under a call id
derived from the file id. Later listings reuse the stored record.
"""

import re
import time
import hashlib
from datetime import date, timedelta
from loguru import logger

from config.schemas import CallRecord, CallSummary, ContentFile, JobStatus
from services.errors import validation_error
from services.matcher import is_user_participant
from services.store.analyses import AnalysisStore
from services.store.calls import CallStore
from services.transcript.parser import hash_transcript, parse_transcript, resolve_call_metadata

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_FILENAME_DATE_RE = re.compile(r"^(\d{4}-\d{2}-\d{2})_")


def call_id_for_file(file_id: str) -> str:
    """Stable 20-char call id for a content file id."""
    return hashlib.sha256(file_id.encode("utf-8")).hexdigest()[:20]


def _parse_date(value: str, name: str) -> date:
    if not _DATE_RE.match(value or ""):
        raise validation_error(f"Invalid date format for '{name}'. Expected YYYY-MM-DD.")
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise validation_error(f"Invalid date format for '{name}'. Expected YYYY-MM-DD.")


def resolve_date_range(
    date_from: str | None,
    date_to: str | None,
    lookback_days: int = 7,
    today: date | None = None,
) -> tuple[str, str]:
    """Fill in a missing end of the range and validate it.

    Neither given: [today - lookback, today]. Only `from`: up to today.
    Only `to`: lookback days before it.

    Raises:
        AppError VALIDATION: malformed date or from > to.
    """
    today = today or date.today()

    if not date_from and not date_to:
        end = today
        start = today - timedelta(days=lookback_days)
    elif date_from and not date_to:
        start, end = _parse_date(date_from, "from"), today
    elif not date_from:
        end = _parse_date(date_to, "to")
        start = end - timedelta(days=lookback_days)
    else:
        start, end = _parse_date(date_from, "from"), _parse_date(date_to, "to")

    if start > end:
        raise validation_error("'from' must not be after 'to'.")
    return start.isoformat(), end.isoformat()


async def sync_file(file: ContentFile, content_store, calls: CallStore) -> CallRecord:
    """Stored CallRecord for a content file, creating it on first sight."""
    existing = await calls.get_by_file_id(file.id)
    if existing is not None:
        return existing

    content = await content_store.read_content(file.id)
    parsed = parse_transcript(content, file.name)
    meta = resolve_call_metadata(parsed, file.name, file.modified_time)

    record = CallRecord(
        id=call_id_for_file(file.id),
        file_id=file.id,
        filename=file.name,
        title=meta["title"],
        call_date=meta["call_date"],
        external_call_id=meta["external_call_id"],
        participants=parsed.participants,
        transcript_hash=hash_transcript(content),
        created_at=time.time(),
    )
    await calls.upsert(record)
    logger.debug(f"Synced new call {record.id} from {file.name}")
    return record


async def list_calls_for_user(
    user_id: str,
    user_email: str,
    content_store,
    calls: CallStore,
    analyses: AnalysisStore,
    date_from: str,
    date_to: str,
) -> list[CallSummary]:
    """Calls in [date_from, date_to] the user took part in, with their analysis state."""
    files = await content_store.list_transcript_files(user_email)
    summaries: list[CallSummary] = []

    for file in files:
        # Cheap pre-filter on the filename date before reading anything
        m = _FILENAME_DATE_RE.match(file.name)
        if m and not date_from <= m.group(1) <= date_to:
            continue

        record = await sync_file(file, content_store, calls)

        if not date_from <= record.call_date <= date_to:
            continue
        if not is_user_participant(record.participants, user_email):
            continue

        job = await analyses.get_latest(record.id, user_id)
        completed = job is not None and job.status == JobStatus.COMPLETED
        result = (job.result or {}) if completed else {}

        summaries.append(CallSummary(
            id=record.id,
            title=record.title,
            call_date=record.call_date,
            participants=record.participants,
            external_call_id=record.external_call_id,
            has_analysis=completed,
            call_type=result.get("call_type"),
            deal_stage=result.get("deal_stage"),
        ))

    logger.info(
        f"Listed {len(summaries)} calls for {user_id} ({date_from}..{date_to}, {len(files)} files scanned)"
    )
    return summaries
