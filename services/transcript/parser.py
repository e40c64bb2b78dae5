"""Transcript parsing — semi-structured call transcript text to typed records.

Expected format:

    Call Transcript
    ============================================================
    Call ID: 1463048971679673740
    Date: 2025-01-02
    Title: Acme - Onboarding Planning

    Participants:
      - Jane Doe <jane@example.com>
      - Raj Patel <raj@acme.io>
    ============================================================

    [4999092314777842233]
    [00:00] Hi, all.
    [00:01] Good morning.

    [3851765349207337158] [Pricing]
    [00:03] Yeah, I'm good.

Transcripts are produced by a third-party recorder, so parsing never raises:
malformed sections simply yield empty fields or fewer turns.
"""

import re
import hashlib
from functools import reduce
from typing import NamedTuple

from config.schemas import ParsedTranscript, Participant, SpeakerTurn, TranscriptMetadata

# "2025-01-02_Acme - Onboarding Planning-14630489.txt"
_FILENAME_RE = re.compile(r"^([0-9]{4}-[0-9]{2}-[0-9]{2})_(.+?)-([0-9]+)\.txt$")

_DELIMITER_RE = re.compile(r"^={4,}$")
_HEADER_FIELDS = {
    "call_id": re.compile(r"^Call ID:\s*(.+)$"),
    "date": re.compile(r"^Date:\s*(.+)$"),
    "title": re.compile(r"^Title:\s*(.+)$"),
}
_PARTICIPANT_RE = re.compile(r"^-\s+(.+?)\s*<([^>]+)>$")

_SPEAKER_RE = re.compile(r"^\[([0-9]{10,})\](?:\s+\[([^\]]+)\])?$")
_CONTENT_RE = re.compile(r"^\[([0-9]{2}:[0-9]{2})\]\s*(.*)$")


# ── Filename ──

def parse_filename(filename: str) -> dict:
    """Fallback date / title / external id from the recorder's filename convention."""
    m = _FILENAME_RE.match(filename or "")
    if not m:
        return {"filename_date": None, "filename_title": None, "filename_external_id": None}
    return {
        "filename_date": m.group(1),
        "filename_title": m.group(2).strip(),
        "filename_external_id": m.group(3),
    }


# ── Header phase ──

def _parse_header(lines: list[str]) -> tuple[dict, list[Participant], int | None]:
    """Scan the ====-delimited header.

    Returns (fields, participants, body_start). body_start is None when the
    second delimiter never appears; the caller then emits no turns.
    """
    fields = {"call_id": "", "date": "", "title": ""}
    participants: list[Participant] = []
    in_header = False
    in_participants = False

    for i, line in enumerate(lines):
        if _DELIMITER_RE.match(line):
            if in_header:
                return fields, participants, i + 1
            in_header = True
            continue

        if not in_header:
            continue

        matched = False
        for key, pattern in _HEADER_FIELDS.items():
            m = pattern.match(line)
            if m:
                matched = True
                if not fields[key]:
                    fields[key] = m.group(1).strip()
                break
        if matched:
            continue

        if line == "Participants:":
            in_participants = True
            continue

        if in_participants:
            m = _PARTICIPANT_RE.match(line)
            if m:
                participants.append(Participant(name=m.group(1).strip(), email=m.group(2).strip()))

    return fields, participants, None


# ── Body phase ──

class _BodyState(NamedTuple):
    speaker_id: str
    topic_tag: str | None
    turns: tuple[SpeakerTurn, ...]


def _step(state: _BodyState, line: str) -> _BodyState:
    if not line:
        return state

    marker = _SPEAKER_RE.match(line)
    if marker:
        # A marker without a tag clears the previous tag
        return _BodyState(marker.group(1), marker.group(2) or None, state.turns)

    content = _CONTENT_RE.match(line)
    if content and state.speaker_id:
        text = content.group(2).strip()
        if text:
            turn = SpeakerTurn(
                speaker_id=state.speaker_id,
                timestamp=content.group(1),
                text=text,
                topic_tag=state.topic_tag,
            )
            return state._replace(turns=state.turns + (turn,))

    return state


def _parse_body(lines: list[str]) -> list[SpeakerTurn]:
    final = reduce(_step, lines, _BodyState("", None, ()))
    return list(final.turns)


# ── Public API ──

def parse_transcript(raw: str, filename: str) -> ParsedTranscript:
    """Parse a transcript into metadata, participants and ordered speaker turns.

    Pure: no I/O, no shared state. Header values are returned as found; the
    filename-derived values are carried separately for callers that want a
    fallback (see resolve_call_metadata).
    """
    lines = [line.strip() for line in (raw or "").split("\n")]

    fields, participants, body_start = _parse_header(lines)
    turns = _parse_body(lines[body_start:]) if body_start is not None else []

    metadata = TranscriptMetadata(**fields, **parse_filename(filename))
    return ParsedTranscript(metadata=metadata, participants=participants, turns=turns)


def resolve_call_metadata(parsed: ParsedTranscript, filename: str, modified_time: str = "") -> dict:
    """Header values first, then filename values, then the file's modified date."""
    meta = parsed.metadata
    return {
        "title": meta.title or meta.filename_title or filename,
        "call_date": meta.date or meta.filename_date or (modified_time or "")[:10],
        "external_call_id": meta.call_id or meta.filename_external_id or "",
    }


def format_transcript_for_analysis(parsed: ParsedTranscript) -> str:
    """Render a parsed transcript as the prompt text sent to the analyzer.

    Turns are grouped under a "[Speaker <id>] [<topic>]" header each time the
    speaker changes.
    """
    meta = parsed.metadata
    lines = [
        f"Call: {meta.title}",
        f"Date: {meta.date}",
        f"Call ID: {meta.call_id}",
        "",
        "Participants:",
    ]
    lines += [f"  - {p.name} <{p.email}>" for p in parsed.participants]
    lines += ["", "Transcript:", ""]

    last_speaker = ""
    for turn in parsed.turns:
        if turn.speaker_id != last_speaker:
            lines.append("")
            tag = f" [{turn.topic_tag}]" if turn.topic_tag else ""
            lines.append(f"[Speaker {turn.speaker_id}]{tag}")
            last_speaker = turn.speaker_id
        lines.append(f"[{turn.timestamp}] {turn.text}")

    return "\n".join(lines)


def hash_transcript(content: str) -> str:
    """SHA-256 hex digest of the transcript text, for change detection."""
    return hashlib.sha256((content or "").encode("utf-8")).hexdigest()
