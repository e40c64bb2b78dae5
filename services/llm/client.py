"""LLM Client — sales-call coaching analysis over an OpenAI-compatible API.

Works against OpenAI itself or any compatible server (Ollama, vLLM) by
pointing LLM_BASE_URL at it. The SDK's own retry loop is disabled; retries,
backoff and the per-call timeout are applied by services.retry.
"""

import re
import json
import asyncio

import httpx
from openai import AsyncOpenAI
from pydantic import ValidationError
from loguru import logger

from config import settings
from config.schemas import CallAnalysisResult, ParsedTranscript
from services.errors import external_service_error
from services.retry import ANALYZER_POLICY, Sleep, with_retry, with_timeout
from services.transcript.parser import format_transcript_for_analysis

SERVICE = "llm"

TRANSCRIPT_MARKER = "<<TRANSCRIPT>>"

ANALYSIS_PROMPT = """You are a senior sales coach reviewing the transcript of a recorded call
between our sales team and a customer or prospect.

Speaker labels are numeric ids. Work out who is on our team and who is on the
customer side from context (who demos and explains the product, who asks about
pricing, timelines and fit).

Work through the steps below in order. Use every step to inform the final
answer, but return ONLY the JSON object described at the end.

STEP 1: CLASSIFY THE CALL
- call_type: Discovery / Demo / Technical Deep-Dive / Follow-Up / Negotiation /
  Renewal / Onboarding / Handoff / Mixed (describe)
- participants: names on our team (rep_team) and on the customer side (customer)
- deal_stage: Early exploration / Active evaluation / Late-stage / Existing customer

STEP 2: SENTIMENT
- Customer sentiment, 1-5, with a one-sentence rationale, the arc across the
  call (improving / declining / flat), the moments that moved it (quote briefly)
  and concerns still open at the end.
- Rep presence, 1-5: command of the product, tone, energy, any defensiveness or
  over-promising.

STEP 3: SCORECARD
Score 1-5 (or "N/A" when a dimension does not apply to this call type):
opening and agenda, discovery quality, objection handling, value proposition
clarity, call control, next steps. Add the dimensions specific to the call
type from step 1 (e.g. qualification depth for Discovery, tailoring for Demo,
concession discipline for Negotiation).

STEP 4: SIGNAL FLAGS
Flag competitor mentions, pricing objections, technical objections (and whether
each was resolved) and champion / blocker dynamics. Quote the excerpt and say
how the rep handled it.

STEP 5: WHAT WENT WELL
3-5 concrete moments the rep handled well, and why they worked.

STEP 6: WHAT WENT POORLY
3-5 concrete misses. For each, the likely impact on the deal and exactly what
the rep should have said or asked instead.

STEP 7: RECOMMENDATIONS
Actionable items under communication_and_technique,
product_knowledge_and_positioning and process_and_follow_through.

OUTPUT FORMAT
A single valid JSON object, no text before or after it, no markdown fences.
Scores are integers 1-5 or the string "N/A". overall_summary is 2-3 sentences.

{"call_id": string | null, "date": string | null, "call_type": string,
 "deal_stage": string,
 "participants": {"rep_team": [string], "customer": [string]},
 "sentiment": {"customer": {"score": number, "rationale": string,
   "arc": "improving" | "declining" | "flat",
   "key_moments": [{"timestamp": string, "quote": string, "impact": string}],
   "unresolved_concerns": [string]},
  "rep": {"score": number, "rationale": string, "notes": [string]}},
 "scorecard": {"universal": [{"dimension": string, "score": number | "N/A",
   "evidence": string, "what_worked": string, "what_didnt": string}],
  "call_type_specific": [same shape as universal]},
 "signal_flags": {"competitor_mentions": {"present": boolean, "details": [...]},
  "pricing_objections": {"present": boolean, "details": [...]},
  "technical_objections": {"present": boolean, "details": [...]},
  "champion_blocker_dynamics": {"present": boolean, "details": [...]}},
 "what_went_well": [{"title": string, "transcript_reference": string, "why_effective": string}],
 "what_went_poorly": [{"title": string, "transcript_reference": string, "deal_impact": string}],
 "recommendations": {"communication_and_technique": [string],
  "product_knowledge_and_positioning": [string],
  "process_and_follow_through": [string]},
 "overall_summary": string}

TRANSCRIPT:

<<TRANSCRIPT>>"""

_FENCE_OPEN_RE = re.compile(r"^```(?:json)?\s*\n?")
_FENCE_CLOSE_RE = re.compile(r"\n?```\s*$")


def build_prompt(transcript_text: str) -> str:
    return ANALYSIS_PROMPT.replace(TRANSCRIPT_MARKER, transcript_text)


class LLMAnalyzer:
    """Single chat-completion call returning the model's raw text."""

    def __init__(
        self,
        model: str | None = None,
        base_url: str | None = None,
        api_key: str | None = None,
        client: AsyncOpenAI | None = None,
        max_tokens: int = 8000,
        temperature: float = 0.2,
    ):
        self.model = model or settings.ANALYSIS_MODEL
        self.max_tokens = max_tokens
        self.temperature = temperature
        self._client = client or AsyncOpenAI(
            base_url=base_url or settings.LLM_BASE_URL,
            api_key=api_key or settings.LLM_API_KEY or "ollama",
            max_retries=0,
        )

    async def analyze(self, prompt: str) -> str:
        response = await self._client.chat.completions.create(
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            messages=[{"role": "user", "content": prompt}],
        )
        text = response.choices[0].message.content if response.choices else None
        if not text:
            raise external_service_error(SERVICE, "No text response from the model", operation="analyze")
        return text


# ── Output validation ──

# validation error types that mean the field is absent or empty
_EMPTY_ERROR_TYPES = {"missing", "string_too_short", "value_error"}


def strip_code_fences(text: str) -> str:
    text = (text or "").strip()
    if text.startswith("```"):
        text = _FENCE_CLOSE_RE.sub("", _FENCE_OPEN_RE.sub("", text))
    return text.strip()


def parse_analysis_output(raw: str) -> CallAnalysisResult:
    """Decode and validate the model's answer.

    Any failure here is final for the job: the same prompt is not re-sent
    because the model answered badly.

    Raises:
        AppError (EXTERNAL_SERVICE): unparseable JSON, missing or empty
            required fields, or required fields of the wrong type.
    """
    text = strip_code_fences(raw)
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise external_service_error(
            SERVICE,
            f"Failed to parse model response as JSON: {e}. Raw (truncated): {text[:500]}",
            cause=e,
            operation="parseAnalysis",
        )

    if not isinstance(data, dict):
        raise external_service_error(
            SERVICE, f"Model response is a JSON {type(data).__name__}, expected an object",
            operation="parseAnalysis",
        )

    try:
        return CallAnalysisResult.model_validate(data)
    except ValidationError as e:
        missing, invalid = [], []
        for err in e.errors():
            field = ".".join(str(part) for part in err["loc"])
            if err["type"] in _EMPTY_ERROR_TYPES:
                missing.append(field)
            else:
                invalid.append(f"{field}: {err['msg']}")
        if missing:
            message = f"Model response missing required fields ({', '.join(missing)})"
        else:
            message = f"Model response has invalid fields ({'; '.join(invalid)})"
        raise external_service_error(SERVICE, message, cause=e, operation="parseAnalysis")


# ── Analysis entry point ──

async def analyze_transcript(
    parsed: ParsedTranscript,
    analyzer: LLMAnalyzer,
    call_timeout_ms: int = settings.ANALYSIS_CALL_TIMEOUT_MS,
    max_attempts: int | None = None,
    sleep: Sleep = asyncio.sleep,
) -> dict:
    """Format, send (with retry + per-call timeout), and validate one analysis.

    Returns the validated result as a plain dict, extra fields included.
    """
    prompt = build_prompt(format_transcript_for_analysis(parsed))

    raw = await with_retry(
        "analyzeTranscript",
        lambda: with_timeout(analyzer.analyze(prompt), call_timeout_ms, "LLM analysis", service=SERVICE),
        ANALYZER_POLICY,
        max_attempts=max_attempts,
        sleep=sleep,
    )

    result = parse_analysis_output(raw)
    logger.info(
        f"Transcript analysis completed: call_type={result.call_type}, deal_stage={result.deal_stage}"
    )
    return result.model_dump(exclude_unset=True)


async def check_llm_health(base_url: str | None = None, api_key: str | None = None) -> dict:
    """Check the LLM endpoint is reachable and list the models it serves."""
    url = (base_url or settings.LLM_BASE_URL).rstrip("/")
    headers = {"Authorization": f"Bearer {api_key or settings.LLM_API_KEY}"}
    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            resp = await client.get(f"{url}/models", headers=headers)
        if resp.status_code == 200:
            models = [m.get("id") for m in resp.json().get("data", [])]
            return {"status": "healthy", "models": models}
        return {"status": "error", "detail": f"HTTP {resp.status_code}"}
    except httpx.TransportError:
        return {"status": "unreachable", "detail": f"Cannot connect to {url}"}
