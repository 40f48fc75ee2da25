"""LLM-backed correlation scorer.

LLMScorer satisfies the correlator's Scorer capability. It asks a model how
likely an occurrence shares a root cause with an incident and blends that
with the deterministic weighted score:

    score = (1 - blend) * weighted + blend * model

Any failure (API error, timeout, unparseable answer) falls back to the
weighted score alone, so correlation never stalls on the model. Model
answers are cached per (fingerprint, incident, member set), which keeps
replays of the same history reproducible within one process.
"""

import asyncio
import json
import logging

import openai
from pydantic import BaseModel, Field

from core.correlator import WeightedScorer
from llm.base import LLMClient
from schemas.incident import Incident
from schemas.occurrence import Occurrence
from schemas.policy import Policy
from utils.parse import LLMParseError, parse_llm_json

logger = logging.getLogger(__name__)

DEFAULT_BLEND = 0.5
DEFAULT_TIMEOUT_SECONDS = 10.0

SYSTEM_PROMPT = """You are an SRE assistant that decides whether a new alert belongs to an existing incident.
You receive one new alert condition and the alert conditions already grouped in the incident.
Judge only whether they plausibly share one root cause, using resource names, metrics, timing and severity.

Respond with JSON only, no commentary:
{"score": <number between 0 and 1>, "reason": "<one short sentence>"}"""


class RelatednessVerdict(BaseModel):
    score: float = Field(ge=0.0, le=1.0)
    reason: str = ""


class LLMScorer:
    """Scorer that blends a model's relatedness judgement into the weighted score.

    Attributes:
        llm: Provider client.
        blend: Weight of the model's score, in [0, 1].
        timeout_seconds: Upper bound on one model call.
    """

    def __init__(
        self,
        llm: LLMClient,
        blend: float = DEFAULT_BLEND,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        fallback: WeightedScorer | None = None,
    ) -> None:
        if not 0.0 <= blend <= 1.0:
            raise ValueError(f"blend must be in [0, 1], got {blend}")
        self.llm = llm
        self.blend = blend
        self.timeout_seconds = timeout_seconds
        self._fallback = fallback or WeightedScorer()
        self._cache: dict[tuple, float] = {}

    async def score(self, occurrence: Occurrence, incident: Incident, policy: Policy) -> float:
        weighted = self._fallback.breakdown(occurrence, incident, policy).total
        key = (occurrence.fingerprint, incident.incident_id, frozenset(incident.member_fingerprints))

        model_score = self._cache.get(key)
        if model_score is None:
            model_score = await self._ask(occurrence, incident)
            if model_score is None:
                return weighted
            self._cache[key] = model_score

        return round((1.0 - self.blend) * weighted + self.blend * model_score, 4)

    async def _ask(self, occurrence: Occurrence, incident: Incident) -> float | None:
        try:
            raw = await asyncio.wait_for(
                self.llm.complete(SYSTEM_PROMPT, _describe(occurrence, incident)),
                timeout=self.timeout_seconds,
            )
            verdict = parse_llm_json(raw, RelatednessVerdict)
        except LLMParseError as exc:
            logger.warning("LLM scorer returned unparseable output for %s: %s", occurrence.fingerprint, exc)
            return None
        except asyncio.TimeoutError:
            logger.warning("LLM scorer timed out after %.1fs for %s.", self.timeout_seconds, occurrence.fingerprint)
            return None
        except openai.APIError as exc:
            logger.error("LLM scorer API error for %s: %s", occurrence.fingerprint, exc)
            return None

        logger.debug(
            "LLM relatedness %s -> %s: %.2f (%s)",
            occurrence.fingerprint, incident.incident_id, verdict.score, verdict.reason,
        )
        return verdict.score


def _describe(occurrence: Occurrence, incident: Incident) -> str:
    """User-turn content: the new condition and the incident's current members."""
    return json.dumps(
        {
            "new_alert": {
                "resource": occurrence.resource,
                "metric": occurrence.metric,
                "severity": occurrence.severity.value,
                "last_seen": occurrence.last_seen.isoformat(),
                "count": occurrence.count,
            },
            "incident": {
                "severity": incident.severity.value,
                "members": [
                    {
                        "resource": m.resource,
                        "metric": m.metric,
                        "severity": m.severity.value,
                        "last_seen": m.last_seen.isoformat(),
                    }
                    for m in sorted(incident.current_members(), key=lambda m: m.fingerprint)
                ],
            },
        },
        indent=2,
    )
