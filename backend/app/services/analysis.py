"""
CallSync - Call Analysis Service

Extracts structured information from completed call transcripts.

Architecture:
    - AnalysisService protocol: the interface the gateway depends on
    - DummyAnalysisService: keyword heuristics, no network (default)
    - OpenAIAnalysisService: LLM extraction via the openai package

Analysis kinds:
    - "pizza_order": fixed question set for the takeout-ordering demo
    - "general": summary, outcome, key points, next steps, confidence

Analysis is non-critical: implementations raise AnalysisError on failure
and callers decide whether to surface it.
"""

from __future__ import annotations

import json
import logging
import re
from abc import abstractmethod
from typing import Any, Optional, Protocol, runtime_checkable

from app.core.exceptions import AnalysisError, ConfigurationError

logger = logging.getLogger(__name__)


ANALYSIS_KINDS = ("pizza_order", "general")

PIZZA_ORDER_QUESTIONS = (
    "Was the pizza order successful?",
    "What specific pizzas were ordered?",
    "Were all 5 pizzas confirmed (2 pepperoni, 1 margherita, 1 meat lovers, 1 vegetarian)?",
    "What is the total cost?",
    "What is the estimated pickup time?",
    "What is the restaurant address?",
    "Is there an order confirmation number?",
    "Were there any substitutions or modifications?",
)

NOT_MENTIONED = "Not mentioned"


# =============================================================================
# Protocol (Interface)
# =============================================================================

@runtime_checkable
class AnalysisService(Protocol):
    """Protocol for transcript analysis backends."""

    @abstractmethod
    async def analyze(
        self,
        transcript: str,
        kind: str = "general",
        metadata: Optional[dict] = None,
        questions: Optional[list[str]] = None,
    ) -> dict[str, Any]:
        """
        Analyze a transcript.

        Args:
            transcript: "speaker: text" lines
            kind: One of ANALYSIS_KINDS
            metadata: Call metadata (id, duration, status) for context
            questions: Extra questions for a general analysis

        Returns:
            Analysis mapping; shape depends on ``kind``

        Raises:
            AnalysisError: If analysis fails
        """
        ...

    @property
    @abstractmethod
    def backend_id(self) -> str:
        """Identifier for logging/health."""
        ...


def summarize_pizza_order(analysis: dict[str, Any]) -> str:
    """Concise one-line summary of a pizza order analysis."""
    outcome = str(analysis.get(PIZZA_ORDER_QUESTIONS[0], "")).lower()
    successful = "yes" in outcome or "successful" in outcome

    if not successful:
        return f"Order unsuccessful. {analysis.get(PIZZA_ORDER_QUESTIONS[7], NOT_MENTIONED)}"

    parts = []
    for label, question in (
        ("Ordered", PIZZA_ORDER_QUESTIONS[1]),
        ("Cost", PIZZA_ORDER_QUESTIONS[3]),
        ("Pickup", PIZZA_ORDER_QUESTIONS[4]),
    ):
        value = analysis.get(question, NOT_MENTIONED)
        if value != NOT_MENTIONED:
            parts.append(f"{label}: {value}")

    return " | ".join(parts) or "Order details extracted successfully"


# =============================================================================
# Dummy Implementation (Development/Testing)
# =============================================================================

class DummyAnalysisService:
    """
    Keyword-based analysis for development and testing.

    Deterministic for a given transcript. Never touches the network.
    """

    _PIZZA_TYPES = ("pepperoni", "margherita", "meat lovers", "supreme", "vegetarian", "cheese", "hawaiian")
    _SUCCESS_WORDS = ("confirmed", "order is in", "ready in", "see you", "thank you for your order")
    _FAILURE_WORDS = ("closed", "can't take", "cannot take", "not available", "sorry, we")

    def __init__(self):
        self._call_count = 0

    @property
    def backend_id(self) -> str:
        return "dummy-analysis-v0.1"

    async def analyze(
        self,
        transcript: str,
        kind: str = "general",
        metadata: Optional[dict] = None,
        questions: Optional[list[str]] = None,
    ) -> dict[str, Any]:
        if kind not in ANALYSIS_KINDS:
            raise AnalysisError(f"Unsupported analysis kind: {kind}")
        if not transcript.strip():
            raise AnalysisError("Empty transcript")

        self._call_count += 1
        logger.debug("DummyAnalysis: kind=%s, %d chars, call #%d", kind, len(transcript), self._call_count)

        if kind == "pizza_order":
            return self._pizza_order(transcript)
        return self._general(transcript, questions or [])

    def _outcome(self, lowered: str) -> str:
        if any(word in lowered for word in self._FAILURE_WORDS):
            return "failed"
        if any(word in lowered for word in self._SUCCESS_WORDS):
            return "successful"
        return "unclear"

    def _pizza_order(self, transcript: str) -> dict[str, Any]:
        lowered = transcript.lower()
        outcome = self._outcome(lowered)

        pizzas = [name for name in self._PIZZA_TYPES if name in lowered]
        cost = re.search(r"\$\s?\d+(?:\.\d{2})?", transcript)
        pickup = re.search(r"\b\d{1,3}\s*(?:minutes|mins|min)\b", lowered)
        confirmation = re.search(r"(?:confirmation|order)\s*(?:number|#)\s*(?:is\s*)?([A-Z0-9-]{3,})", transcript, re.IGNORECASE)

        return {
            PIZZA_ORDER_QUESTIONS[0]: "Yes" if outcome == "successful" else ("No" if outcome == "failed" else "Unclear"),
            PIZZA_ORDER_QUESTIONS[1]: ", ".join(pizzas) if pizzas else NOT_MENTIONED,
            PIZZA_ORDER_QUESTIONS[2]: "Unclear",
            PIZZA_ORDER_QUESTIONS[3]: cost.group(0) if cost else NOT_MENTIONED,
            PIZZA_ORDER_QUESTIONS[4]: pickup.group(0) if pickup else NOT_MENTIONED,
            PIZZA_ORDER_QUESTIONS[5]: NOT_MENTIONED,
            PIZZA_ORDER_QUESTIONS[6]: confirmation.group(1) if confirmation else NOT_MENTIONED,
            PIZZA_ORDER_QUESTIONS[7]: NOT_MENTIONED,
        }

    def _general(self, transcript: str, questions: list[str]) -> dict[str, Any]:
        lines = [line for line in transcript.split("\n") if line.strip()]
        lowered = transcript.lower()
        outcome = self._outcome(lowered)

        key_points = [line.split(": ", 1)[-1] for line in lines[:3]]
        result: dict[str, Any] = {
            "summary": f"Call with {len(lines)} exchanges; outcome {outcome}.",
            "outcome": outcome,
            "key_points": key_points,
            "next_steps": [],
            "confidence": 0.5 if outcome == "unclear" else 0.7,
        }
        if questions:
            result["answers"] = {question: "Unclear" for question in questions}
        return result


# =============================================================================
# OpenAI Implementation
# =============================================================================

class OpenAIAnalysisService:
    """
    LLM-backed analysis using the OpenAI chat completions API.

    The transcript is sent to OpenAI. Requires the ``openai`` package
    (install the ``openai`` extra).
    """

    _PIZZA_SYSTEM_PROMPT = (
        "You are an expert call analyst specialized in pizza ordering conversations. "
        "Extract only information explicitly stated in the transcript. If information is "
        f"unclear or not mentioned, answer \"{NOT_MENTIONED}\" or \"Unclear\". Be precise "
        "with numbers, times and addresses. Reply with a JSON object whose keys are exactly "
        "the questions provided."
    )

    _GENERAL_SYSTEM_PROMPT = (
        "You are an expert call analyst. Reply with a JSON object with keys "
        "summary (string), outcome (one of successful, failed, partial, unclear), "
        "key_points (list of strings), next_steps (list of strings) and "
        "confidence (number between 0 and 1)."
    )

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4.1-nano",
        timeout_seconds: float = 60.0,
    ):
        try:
            from openai import AsyncOpenAI
        except ImportError as e:
            raise ImportError(
                "OpenAIAnalysisService requires 'openai'. "
                "Install with: pip install 'callsync-backend[openai]'"
            ) from e

        if not api_key:
            raise ConfigurationError("OPENAI_API_KEY is required for the openai analysis backend")

        self._model = model
        self._client = AsyncOpenAI(api_key=api_key, timeout=timeout_seconds, max_retries=2)

    @property
    def backend_id(self) -> str:
        return f"openai-{self._model}"

    def _build_prompt(
        self,
        transcript: str,
        kind: str,
        metadata: Optional[dict],
        questions: Optional[list[str]],
    ) -> tuple[str, str, float]:
        meta_lines = ""
        if metadata:
            meta_lines = "\n\nCALL METADATA:\n" + "\n".join(
                f"- {key}: {value if value is not None else 'Unknown'}"
                for key, value in metadata.items()
            )

        if kind == "pizza_order":
            question_lines = "\n".join(f"- {q}" for q in PIZZA_ORDER_QUESTIONS)
            prompt = (
                f"Analyze this pizza ordering phone call transcript.\n\nTRANSCRIPT:\n{transcript}"
                f"{meta_lines}\n\nQUESTIONS:\n{question_lines}"
            )
            return self._PIZZA_SYSTEM_PROMPT, prompt, 0.1

        prompt = f"Please analyze this phone call transcript:\n\nTRANSCRIPT:\n{transcript}{meta_lines}"
        if questions:
            prompt += "\n\nAlso answer, under key 'answers':\n" + "\n".join(f"- {q}" for q in questions)
        return self._GENERAL_SYSTEM_PROMPT, prompt, 0.2

    async def analyze(
        self,
        transcript: str,
        kind: str = "general",
        metadata: Optional[dict] = None,
        questions: Optional[list[str]] = None,
    ) -> dict[str, Any]:
        if kind not in ANALYSIS_KINDS:
            raise AnalysisError(f"Unsupported analysis kind: {kind}")

        system_prompt, prompt, temperature = self._build_prompt(transcript, kind, metadata, questions)

        try:
            completion = await self._client.chat.completions.create(
                model=self._model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": prompt},
                ],
                response_format={"type": "json_object"},
                temperature=temperature,
                max_tokens=1000,
            )
        except Exception as e:
            logger.error("OpenAI analysis request failed: %s", str(e))
            raise AnalysisError(f"OpenAI analysis failed: {e}") from e

        content = completion.choices[0].message.content if completion.choices else None
        if not content:
            raise AnalysisError("OpenAI returned no completion")

        try:
            result = json.loads(content)
        except json.JSONDecodeError as e:
            raise AnalysisError(f"OpenAI returned invalid JSON: {e}") from e

        if not isinstance(result, dict):
            raise AnalysisError("OpenAI returned a non-object analysis")
        return result


def create_analysis_service(settings) -> AnalysisService:
    """
    Select the analysis backend from settings.

    - analysis_backend: "dummy" | "openai"
    """
    backend = getattr(settings, "analysis_backend", "dummy").lower()

    if backend == "openai":
        service = OpenAIAnalysisService(
            api_key=settings.openai_api_key,
            model=settings.openai_model,
            timeout_seconds=settings.analysis_timeout_seconds,
        )
        logger.info("Analysis backend: %s", service.backend_id)
        return service

    if backend != "dummy":
        raise ConfigurationError(f"Unknown analysis backend: {backend}")

    return DummyAnalysisService()
