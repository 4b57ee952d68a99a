"""Content generators for intervention payloads.

Each intervention kind maps to a generator. Generators are external and
may be slow or fail; the loop bounds them with a timeout and falls back
to the deterministic TemplateGenerator.
"""

import json
import logging
import time
from typing import Any, Literal, Optional, Protocol

from openai import AsyncOpenAI
from pydantic import BaseModel, Field

from attune.core.errors import GenerationError

from .models import Intervention, InterventionKind, ProblemType, Severity

logger = logging.getLogger(__name__)

DetailLevel = Literal["brief", "standard", "deep"]


# =============================================================================
# Request / Result
# =============================================================================


class GenerationRequest(BaseModel):
    """What a generator needs to know about one intervention."""

    intervention_id: str
    kind: InterventionKind
    problem_type: ProblemType
    severity: Severity
    description: str
    concepts: list[str] = Field(default_factory=list)
    affected_components: list[str] = Field(default_factory=list)
    suggested_actions: list[str] = Field(default_factory=list)
    detail_level: DetailLevel = "standard"
    target_duration_seconds: int = 120  # How long the user should spend on it

    @classmethod
    def for_intervention(cls, intervention: Intervention) -> "GenerationRequest":
        problem = intervention.problem
        # Urgent problems get short payloads; low-severity lessons can go deep
        if problem.severity.rank >= Severity.HIGH.rank:
            detail, duration = "brief", 60
        elif intervention.kind == InterventionKind.LESSON and problem.severity == Severity.LOW:
            detail, duration = "deep", 300
        else:
            detail, duration = "standard", 120
        return cls(
            intervention_id=intervention.id,
            kind=intervention.kind,
            problem_type=problem.type,
            severity=problem.severity,
            description=problem.description,
            concepts=list(problem.concepts),
            affected_components=sorted(problem.affected_components),
            suggested_actions=list(problem.suggested_actions),
            detail_level=detail,
            target_duration_seconds=duration,
        )


class GenerationResult(BaseModel):
    """A generated payload and how confident the generator is in it."""

    payload: dict[str, Any]
    confidence: float = Field(ge=0.0, le=1.0)
    generator: str


class ContentGenerator(Protocol):
    """Produces a payload for one intervention request."""

    name: str

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        ...


# =============================================================================
# Template fallback
# =============================================================================


class TemplateGenerator:
    """Deterministic payloads built from the problem alone. Never fails."""

    name = "template"
    CONFIDENCE = 0.3

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        subject = ", ".join(request.concepts or request.affected_components) or "this code"
        steps = request.suggested_actions or [f"Take another look at {subject}"]

        if request.kind == InterventionKind.LESSON:
            payload = {
                "title": f"Refresher: {subject}",
                "summary": request.description,
                "sections": [{"heading": f"What {concept} is for", "body": ""} for concept in request.concepts],
                "exercises": steps,
            }
        elif request.kind == InterventionKind.DIAGRAM:
            nodes = request.affected_components
            payload = {
                "title": request.description,
                "nodes": nodes,
                "edges": [[a, b] for a, b in zip(nodes, nodes[1:] + nodes[:1])] if len(nodes) > 1 else [],
                "notes": steps,
            }
        elif request.kind == InterventionKind.CODE_FIX:
            payload = {
                "title": request.description,
                "files": request.affected_components,
                "steps": steps,
                "patch": None,
            }
        else:
            payload = {"text": f"{request.description}. {steps[0]}."}

        payload["detail_level"] = request.detail_level
        return GenerationResult(payload=payload, confidence=self.CONFIDENCE, generator=self.name)


# =============================================================================
# LLM-backed generator
# =============================================================================

SYSTEM_PROMPTS = {
    InterventionKind.LESSON: (
        "You write short, focused programming lessons for a learner who just "
        "hit a gap in their knowledge. Respond with a JSON object: "
        '{"title": str, "summary": str, "sections": [{"heading": str, "body": str}], '
        '"exercises": [str], "confidence": float between 0 and 1}.'
    ),
    InterventionKind.DIAGRAM: (
        "You describe software architecture problems as diagrams. Respond with a "
        'JSON object: {"title": str, "nodes": [str], "edges": [[str, str]], '
        '"notes": [str], "confidence": float between 0 and 1}.'
    ),
    InterventionKind.CODE_FIX: (
        "You propose minimal, correct code fixes and explain them briefly. "
        'Respond with a JSON object: {"title": str, "files": [str], "steps": [str], '
        '"patch": str or null, "confidence": float between 0 and 1}.'
    ),
    InterventionKind.HINT: (
        "You give one-sentence hints that nudge without solving. Respond with "
        'a JSON object: {"text": str, "confidence": float between 0 and 1}.'
    ),
}


class LLMContentGenerator:
    """Generates payloads with an OpenAI-compatible chat model.

    Example:
        generator = LLMContentGenerator(get_llm_client(), model=settings.llm_model)
        result = await generator.generate(request)
    """

    MODEL = "gpt-4o-mini"
    MAX_TOKENS = 1200
    TEMPERATURE = 0.4
    DEFAULT_CONFIDENCE = 0.7  # When the model does not report one

    def __init__(
        self,
        client: AsyncOpenAI,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        name: str = "llm",
    ):
        """Initialize the generator.

        Args:
            client: Async OpenAI-compatible client
            model: Model to use (default: gpt-4o-mini)
            max_tokens: Max tokens for response (default: 1200)
            temperature: Temperature for generation (default: 0.4)
            name: Name recorded in reasoning traces
        """
        self.client = client
        self.model = model or self.MODEL
        self.max_tokens = max_tokens or self.MAX_TOKENS
        self.temperature = temperature or self.TEMPERATURE
        self.name = name

    def _build_user_prompt(self, request: GenerationRequest) -> str:
        parts = [f"Problem ({request.problem_type.value}, {request.severity.value}): {request.description}"]
        if request.concepts:
            parts.append(f"Concepts involved: {', '.join(request.concepts)}")
        if request.affected_components:
            parts.append(f"Affected: {', '.join(request.affected_components)}")
        if request.suggested_actions:
            parts.append("Suggested actions:\n" + "\n".join(f"- {a}" for a in request.suggested_actions))
        parts.append(
            f"Detail level: {request.detail_level}. "
            f"The user should need about {request.target_duration_seconds} seconds."
        )
        return "\n\n".join(parts)

    def _parse_response(self, content: str) -> GenerationResult:
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise GenerationError(self.name, "invalid JSON", str(e)) from e
        if not isinstance(data, dict):
            raise GenerationError(self.name, "expected a JSON object")

        confidence = data.pop("confidence", self.DEFAULT_CONFIDENCE)
        try:
            confidence = min(1.0, max(0.0, float(confidence)))
        except (TypeError, ValueError):
            confidence = self.DEFAULT_CONFIDENCE
        return GenerationResult(payload=data, confidence=confidence, generator=self.name)

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        """Generate a payload.

        Raises:
            GenerationError: If the call fails or returns nothing usable.
        """
        start_time = time.time()
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPTS[request.kind]},
                    {"role": "user", "content": self._build_user_prompt(request)},
                ],
                response_format={"type": "json_object"},
                max_tokens=self.max_tokens,
                temperature=self.temperature,
            )
        except Exception as e:
            elapsed = (time.time() - start_time) * 1000
            logger.error(f"{request.kind.value} generation failed after {elapsed:.0f}ms: {e}")
            raise GenerationError(self.name, "request failed", str(e)) from e

        elapsed = (time.time() - start_time) * 1000
        logger.info(f"{request.kind.value} generation completed in {elapsed:.0f}ms")

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise GenerationError(self.name, "empty response")
        return self._parse_response(content)


def default_generators(
    client: Optional[AsyncOpenAI],
    model: Optional[str] = None,
) -> dict[InterventionKind, ContentGenerator]:
    """LLM generators for lessons, diagrams and code fixes; hints stay on templates."""
    if client is None:
        return {}
    generator = LLMContentGenerator(client, model=model)
    return {
        InterventionKind.LESSON: generator,
        InterventionKind.DIAGRAM: generator,
        InterventionKind.CODE_FIX: generator,
    }
