"""
Pydantic models for the entities that flow between pipeline stages.

Field aliases accept the camelCase keys language models tend to emit
(``useWeb``, ``publishedDate``) while Python code uses snake_case.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

Topic = Literal["general", "news", "code", "math", "hci", "research"]
TOPICS = ("general", "news", "code", "math", "hci", "research")


class Stage(str, Enum):
    PLAN = "plan"
    RETRIEVE = "retrieve"
    EXTRACT = "extract"
    ANALYZE = "analyze"
    WRITE = "write"
    VERIFY = "verify"
    CRITIQUE = "critique"
    COMPLETE = "complete"


class PlanStep(str, Enum):
    RESEARCHER = "Researcher"
    ANALYST = "Analyst"
    WRITER = "Writer"
    FACT_CHECKER = "FactChecker"
    CRITIC = "Critic"


DEFAULT_STEPS: List[str] = [
    PlanStep.RESEARCHER.value,
    PlanStep.ANALYST.value,
    PlanStep.WRITER.value,
    PlanStep.CRITIC.value,
]


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class Source(_Model):
    """One retrieved document; ``url`` is unique within a run."""

    url: str
    title: Optional[str] = None
    snippet: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("snippet", "content_snippet", "description")
    )
    published_date: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("published_date", "publishedDate", "published"),
    )
    score: float = Field(default=0.0, ge=0.0, le=1.0)
    content: Optional[str] = None

    @property
    def text(self) -> str:
        """Title and snippet joined; the text heuristics look at."""
        return " ".join(p for p in (self.title, self.snippet) if p)


class Fact(_Model):
    statement: str = Field(validation_alias=AliasChoices("statement", "claim", "fact"))
    source_ref: str = Field(
        default="",
        validation_alias=AliasChoices("source_ref", "sourceRef", "source", "url"),
    )
    evidence: Optional[str] = None
    published_date: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("published_date", "publishedDate", "published"),
    )


class RouterPlan(_Model):
    """Routing decision made once by the Plan stage; immutable afterwards."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    use_web: bool = Field(default=True, validation_alias=AliasChoices("use_web", "useWeb"))
    topic: Topic = "general"
    step_sequence: List[str] = Field(
        default_factory=lambda: list(DEFAULT_STEPS),
        validation_alias=AliasChoices("step_sequence", "stepSequence", "steps"),
    )
    max_iterations: int = Field(
        default=1, ge=1, le=3, validation_alias=AliasChoices("max_iterations", "maxIterations")
    )

    @field_validator("topic", mode="before")
    @classmethod
    def _normalize_topic(cls, value):
        value = str(value or "general").strip().lower()
        return value if value in TOPICS else "general"

    @field_validator("max_iterations", mode="before")
    @classmethod
    def _clamp_iterations(cls, value):
        try:
            return min(3, max(1, int(value)))
        except (TypeError, ValueError):
            return 1


class ResearchBundle(_Model):
    sources: List[Source] = Field(default_factory=list)
    facts: List[Fact] = Field(default_factory=list)
    notes: Optional[str] = None


class Critique(_Model):
    verdict: Literal["approve", "revise"] = "approve"
    issues: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)
    inline_edits: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("inline_edits", "inlineEdits")
    )

    @field_validator("verdict", mode="before")
    @classmethod
    def _normalize_verdict(cls, value):
        return "revise" if str(value or "").strip().lower() == "revise" else "approve"


ClaimVerdict = Literal["SUPPORTED", "WEAK", "NO_EVIDENCE", "CONTRADICTED"]


class FactCheckItem(_Model):
    claim: str
    verdict: ClaimVerdict = "WEAK"
    citations: List[str] = Field(default_factory=list)
    notes: Optional[str] = None

    @field_validator("verdict", mode="before")
    @classmethod
    def _normalize_verdict(cls, value):
        value = str(value or "").strip().upper().replace(" ", "_")
        return value if value in {"SUPPORTED", "WEAK", "NO_EVIDENCE", "CONTRADICTED"} else "WEAK"


class FactCheckReport(_Model):
    claims: List[FactCheckItem] = Field(default_factory=list)

    @property
    def needs_revision(self) -> bool:
        return any(item.verdict != "SUPPORTED" for item in self.claims)


class ClaimList(_Model):
    claims: List[str] = Field(default_factory=list)


class QueryList(_Model):
    queries: List[str] = Field(default_factory=list)


class TokenUsage(_Model):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    by_stage: Dict[str, int] = Field(default_factory=dict)
