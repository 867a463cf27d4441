"""Result models produced by the credibility evaluator.

Score fields are integers on a 0-100 scale; the uncertainty confidence is a
fraction in [0, 1]. Consumers read both scales as-is.
"""

from __future__ import annotations

from enum import Enum
from typing import List

from pydantic import BaseModel, Field

from .research import Source


class Consensus(str, Enum):
    STRONG = "strong"
    WEAK = "weak"
    CONFLICTING = "conflicting"


class EvidenceStrength(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Recommendation(str, Enum):
    PROCEED = "proceed"
    CAUTION = "caution"
    REJECT = "reject"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Sentiment(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"
    NEUTRAL = "neutral"


class CrossValidationResult(BaseModel):
    claim: str
    supporting_sources: List[Source] = Field(default_factory=list)
    contradicting_sources: List[Source] = Field(default_factory=list)
    confidence: int = Field(default=0, ge=0, le=100)
    consensus: Consensus = Consensus.WEAK
    evidence_strength: EvidenceStrength = EvidenceStrength.LOW


class UncertaintyAssessment(BaseModel):
    confidence: float = Field(ge=0.0, le=1.0)
    factors: List[str] = Field(default_factory=list)
    alternatives: List[str] = Field(default_factory=list)
    recommendation: Recommendation
    risk_level: RiskLevel


class CredibilityBreakdown(BaseModel):
    source_quality: int = Field(ge=0, le=100)
    fact_checking: int = Field(ge=0, le=100)
    cross_validation: int = Field(ge=0, le=100)
    temporal_validity: int = Field(ge=0, le=100)
    authority_weight: int = Field(ge=0, le=100)


class CredibilityScore(BaseModel):
    overall: int = Field(ge=0, le=100)
    breakdown: CredibilityBreakdown
    recommendations: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class CredibilityReport(BaseModel):
    """Everything the evaluator produced for one run."""

    score: CredibilityScore
    cross_validation: List[CrossValidationResult] = Field(default_factory=list)
    uncertainty: UncertaintyAssessment
