from .credibility import (
    Consensus,
    CredibilityBreakdown,
    CredibilityReport,
    CredibilityScore,
    CrossValidationResult,
    EvidenceStrength,
    Recommendation,
    RiskLevel,
    Sentiment,
    UncertaintyAssessment,
)
from .research import (
    ClaimList,
    Critique,
    Fact,
    FactCheckItem,
    FactCheckReport,
    PlanStep,
    QueryList,
    ResearchBundle,
    RouterPlan,
    Source,
    Stage,
    TokenUsage,
)

__all__ = [
    "ClaimList",
    "Consensus",
    "CredibilityBreakdown",
    "CredibilityReport",
    "CredibilityScore",
    "Critique",
    "CrossValidationResult",
    "EvidenceStrength",
    "Fact",
    "FactCheckItem",
    "FactCheckReport",
    "PlanStep",
    "QueryList",
    "Recommendation",
    "ResearchBundle",
    "RiskLevel",
    "RouterPlan",
    "Sentiment",
    "Source",
    "Stage",
    "TokenUsage",
    "UncertaintyAssessment",
]
