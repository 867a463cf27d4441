"""Pipeline services: stage scheduling, retrieval, scoring and orchestration."""

from .orchestrator import PipelineResources, ResearchOrchestrator, ResearchOutcome, build_orchestrator

__all__ = ["PipelineResources", "ResearchOrchestrator", "ResearchOutcome", "build_orchestrator"]
