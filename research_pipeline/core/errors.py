"""
Error taxonomy for the research pipeline.

Stage-level errors are recovered by the orchestrator (fallback or degraded
default); only ``FatalConfigError`` and ``RunCancelledError`` end a run.
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for every error raised by the pipeline."""


class StageTimeout(PipelineError):
    """A stage exceeded its deadline slice; the fallback result was used."""

    def __init__(self, stage: str, slice_ms: int, stopped: bool = True):
        self.stage = stage
        self.slice_ms = slice_ms
        self.stopped = stopped
        super().__init__(f"Stage '{stage}' exceeded its {slice_ms}ms slice")


class StageFailure(PipelineError):
    """The primary task of a stage raised before its slice expired."""

    def __init__(self, stage: str, cause: Optional[BaseException] = None):
        self.stage = stage
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Stage '{stage}' failed{detail}")


class ExternalUnavailable(PipelineError):
    """An external provider (search, page fetch) is unconfigured or unreachable."""

    def __init__(self, provider: str, reason: str = ""):
        self.provider = provider
        self.reason = reason
        super().__init__(f"{provider} unavailable" + (f": {reason}" if reason else ""))


class ParseFailure(PipelineError):
    """No extraction strategy produced valid structured data from model output."""

    def __init__(self, target: str, raw: str = ""):
        self.target = target
        self.raw = raw
        super().__init__(f"Could not parse {target} from model output")


class FatalConfigError(PipelineError):
    """A required credential or setting is missing; the run never starts."""


class RunCancelledError(PipelineError):
    """The run was aborted by an external cancellation signal."""

    def __init__(self, stage: Optional[str] = None):
        self.stage = stage
        super().__init__(
            "Research run cancelled" + (f" during stage '{stage}'" if stage else "")
        )


# ────────────────────────────────────────────────────────────
#  Text generation errors
# ────────────────────────────────────────────────────────────


class LLMError(PipelineError):
    """Base class for text-generation failures."""


class LLMRateLimitedError(LLMError):
    """The provider rejected the call because of rate limiting."""


class LLMTimeoutError(LLMError):
    """The provider did not answer in time."""


class LLMInvalidRequestError(LLMError):
    """The request was rejected as malformed; retrying will not help."""
