"""Error taxonomy for the triage engine.

Two layers live here:

- provider-level errors (`ProviderError`, `ProviderTimeout`, `SafetyBlock`,
  `InvalidVerdict`) raised while talking to the AI provider and classified by
  the retry policy as transient or not;
- reported failures (`AssessmentFailure` and subclasses) that leave the
  assessment client and carry a machine-readable `kind`.
"""

from __future__ import annotations


class ProviderError(Exception):
    """Transport or HTTP-level failure from the AI provider."""

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    @property
    def transient(self) -> bool:
        # No status means the request never completed (connection reset, DNS, ...).
        if self.status_code is None:
            return True
        return self.status_code >= 500


class ProviderTimeout(ProviderError):
    @property
    def transient(self) -> bool:
        return True


class SafetyBlock(Exception):
    """The provider (or our own rating check) refused the content."""

    def __init__(self, reason: str, *, category: str | None = None):
        super().__init__(reason)
        self.reason = reason
        self.category = category


class InvalidVerdict(Exception):
    """Model output was not a JSON object or failed verdict validation."""


class AssessmentFailure(Exception):
    kind = "assessment_failed"

    def __init__(self, message: str, *, kind: str | None = None):
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}"


class SafetyBlockedFailure(AssessmentFailure):
    kind = "safety_blocked"


class InvalidResponseFailure(AssessmentFailure):
    kind = "invalid_response"


class ProviderUnavailableFailure(AssessmentFailure):
    kind = "provider_unavailable"


class ProviderRejectedFailure(AssessmentFailure):
    kind = "provider_rejected"


class ConcurrentAssessmentFailure(AssessmentFailure):
    kind = "concurrent_assessment"


class HealthPermissionError(Exception):
    """Health-data access has not been granted."""


class HealthProviderError(Exception):
    """Health-data source failed for a reason other than permissions."""


class InvalidTransition(Exception):
    """A workflow event arrived in a state that does not accept it."""

    def __init__(self, state: object, event: object):
        super().__init__(f"{type(event).__name__} is not valid in state {getattr(state, 'name', state)!r}")
        self.state = state
        self.event = event
