from __future__ import annotations


class OrchestratorError(Exception):
    """Base class for every error raised by ddo."""


class ManifestError(OrchestratorError):
    """The manifest is malformed. Fatal: no operation runs."""

    def __init__(self, problems: list[str] | str):
        if isinstance(problems, str):
            problems = [problems]
        self.problems = list(problems)
        super().__init__("; ".join(self.problems))


class ConfigError(OrchestratorError):
    """A provider cannot be constructed (unknown kind, missing credential...)."""


class PlanError(OrchestratorError):
    """The operation graph is not a DAG or references unknown operations."""


class ProviderError(OrchestratorError):
    """A provider call failed. Subclasses say whether retrying can help."""

    transient = False

    def __init__(self, message: str, provider: str | None = None, retry_after: float | None = None):
        self.provider = provider
        # Seconds the provider asked us to wait before calling again (rate limits).
        self.retry_after = retry_after
        super().__init__(message)


class TransientProviderError(ProviderError):
    """Rate limit, timeout, 5xx... safe to retry."""

    transient = True


class PermanentProviderError(ProviderError):
    """Invalid parameters, quota exceeded... needs a manifest correction."""


class CancellationError(OrchestratorError):
    """The run was aborted by the operator or by the run timeout."""
