"""Exception types shared across the l10n pipeline.

Configuration, resolution and lock errors abort a run. Generation and
validation errors are recoverable: the orchestrator consumes a retry slot
and feeds the message back to the translator.
"""
from typing import Optional


class L10nError(Exception):
    """Base class for every error raised by l10n."""


class ConfigurationError(L10nError):
    """A descriptor file or directive is malformed or invalid."""


class ResolutionError(L10nError):
    """Discovery or glob expansion failed while building the plan."""


class LockFileError(L10nError):
    """A lock file exists but cannot be parsed."""


class GenerationError(L10nError):
    """The generation backend failed to produce a usable response."""


class BackendConfigError(GenerationError):
    """A required connection field (base URL, model) is missing."""


class UnsupportedRoleError(GenerationError):
    """A message role is not supported by the selected backend variant."""


class BackendStatusError(GenerationError):
    """The backend answered with a non-success status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class EmptyResponseError(GenerationError):
    """The backend answered without any text."""


class ToolError(L10nError):
    """A validation tool rejected the produced text."""

    def __init__(self, tool: str, detail: str):
        super().__init__(f"{tool} tool failed: {detail}")
        self.tool = tool
        self.detail = detail


class TranslationFailed(L10nError):
    """All attempts for one (source, language) pair were exhausted."""

    def __init__(self, source_path: str, lang: str, last_error: Exception, attempts: int):
        super().__init__(f"translate {source_path} ({lang}) failed after {attempts} attempt(s): {last_error}")
        self.source_path = source_path
        self.lang = lang
        self.last_error = last_error
        self.attempts = attempts

    @property
    def tool(self) -> Optional[str]:
        return getattr(self.last_error, "tool", None)


class MissingOutputError(L10nError):
    """A planned output file does not exist when it must be checked."""


class UnsafePathError(L10nError):
    """A path to be removed resolves outside the project root."""
