"""Error hierarchy for the story refinement pipeline.

Only ``ValidationError`` and ``ConfigurationError`` are meant to reach callers of the
orchestrator. Everything else is recovered per advisor and written to the audit trail.
"""

from typing import Optional


class RefineryError(Exception):
    """Base class for all pipeline errors."""

    code = "REFINERY_ERROR"


class ValidationError(RefineryError):
    """The input story document is malformed (empty or whitespace-only)."""

    code = "VALIDATION_ERROR"


class ConfigurationError(RefineryError):
    """Unknown advisor identifier or malformed advisor scope table."""

    code = "CONFIGURATION_ERROR"


class PatchError(RefineryError):
    """A single proposed patch was refused. Non-fatal: the batch is discarded."""

    code = "PATCH_ERROR"

    def __init__(
        self,
        message: str,
        advisor_id: Optional[str] = None,
        path: Optional[str] = None,
        patch_index: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.advisor_id = advisor_id
        self.path = path
        self.patch_index = patch_index

    def describe(self) -> str:
        """Render the error as a single audit line."""
        where = f"patch[{self.patch_index}]" if self.patch_index is not None else "patch"
        target = f" at {self.path}" if self.path else ""
        return f"{self.__class__.__name__}: {where}{target}: {self.message}"


class ScopeViolation(PatchError):
    """Patch targets a path outside the advisor's declared scope."""

    code = "SCOPE_VIOLATION"


class MalformedPatch(PatchError):
    """Field presence or content does not match the patch operation."""

    code = "MALFORMED_PATCH"


class UnresolvedMatch(PatchError):
    """``match`` resolved to zero or several elements."""

    code = "UNRESOLVED_MATCH"


class IdentifierViolation(PatchError):
    """``item.id`` does not satisfy the path's identifier rules."""

    code = "IDENTIFIER_VIOLATION"


class IdentityMismatch(PatchError):
    """``metadata.advisorId`` differs from the invoking advisor."""

    code = "IDENTITY_MISMATCH"


class PatchConflict(PatchError):
    """``add`` would duplicate an identifier already present in the collection."""

    code = "PATCH_CONFLICT"


class OracleError(RefineryError):
    """Base class for failures talking to the reasoning oracle."""

    code = "ORACLE_ERROR"


class OracleTransportError(OracleError):
    """Network failure or timeout calling the oracle. Retried up to the bound."""

    code = "ORACLE_TRANSPORT"


class OracleResponseError(OracleError):
    """The oracle answered, but not with the requested record shape."""

    code = "ORACLE_RESPONSE"


class RewriteFailure(RefineryError):
    """Rewriter output was empty, unparsable, or dropped testable content."""

    code = "REWRITE_FAILURE"


class JudgeReject(RefineryError):
    """Judge overall score fell below the configured floor."""

    code = "JUDGE_REJECT"

    def __init__(self, message: str, overall_score: int):
        super().__init__(message)
        self.overall_score = overall_score


class EvaluationFailed(RefineryError):
    """Evaluator reported blocking issues for this attempt. Retried up to the bound."""

    code = "EVALUATION_FAILED"

    def __init__(self, message: str, evaluation=None):
        super().__init__(message)
        self.evaluation = evaluation
