"""
Error taxonomy for governed execution and analytics.

Every failure that reaches a tool caller is one of these. Each carries a
stable ``code`` and structured ``details`` so the caller (usually an LLM)
can correct itself without parsing prose.
"""

from typing import Any, Optional


class GovernanceError(Exception):
    """Base class for structured, caller-facing failures."""

    code = "governance_error"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_payload(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, **self.details}


class CatalogNotAllowed(GovernanceError):
    code = "catalog_not_allowed"


class MissingParamsContract(GovernanceError):
    code = "missing_params_contract"


class InvalidParameters(GovernanceError):
    code = "invalid_parameters"


class SchemaMetadataRequired(GovernanceError):
    code = "SCHEMA_METADATA_REQUIRED"


class DatasetNotFound(GovernanceError):
    code = "dataset_not_found"

    def __init__(self, dataset_id: str):
        super().__init__(
            f"Dataset '{dataset_id}' was not found or has expired. "
            "Run query.execute again to obtain a fresh datasetId.",
            {"datasetId": dataset_id},
        )
        self.dataset_id = dataset_id


class InvalidPipeline(GovernanceError):
    code = "invalid_pipeline"

    def __init__(self, errors: list[str]):
        super().__init__(
            "Pipeline validation failed; nothing was executed.", {"errors": errors}
        )
        self.errors = errors


class ExecutionFailed(GovernanceError):
    code = "execution_failed"


class ExecutionCancelled(ExecutionFailed):
    """Raised when a pipeline exceeds its time budget or is cancelled."""


class ExecutionTimeout(ExecutionFailed):
    """Raised when a catalog or data source call exceeds the command timeout."""

    code = "execution_timeout"
