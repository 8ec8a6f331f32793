"""Structured exception hierarchy for the workflow edit engine."""

from typing import Optional, Dict, Any
from pydantic import BaseModel


class Notice(BaseModel):
    """Transient message surfaced to the editor UI"""
    level: str = "info"
    title: str
    description: Optional[str] = None
    context: Dict[str, Any] = {}

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class WorkflowEditError(Exception):
    """Base exception for edit engine errors"""

    def __init__(self, message: str, workflow_id: str = "", **context):
        self.message = message
        self.workflow_id = workflow_id
        self.context = context
        super().__init__(message)


class StructuralEditError(WorkflowEditError):
    """An edit that was rejected locally; the graph is left unchanged"""
    pass


class BranchesExhausted(StructuralEditError):
    pass


class CycleRejected(StructuralEditError):
    pass


class InvalidConfigShape(StructuralEditError):
    pass


class UnknownNode(StructuralEditError):
    pass


class DuplicateNode(StructuralEditError):
    pass


class ValidationFailed(WorkflowEditError):
    """Trigger save blocked; carries one message per offending field"""

    def __init__(self, field_errors: Dict[str, str], workflow_id: str = "", **context):
        self.field_errors = dict(field_errors)
        summary = "; ".join(f"{field}: {error}" for field, error in sorted(self.field_errors.items()))
        super().__init__(f"Validation failed: {summary}", workflow_id, **context)


class TriggerStateError(WorkflowEditError):
    pass


class GraphCompileError(WorkflowEditError):
    pass


class PersistError(WorkflowEditError):
    pass


class PersistConflict(PersistError):

    def __init__(self, message: str, workflow_id: str = "", current_revision: Optional[int] = None, **context):
        self.current_revision = current_revision
        super().__init__(message, workflow_id, **context)


class PersistTimeout(PersistError):
    pass


class PersistFailed(PersistError):

    def __init__(self, message: str, workflow_id: str = "", status_code: Optional[int] = None, **context):
        self.status_code = status_code
        super().__init__(message, workflow_id, **context)
