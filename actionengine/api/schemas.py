"""
Request and response models for the action engine HTTP API.
Identity fields stay optional so the endpoints can answer 401/400 themselves
with the body shapes callers expect.
"""

from pydantic import BaseModel, field_validator
from typing import Optional, List, Dict, Any

from ..core.config import BATCH_DEFAULT_MAX_CONCURRENT


class ExecuteActionRequest(BaseModel):
    action: Optional[Dict[str, Any]] = None
    userId: Optional[str] = None


class ExecuteActionResponse(BaseModel):
    success: bool
    action_id: str
    message: str
    data: Dict[str, Any] = {}
    actual_impact: Optional[float] = None
    warnings: List[str] = []


class ApprovalRequiredResponse(BaseModel):
    status: str = "requires_approval"
    action_id: str
    approval_details: Dict[str, Any]


class RollbackRequest(BaseModel):
    actionId: Optional[str] = None
    userId: Optional[str] = None
    reason: Optional[str] = None


class RollbackResponse(BaseModel):
    success: bool
    action_id: str
    message: str
    rolled_back_at: Optional[str] = None


class BatchConfigModel(BaseModel):
    batch_name: str
    batch_type: str = "manual"
    execute_parallel: bool = False
    max_concurrent: int = BATCH_DEFAULT_MAX_CONCURRENT
    stop_on_error: bool = False

    @field_validator('batch_name')
    @classmethod
    def batch_name_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('batch_name cannot be empty')
        return v

    @field_validator('max_concurrent')
    @classmethod
    def max_concurrent_must_be_positive(cls, v):
        if v < 1 or v > 100:
            raise ValueError('max_concurrent must be between 1 and 100')
        return v


class BatchRequest(BaseModel):
    batch_config: BatchConfigModel
    requests: List[Dict[str, Any]]
    userId: Optional[str] = None


class ApprovalDecisionRequest(BaseModel):
    decision: str
    approver: str
    notes: str = ""

    @field_validator('decision')
    @classmethod
    def decision_must_be_valid(cls, v):
        valid_decisions = ['approve', 'deny']
        if v.lower() not in valid_decisions:
            raise ValueError(f'decision must be one of: {valid_decisions}')
        return v.lower()

    @field_validator('approver')
    @classmethod
    def approver_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('approver cannot be empty')
        return v


class ApprovalDecisionResponse(BaseModel):
    status: str
    action: Dict[str, Any]
    approval: Optional[Dict[str, Any]] = None
    execution: Optional[Dict[str, Any]] = None


class ApprovalListResponse(BaseModel):
    pending_approvals: List[Dict[str, Any]]


class ActionListResponse(BaseModel):
    actions: List[Dict[str, Any]]


class AuditListResponse(BaseModel):
    action_id: str
    entries: List[Dict[str, Any]]


class HealthResponse(BaseModel):
    status: str
    version: str
    db_health: bool
    action_count: int
    heartbeat: str
