"""
HTTP API for the action execution engine.
Status codes are part of the contract: callers branch on 200/202/400/401.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Depends, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .schemas import (
    ActionListResponse,
    ApprovalDecisionRequest,
    ApprovalDecisionResponse,
    ApprovalListResponse,
    ApprovalRequiredResponse,
    AuditListResponse,
    BatchRequest,
    ExecuteActionRequest,
    ExecuteActionResponse,
    HealthResponse,
    RollbackRequest,
    RollbackResponse,
)
from ..core import heartbeat
from ..core.commerce import InMemoryCommerce
from ..core.config import CATALOG_SEED_PATH, VERSION, debug_enabled
from ..core.dao import SQLiteActionRepository
from ..core.db import health_check
from ..core.engine import ActionEngine
from ..core.errors import (
    ActionNotFoundError,
    AlreadyRolledBackError,
    ApprovalConflictError,
    ApprovalNotFoundError,
    BatchNotFoundError,
    RollbackError,
    StateConflictError,
    UnauthorizedActionError,
    ValidationError,
)
from ..core.schema import ActionRequest, BatchConfig
from ..util.logging import logger

_engine: Optional[ActionEngine] = None


def build_engine(db_path: Optional[str] = None) -> ActionEngine:
    """Default wiring: SQLite repository and the in-memory commerce backend."""
    repository = SQLiteActionRepository(db_path)
    if CATALOG_SEED_PATH:
        commerce = InMemoryCommerce.from_json_file(CATALOG_SEED_PATH)
    else:
        commerce = InMemoryCommerce()
    return ActionEngine(repository, commerce)


def get_engine() -> ActionEngine:
    """FastAPI dependency; tests override it with their own engine."""
    global _engine
    if _engine is None:
        _engine = build_engine()
    return _engine


@asynccontextmanager
async def lifespan(app: FastAPI):
    if heartbeat.is_approval_sweep_enabled():
        heartbeat.register_approval_sweeps(get_engine())
        heartbeat.start_background()
    yield
    heartbeat.stop()
    if _engine is not None:
        _engine.shutdown()


app = FastAPI(
    title="Action Execution Engine",
    version=VERSION,
    description="Validated, approval-gated and reversible business actions",
    docs_url="/docs" if debug_enabled() else None,
    redoc_url="/redoc" if debug_enabled() else None,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health", response_model=HealthResponse)
def health_check_endpoint(engine: ActionEngine = Depends(get_engine)):
    """Check system health."""
    repository = engine.repository
    if isinstance(repository, SQLiteActionRepository):
        db_health = health_check(repository.db_path)
    else:
        db_health = True

    return HealthResponse(
        status="healthy" if db_health else "unhealthy",
        version=VERSION,
        db_health=db_health,
        action_count=repository.count_actions(),
        heartbeat=heartbeat.get_status().get("status", "unknown"),
    )


@app.post("/actions/execute")
def execute_action_endpoint(body: ExecuteActionRequest, engine: ActionEngine = Depends(get_engine)):
    """Validate, gate and execute one action."""
    if not body.userId:
        return JSONResponse(status_code=401, content={"error": "User ID required"})

    if not body.action or not (body.action.get("type") or body.action.get("action_type")):
        return JSONResponse(status_code=400, content={
            "error": "Invalid action payload",
            "details": [{"rule": "action_type", "message": "action.type is required"}],
        })

    request = ActionRequest.from_dict(body.action)
    try:
        submission = engine.submit(request, body.userId)
    except ValidationError as e:
        return JSONResponse(status_code=400, content={
            "success": False,
            "error": "Validation failed",
            "details": e.to_list(),
        })

    action = submission.action
    if submission.status == "requires_approval":
        approval = submission.approval
        response = ApprovalRequiredResponse(
            action_id=action.id,
            approval_details={
                "approval_id": approval.id,
                "requires_approval": True,
                "risk_level": approval.risk_level.value,
                "reason": approval.approval_reason,
                "estimated_impact": approval.estimated_impact,
                "expires_at": approval.expires_at.isoformat() if approval.expires_at else None,
                "warnings": submission.warnings,
            },
        )
        return JSONResponse(status_code=202, content=response.model_dump())

    execution = submission.execution
    if not execution.success:
        return JSONResponse(status_code=400, content={
            "success": False,
            "error": execution.message,
            "action_id": action.id,
            "error_kind": execution.error_kind,
            "details": [{"rule": "execution", "message": execution.message}],
        })

    return ExecuteActionResponse(
        success=True,
        action_id=action.id,
        message=execution.message,
        data=execution.data,
        actual_impact=execution.actual_impact,
        warnings=submission.warnings,
    )


@app.post("/actions/rollback")
def rollback_action_endpoint(body: RollbackRequest, engine: ActionEngine = Depends(get_engine)):
    """Undo a completed action from its rollback snapshot."""
    if not body.userId or not body.actionId:
        return JSONResponse(status_code=400, content={"error": "Missing required fields"})

    reason = body.reason or "User requested rollback"
    try:
        record = engine.rollback(body.actionId, reason, initiator=body.userId, user_id=body.userId)
    except ActionNotFoundError as e:
        return JSONResponse(status_code=404, content={"error": str(e)})
    except UnauthorizedActionError as e:
        return JSONResponse(status_code=403, content={"error": str(e)})
    except AlreadyRolledBackError as e:
        return JSONResponse(status_code=400, content={"error": str(e), "code": "already_rolled_back"})
    except StateConflictError as e:
        return JSONResponse(status_code=400, content={"error": str(e), "code": "invalid_state"})
    except RollbackError as e:
        logger.error(f"Rollback needs manual intervention: {e}")
        return JSONResponse(status_code=500, content={"error": "Rollback failed", "details": str(e)})

    return RollbackResponse(
        success=True,
        action_id=record.id,
        message=f"Action {record.id} rolled back",
        rolled_back_at=record.rolled_back_at.isoformat() if record.rolled_back_at else None,
    )


@app.post("/actions/batch")
def run_batch_endpoint(body: BatchRequest, engine: ActionEngine = Depends(get_engine)):
    """Run a batch of actions and return its final aggregates."""
    if not body.userId:
        return JSONResponse(status_code=401, content={"error": "User ID required"})

    config = BatchConfig(**body.batch_config.model_dump())
    requests = [ActionRequest.from_dict(raw) for raw in body.requests]
    batch = engine.run_batch(config, requests, body.userId)
    return batch.to_dict()


@app.get("/actions", response_model=ActionListResponse)
def list_actions_endpoint(userId: Optional[str] = None, limit: int = Query(50, ge=1, le=500),
                          engine: ActionEngine = Depends(get_engine)):
    """Recent actions for a user."""
    if not userId:
        return JSONResponse(status_code=401, content={"error": "User ID required"})
    return ActionListResponse(actions=[a.to_dict() for a in engine.list_actions(userId, limit)])


@app.get("/actions/{action_id}")
def get_action_endpoint(action_id: str, engine: ActionEngine = Depends(get_engine)):
    try:
        return engine.get_action(action_id).to_dict()
    except ActionNotFoundError as e:
        return JSONResponse(status_code=404, content={"error": str(e)})


@app.get("/actions/{action_id}/audit", response_model=AuditListResponse)
def get_action_audit_endpoint(action_id: str, engine: ActionEngine = Depends(get_engine)):
    """Audit trail for one action, oldest first."""
    try:
        entries = engine.history(action_id)
    except ActionNotFoundError as e:
        return JSONResponse(status_code=404, content={"error": str(e)})
    return AuditListResponse(action_id=action_id, entries=[e.to_dict() for e in entries])


@app.get("/approvals/pending", response_model=ApprovalListResponse)
def list_pending_approvals_endpoint(userId: Optional[str] = None, engine: ActionEngine = Depends(get_engine)):
    """Pending approvals, optionally only those requested by one user."""
    return ApprovalListResponse(pending_approvals=[a.to_dict() for a in engine.list_pending_approvals(userId)])


@app.post("/approvals/{approval_id}/decision", response_model=ApprovalDecisionResponse)
def approval_decision_endpoint(approval_id: str, decision: ApprovalDecisionRequest,
                               engine: ActionEngine = Depends(get_engine)):
    """Approve or deny a pending approval. Approved actions execute immediately."""
    try:
        result = engine.resolve_approval(approval_id, decision.decision, decision.approver, decision.notes or None)
    except ApprovalNotFoundError as e:
        return JSONResponse(status_code=404, content={"error": str(e)})
    except ApprovalConflictError as e:
        return JSONResponse(status_code=409, content={"error": str(e), "approval_status": e.actual})
    except StateConflictError as e:
        return JSONResponse(status_code=409, content={"error": str(e), "action_status": e.actual})

    return ApprovalDecisionResponse(
        status=result.status,
        action=result.action.to_dict(),
        approval=result.approval.to_dict() if result.approval else None,
        execution=result.execution.to_dict() if result.execution else None,
    )


@app.get("/batches/{batch_id}")
def get_batch_endpoint(batch_id: str, engine: ActionEngine = Depends(get_engine)):
    try:
        return engine.get_batch(batch_id).to_dict()
    except BatchNotFoundError as e:
        return JSONResponse(status_code=404, content={"error": str(e)})


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Handle all unhandled exceptions."""
    logging.error(f"Unhandled exception: {exc}")
    content = {"success": False, "error": "Internal server error"}
    if debug_enabled():
        content["details"] = str(exc)
    return JSONResponse(
        status_code=500,
        content=content,
    )
