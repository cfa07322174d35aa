"""Sync API: per-entity sync status and "sync now" triggers."""
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, ConfigDict

from ..models.registry import EntityType
from ..services.sync_orchestrator import SyncOrchestrator, TriggerState

router = APIRouter(prefix="/sync", tags=["sync"])


class SyncStatusResponse(BaseModel):
    entity_type: str
    is_syncing: bool
    pending_count: int
    parked_count: int = 0
    deferred: bool
    is_out_of_sync: bool
    last_outcome: Optional[str] = None
    last_success_count: Optional[int] = None
    last_fail_count: Optional[int] = None
    last_run_at: Optional[datetime] = None
    last_error: Optional[str] = None


class ParkedRecordResponse(BaseModel):
    id: str
    sync_action: Optional[str] = None
    parked_reason: str
    confirmed_server_id: Optional[str] = None
    fail_count: int
    last_sync_attempt: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class TriggerResponse(BaseModel):
    entity_type: str
    accepted: bool
    state: str


def get_orchestrator(request: Request) -> SyncOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Sync is not running")
    return orchestrator


def _entity_type(entity_type: str) -> EntityType:
    try:
        return EntityType(entity_type)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown entity type: {entity_type}")


def _trigger_response(entity_type: EntityType, state: TriggerState) -> TriggerResponse:
    return TriggerResponse(
        entity_type=entity_type.value,
        accepted=state is not TriggerState.REJECTED,
        state=state.value,
    )


@router.get("/status", response_model=List[SyncStatusResponse])
def list_sync_status(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    """Status of every entity type, parents first."""
    return [s.to_dict() for s in orchestrator.statuses()]


@router.get("/status/{entity_type}", response_model=SyncStatusResponse)
def get_sync_status(entity_type: str, orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    return orchestrator.status(_entity_type(entity_type)).to_dict()


@router.post("/", response_model=List[TriggerResponse], status_code=status.HTTP_202_ACCEPTED)
def trigger_all(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    """Sync now for every entity type in dependency order."""
    states: Dict[EntityType, TriggerState] = orchestrator.trigger_all()
    return [_trigger_response(et, state) for et, state in states.items()]


@router.post("/{entity_type}", response_model=TriggerResponse, status_code=status.HTTP_202_ACCEPTED)
def trigger_sync(entity_type: str, orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    et = _entity_type(entity_type)
    return _trigger_response(et, orchestrator.trigger_now(et))


@router.get("/parked/{entity_type}", response_model=List[ParkedRecordResponse])
def list_parked(entity_type: str, orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    """Records automatic sync stopped retrying, oldest attempt first."""
    return orchestrator.parked(_entity_type(entity_type))


@router.post(
    "/parked/{entity_type}/{record_id}/release",
    response_model=TriggerResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def release_parked(entity_type: str, record_id: str, orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    et = _entity_type(entity_type)
    state = orchestrator.release(et, record_id)
    if state is None:
        raise HTTPException(status_code=404, detail=f"No parked {et.value} {record_id}")
    return _trigger_response(et, state)
