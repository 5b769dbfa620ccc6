from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from typing import Optional
from datetime import timedelta
from ..deps import Agent, get_agent
from ..offline_queue import ConflictResolution, QueuedSale

router = APIRouter(prefix="/offline-queue", tags=["offline-queue"])

LIST_VIEWS = {"pending", "syncing", "failed", "conflict", "held"}


class ResolveIn(BaseModel):
    resolution: ConflictResolution


def _entry_out(agent: Agent, entry: QueuedSale) -> dict:
    out = entry.model_dump(mode="json")
    next_at = agent.engine.next_attempt_at(entry.id) if entry.status == "failed" else None
    out["next_retry_at"] = next_at.isoformat() if next_at else None
    return out


@router.get("")
def list_queue(status: Optional[str] = None, agent: Agent = Depends(get_agent)):
    queue = agent.queue
    if status is None:
        entries = queue.all_entries()
    elif status not in LIST_VIEWS:
        raise HTTPException(status_code=422, detail=f"invalid status filter: {status}")
    elif status == "held":
        entries = queue.list_held_resumes()
    elif status == "pending":
        entries = queue.list_pending()
    elif status == "syncing":
        entries = queue.list_syncing()
    elif status == "failed":
        entries = queue.list_failed()
    else:
        entries = queue.list_conflicted()
    stale_after = timedelta(minutes=agent.settings.queue_stale_minutes)
    return {
        "entries": [_entry_out(agent, e) for e in entries],
        "summary": queue.summary(stale_after=stale_after),
    }


@router.get("/stale")
def list_stale(minutes: Optional[int] = None, agent: Agent = Depends(get_agent)):
    minutes = agent.settings.queue_stale_minutes if minutes is None else minutes
    if minutes < 0:
        raise HTTPException(status_code=422, detail="minutes must be >= 0")
    entries = agent.queue.list_stale(timedelta(minutes=minutes))
    return {"minutes": minutes, "entries": [_entry_out(agent, e) for e in entries]}


@router.get("/{entry_id}")
def get_entry(entry_id: str, agent: Agent = Depends(get_agent)):
    return _entry_out(agent, agent.queue.get(entry_id))


@router.post("/{entry_id}/retry")
def retry_entry(entry_id: str, agent: Agent = Depends(get_agent)):
    entry = agent.queue.retry_entry(entry_id)
    return _entry_out(agent, entry)


@router.post("/retry-failed")
def retry_all_failed(agent: Agent = Depends(get_agent)):
    moved = agent.queue.retry_all_failed()
    return {"retried": len(moved), "entry_ids": [e.id for e in moved]}


@router.post("/{entry_id}/resolve")
def resolve_conflict(entry_id: str, data: ResolveIn, agent: Agent = Depends(get_agent)):
    entry = agent.queue.resolve_conflict(entry_id, data.resolution)
    return _entry_out(agent, entry)


@router.post("/{entry_id}/dismiss")
def dismiss_entry(entry_id: str, agent: Agent = Depends(get_agent)):
    entry = agent.queue.dismiss_entry(entry_id)
    return {"ok": True, "dismissed": entry.model_dump(mode="json")}
