from fastapi import APIRouter, Depends
from pydantic import BaseModel
from ..deps import Agent, get_agent

router = APIRouter(prefix="/sync", tags=["sync"])


class ConnectivityIn(BaseModel):
    online: bool


@router.get("/status")
def sync_status(agent: Agent = Depends(get_agent)):
    status = agent.engine.status()
    status["last_probe"] = agent.connectivity.last_probe
    return status


@router.post("/now")
def sync_now(agent: Agent = Depends(get_agent)):
    # Runs inline so the operator sees the outcome; concurrent triggers get "already_running".
    return agent.engine.sync_now().as_dict()


@router.post("/pause")
def pause_sync(agent: Agent = Depends(get_agent)):
    agent.engine.pause()
    return {"paused": True}


@router.post("/resume")
def resume_sync(agent: Agent = Depends(get_agent)):
    agent.engine.resume()
    return {"paused": False}


@router.post("/connectivity")
def set_connectivity(data: ConnectivityIn, agent: Agent = Depends(get_agent)):
    changed = agent.connectivity.set_online(data.online)
    return {"online": agent.connectivity.online, "changed": changed}


@router.post("/connectivity/probe")
def probe_connectivity(agent: Agent = Depends(get_agent)):
    online = agent.connectivity.probe()
    return {"online": online, "probe": agent.connectivity.last_probe}
