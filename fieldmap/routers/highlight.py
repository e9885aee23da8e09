# fieldmap/routers/highlight.py
from fastapi import APIRouter, Depends

from ..engine.dashboard import Dashboard
from .deps import get_dashboard

router = APIRouter(tags=["highlight"])


@router.post("/highlight/{observation_id}")
async def highlight_observation(observation_id: str, d: Dashboard = Depends(get_dashboard)):
    ok = await d.highlights.highlight(observation_id)
    return {"observation_id": observation_id, "highlighted": ok}


@router.delete("/highlight")
async def clear_highlight(d: Dashboard = Depends(get_dashboard)):
    await d.highlights.clear_highlight()
    return {"highlighted": False}
