# fieldmap/routers/events.py
from typing import Optional

from fastapi import APIRouter, Depends

from ..engine.dashboard import Dashboard
from .deps import get_dashboard

router = APIRouter(prefix="/events", tags=["events"])


@router.get("")
def recent_events(name: Optional[str] = None, d: Dashboard = Depends(get_dashboard)):
    """Most recent status callbacks, oldest first."""
    return d.bus.events(name)
