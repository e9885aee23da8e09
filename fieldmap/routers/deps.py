# fieldmap/routers/deps.py
from fastapi import HTTPException, Request

from ..engine.dashboard import Dashboard
from ..schemas.catalog import CatalogItem


def get_dashboard(request: Request) -> Dashboard:
    return request.app.state.dashboard


def get_item(dashboard: Dashboard, item_id: str) -> CatalogItem:
    item = dashboard.layers.items.get(item_id)
    if item is None:
        raise HTTPException(status_code=404, detail=f"Unknown catalog item {item_id}")
    return item
