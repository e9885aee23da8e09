# fieldmap/routers/layers.py
from typing import List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ..engine.dashboard import Dashboard
from ..services import catalog
from .deps import get_dashboard, get_item

router = APIRouter(prefix="/layers", tags=["layers"])


class OpacityUpdate(BaseModel):
    opacity: float = Field(..., ge=0.0, le=1.0)


class SubLayerUpdate(BaseModel):
    sub_layer_id: int


class ActiveSet(BaseModel):
    active_ids: List[str] = []


def _layer_view(d: Dashboard, item_id: str) -> dict:
    item = d.layers.items[item_id]
    state = d.layers.states.get(item_id)
    error = d.layers.errors.get(item_id)
    image = d.layers.image_loading.get(item_id)
    return {
        "item": item.model_dump(mode="json"),
        "state": state.model_dump(mode="json") if state else None,
        "error": error.model_dump() if error else None,
        "image_loading": image.model_dump() if image else None,
    }


@router.get("")
def list_layers(d: Dashboard = Depends(get_dashboard)):
    return {
        "active_ids": sorted(d.layers.active_ids),
        "loading_ids": sorted(d.layers.loading_ids),
        "layers": [_layer_view(d, i) for i in d.layers.items],
    }


@router.put("/active")
async def sync_layers(body: ActiveSet, d: Dashboard = Depends(get_dashboard)):
    await d.layers.sync(list(d.layers.items.values()), body.active_ids)
    return list_layers(d)


@router.post("/{item_id}/activate")
async def activate_layer(item_id: str, d: Dashboard = Depends(get_dashboard)):
    await d.layers.activate(get_item(d, item_id))
    return _layer_view(d, item_id)


@router.post("/{item_id}/deactivate")
def deactivate_layer(item_id: str, d: Dashboard = Depends(get_dashboard)):
    get_item(d, item_id)
    d.layers.deactivate(item_id)
    return _layer_view(d, item_id)


@router.put("/{item_id}/opacity")
def set_layer_opacity(item_id: str, body: OpacityUpdate, d: Dashboard = Depends(get_dashboard)):
    get_item(d, item_id)
    d.layers.set_opacity(item_id, body.opacity)
    return _layer_view(d, item_id)


@router.get("/{item_id}/sublayers")
async def list_sub_layers(item_id: str, d: Dashboard = Depends(get_dashboard)):
    item = get_item(d, item_id)
    if not item.available_sub_layers:
        item.available_sub_layers = await catalog.prefetch_service_layers(item.source_url)
    return [s.model_dump() for s in item.available_sub_layers]


@router.put("/{item_id}/sublayer")
async def select_sub_layer(item_id: str, body: SubLayerUpdate, d: Dashboard = Depends(get_dashboard)):
    get_item(d, item_id)
    await d.layers.select_sub_layer(item_id, body.sub_layer_id)
    return _layer_view(d, item_id)


@router.delete("/{item_id}/error")
def dismiss_layer_error(item_id: str, d: Dashboard = Depends(get_dashboard)):
    get_item(d, item_id)
    d.layers.dismiss_error(item_id)
    return _layer_view(d, item_id)
