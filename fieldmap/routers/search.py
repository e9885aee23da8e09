# fieldmap/routers/search.py
from fastapi import APIRouter, Depends, HTTPException

from ..engine.dashboard import Dashboard
from ..engine.search import COUNTERS, RESULT_TARGETS
from ..schemas.observations import SearchFilters, SourceName
from .deps import get_dashboard

router = APIRouter(prefix="/search", tags=["search"])


def _summary(d: Dashboard) -> dict:
    orchestrator = d.search
    filters = orchestrator.last_searched_filters
    return {
        "counts": orchestrator.results.counts(),
        "loading": {s.value: v for s, v in orchestrator.loading.items()},
        "last_searched_filters": filters.model_dump() if filters else None,
        "sources": [s.model_dump() for s in orchestrator.results.sources],
    }


@router.post("")
async def run_search(filters: SearchFilters, d: Dashboard = Depends(get_dashboard)):
    await d.search.search(filters)
    return _summary(d)


@router.post("/count")
async def count_matches(filters: SearchFilters):
    """Matching record count without fetching the records (point-query sources only)."""
    counter = COUNTERS.get(filters.source)
    if counter is None:
        raise HTTPException(status_code=422, detail=f"{filters.source.value} does not support count queries")
    return {"source": filters.source.value, "count": await counter(filters)}


@router.get("/results/{source}")
def search_results(source: SourceName, d: Dashboard = Depends(get_dashboard)):
    field_name, _ = RESULT_TARGETS[source]
    return [r.model_dump(mode="json") for r in getattr(d.search.results, field_name)]
