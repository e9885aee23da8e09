# fieldmap/engine/renderer.py
"""
Rebuilds unique-value renderers served by point-query layers.

Some services declare truncated category values ("2020") while the live
field holds longer strings ("2020-January 2025"). A small sample of real
values decides whether the field is classified directly or through a
fixed-length prefix expression. The heuristic is best effort and kept as is.
"""
import logging
from typing import Any, Awaitable, Callable, Iterable, List, Optional

from ..core.config import settings
from ..core.errors import FieldMapError, RendererReconstructionFailure
from ..schemas.renderer import (
    Color,
    DirectField,
    FillSymbol,
    PrefixExpression,
    RebuiltCategory,
    ReconstructedRenderer,
    SymbolDescriptor,
    UniqueValueDescription,
)
from ..services import arcgis

logger = logging.getLogger(__name__)

PREFIX_LENGTH = 4

SampleFetcher = Callable[[str, str, int], Awaitable[List[Any]]]


def choose_strategy(field: str, declared: Iterable[Any], sampled: Iterable[Any]) -> DirectField | PrefixExpression:
    declared = list(declared)
    declared_str = [str(v) for v in declared]
    values = list(dict.fromkeys(v for v in sampled if v is not None))
    exact = [v for v in values if v in declared or str(v) in declared_str]
    prefixed = [
        v for v in values
        if isinstance(v, str) and v not in declared_str and any(v.startswith(d) for d in declared_str)
    ]
    if prefixed and not exact:
        return PrefixExpression(field=field, length=PREFIX_LENGTH)
    return DirectField(field=field)


def rebuild_symbol(symbol: SymbolDescriptor) -> FillSymbol:
    """Fill at full opacity; layer opacity is the only transparency control."""
    color = symbol.color
    fill = [color.r, color.g, color.b, 1.0] if color else [200, 200, 200, 1.0]
    out = FillSymbol(style=symbol.style or "solid", color=fill)
    outline = symbol.outline
    if outline and outline.color:
        oc: Color = outline.color
        out.outline_color = [oc.r, oc.g, oc.b, max(0.5, oc.a or 0.8)]
    if outline and (outline.color or outline.width):
        out.outline_width = outline.width or 1
    return out


async def sample_field_values(layer_url: str, field: str, count: int) -> List[Any]:
    features = await arcgis.query_features(
        layer_url, where="1=1", out_fields=[field], return_geometry=False, record_count=count
    )
    return [f.get("attributes", {}).get(field) for f in features]


async def reconstruct(
    description: UniqueValueDescription,
    layer_url: str,
    sample: Optional[SampleFetcher] = None,
    sample_size: int = settings.renderer_sample_size,
) -> ReconstructedRenderer:
    if not description.value_infos:
        raise RendererReconstructionFailure(f"Renderer on {description.field} declares no categories")
    declared = [vi.value for vi in description.value_infos]
    try:
        sampled = await (sample or sample_field_values)(layer_url, description.field, sample_size)
    except FieldMapError as ex:
        logger.debug("Sampling %s failed, classifying on the raw field: %s", layer_url, ex)
        sampled = []
    strategy = choose_strategy(description.field, declared, sampled)
    if isinstance(strategy, PrefixExpression):
        logger.info("Using %s for %s", strategy.expression, layer_url)

    categories = [
        RebuiltCategory(value=vi.value, label=vi.label or str(vi.value), symbol=rebuild_symbol(vi.symbol))
        for vi in description.value_infos
    ]
    first = description.value_infos[0].symbol.color if description.value_infos else None
    return ReconstructedRenderer(
        strategy=strategy,
        categories=categories,
        detected_alpha=first.a if first is not None else None,
    )


async def reconstruct_from_metadata(
    metadata: dict,
    layer_url: str,
    sample: Optional[SampleFetcher] = None,
) -> Optional[ReconstructedRenderer]:
    """
    None when the layer has no unique-value renderer or reconstruction fails;
    the service renderer then stays in place.
    """
    try:
        description = UniqueValueDescription.from_arcgis((metadata.get("drawingInfo") or {}).get("renderer"))
        if description is None:
            return None
        return await reconstruct(description, layer_url, sample=sample)
    except Exception as ex:
        logger.warning("Renderer reconstruction failed for %s, keeping the service renderer: %s", layer_url, ex)
        return None
