# fieldmap/schemas/renderer.py
"""
Unique-value (classification) renderer descriptions.

``UniqueValueDescription.from_arcgis`` reads the ``drawingInfo.renderer``
block of a FeatureServer layer. ArcGIS REST colors are ``[r, g, b, a]`` with
alpha in 0..255; here alpha is normalised to 0..1.
"""
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field


class Color(BaseModel):
    r: int = 0
    g: int = 0
    b: int = 0
    a: float = 1.0

    @classmethod
    def from_rest(cls, value) -> Optional["Color"]:
        if not value or len(value) < 3:
            return None
        alpha = value[3] / 255.0 if len(value) > 3 and value[3] is not None else 1.0
        return cls(r=value[0], g=value[1], b=value[2], a=alpha)


class Outline(BaseModel):
    color: Optional[Color] = None
    width: Optional[float] = None


class SymbolDescriptor(BaseModel):
    style: Optional[str] = None
    color: Optional[Color] = None
    outline: Optional[Outline] = None

    @classmethod
    def from_rest(cls, sym: dict | None) -> "SymbolDescriptor":
        sym = sym or {}
        outline = sym.get("outline")
        return cls(
            style=_style_name(sym.get("style")),
            color=Color.from_rest(sym.get("color")),
            outline=Outline(color=Color.from_rest(outline.get("color")), width=outline.get("width"))
            if outline else None,
        )


def _style_name(style: str | None) -> Optional[str]:
    # esriSFSSolid -> solid, esriSFSBackwardDiagonal -> backward-diagonal
    if not style:
        return None
    if style.startswith("esriSFS"):
        raw = style[len("esriSFS"):]
        out = ""
        for i, ch in enumerate(raw):
            if ch.isupper() and i:
                out += "-"
            out += ch.lower()
        return out
    return style


class ValueInfo(BaseModel):
    value: Any
    label: Optional[str] = None
    symbol: SymbolDescriptor = SymbolDescriptor()


class UniqueValueDescription(BaseModel):
    field: str
    value_infos: list[ValueInfo] = []

    @classmethod
    def from_arcgis(cls, renderer: dict | None) -> Optional["UniqueValueDescription"]:
        """None when the renderer is not a unique-value renderer."""
        if not renderer or renderer.get("type") != "uniqueValue":
            return None
        field = renderer.get("field1") or renderer.get("field")
        if not field:
            return None
        infos = [
            ValueInfo(value=i.get("value"), label=i.get("label"), symbol=SymbolDescriptor.from_rest(i.get("symbol")))
            for i in renderer.get("uniqueValueInfos") or []
        ]
        return cls(field=field, value_infos=infos)


class DirectField(BaseModel):
    kind: Literal["direct"] = "direct"
    field: str

    def classify(self, attributes: dict) -> Any:
        return attributes.get(self.field)


class PrefixExpression(BaseModel):
    kind: Literal["prefix"] = "prefix"
    field: str
    length: int = 4

    @property
    def expression(self) -> str:
        return f"Left($feature.{self.field}, {self.length})"

    def classify(self, attributes: dict) -> Any:
        v = attributes.get(self.field)
        return None if v is None else str(v)[: self.length]


ClassificationStrategy = Annotated[Union[DirectField, PrefixExpression], Field(discriminator="kind")]


class FillSymbol(BaseModel):
    style: str = "solid"
    color: list = [200, 200, 200, 1.0]
    outline_color: list = [128, 128, 128, 0.8]
    outline_width: float = 0.5


class RebuiltCategory(BaseModel):
    value: Any
    label: str
    symbol: FillSymbol


class ReconstructedRenderer(BaseModel):
    strategy: ClassificationStrategy
    categories: list[RebuiltCategory]
    detected_alpha: Optional[float] = None

    def symbol_for(self, attributes: dict) -> Optional[FillSymbol]:
        key = self.strategy.classify(attributes)
        for c in self.categories:
            if c.value == key or (key is not None and str(c.value) == str(key)):
                return c.symbol
        return None
