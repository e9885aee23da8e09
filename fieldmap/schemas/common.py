from pydantic import BaseModel

class DataSource(BaseModel):
    name: str
    url: str
    note: str | None = None
    auth_required: bool = False

class Graphic(BaseModel):
    """One drawable point on an observation slot of the render surface."""
    attributes: dict
    lon: float
    lat: float
