from datetime import datetime, timezone

def parse_date(s: str | None) -> datetime:
    if not s:
        return datetime.now(timezone.utc)
    dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)

def from_epoch_ms(ms: int | float) -> datetime:
    return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc)

def arcgis_date_literal(dt: datetime) -> str:
    # DATE 'YYYY-MM-DD 00:00:00' literal understood by ArcGIS where clauses
    return f"DATE '{dt:%Y-%m-%d} 00:00:00'"
