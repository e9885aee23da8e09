from datetime import datetime, timedelta, timezone

import numpy as np

from ..schemas.timeseries import Datapoint

def summarize_datapoints(points: list[Datapoint]):
    vals = [p.value for p in points if p.value is not None]
    if not vals:
        return {"count": len(points), "min": None, "max": None, "mean": None, "p90": None,
                "first_timestamp": points[0].timestamp_utc if points else None,
                "last_timestamp": points[-1].timestamp_utc if points else None,
                "last": None}
    a = np.array(vals, dtype=float)
    return {
        "count": len(points),
        "min": float(a.min()),
        "max": float(a.max()),
        "mean": float(a.mean()),
        "p90": float(np.quantile(a, 0.9)),
        "first_timestamp": points[0].timestamp_utc,
        "last_timestamp": points[-1].timestamp_utc,
        "last": float(a[-1]),
    }

# -------- chart aggregation ----------
def _bucket_start(ms: int, aggregation: str) -> int:
    dt = datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc)
    if aggregation == "hourly":
        start = dt.replace(minute=0, second=0, microsecond=0)
    elif aggregation == "daily":
        start = dt.replace(hour=0, minute=0, second=0, microsecond=0)
    elif aggregation == "weekly":
        # weeks start Monday 00:00 UTC
        day = dt.replace(hour=0, minute=0, second=0, microsecond=0)
        start = day - timedelta(days=day.weekday())
    else:
        raise ValueError(f"unknown aggregation: {aggregation}")
    return int(start.timestamp() * 1000)

def aggregate_datapoints(points: list[Datapoint], aggregation: str = "daily") -> list[dict]:
    """Mean value per hour/day/week bucket, ordered by bucket start."""
    pts = [p for p in points if p.value is not None]
    if not pts:
        return []
    keys = np.array([_bucket_start(p.timestamp_utc, aggregation) for p in pts], dtype=np.int64)
    vals = np.array([p.value for p in pts], dtype=float)
    uniq, inverse = np.unique(keys, return_inverse=True)
    sums = np.bincount(inverse, weights=vals)
    counts = np.bincount(inverse)
    return [{"timestamp": int(k), "value": float(s / c)} for k, s, c in zip(uniq, sums, counts)]
