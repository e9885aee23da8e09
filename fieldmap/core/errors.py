# fieldmap/core/errors.py
"""
Failure taxonomy for layer, dataset and search operations.

Every error carries a ``user_message`` suitable for the dismissible banner
shown next to the failed dataset. A stale async result is not an error: it
is dropped after a debug log and never raised.
"""
from typing import Optional

import httpx


class FieldMapError(Exception):
    user_message = "Unknown error occurred"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.user_message)
        if message:
            self.user_message = message


class NetworkFailure(FieldMapError):
    """Transient failure; the user has to toggle the item again."""
    user_message = "Network request failed. Toggle the layer to try again."


class ServiceIncompatible(FieldMapError):
    """HTTP 4xx from the service, usually a retired dataset or an unsupported projection."""
    user_message = "This layer may be retired or use an incompatible projection."

    def __init__(self, status_code: Optional[int] = None, message: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code


class LoadTimeout(FieldMapError):
    def __init__(self, seconds: float):
        super().__init__(
            f"Load timeout after {seconds:g} seconds. The service may be slow or unresponsive."
        )
        self.seconds = seconds


class UnknownServiceFamily(FieldMapError):
    def __init__(self, url: str):
        super().__init__(
            "Unsupported service type. Supported types: FeatureServer, MapServer, "
            "ImageServer, VectorTileServer, SceneServer, StreamServer."
        )
        self.url = url


class RendererReconstructionFailure(FieldMapError):
    """Non-fatal; the service renderer stays in place."""
    user_message = "Could not rebuild the layer symbology."


def translate_http_error(exc: Exception) -> FieldMapError:
    """Map an httpx exception onto the failure taxonomy."""
    if isinstance(exc, FieldMapError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if 400 <= status < 500:
            return ServiceIncompatible(status)
        return NetworkFailure(f"Service error {status}. Toggle the layer to try again.")
    if isinstance(exc, httpx.TimeoutException):
        return NetworkFailure("The service did not respond in time.")
    return NetworkFailure(str(exc) or None)


def check_arcgis_payload(payload: dict) -> dict:
    """ArcGIS services report errors with HTTP 200 and an ``error`` body."""
    err = (payload or {}).get("error") if isinstance(payload, dict) else None
    if not err:
        return payload
    code = err.get("code")
    message = err.get("message") or "ArcGIS service error"
    if isinstance(code, int) and 400 <= code < 500:
        raise ServiceIncompatible(code)
    raise NetworkFailure(f"ArcGIS service error: {message}")
