"""CRS detection from a bundle's .prj component."""

from __future__ import annotations

from pyproj import CRS
from pyproj.exceptions import CRSError

from .models import IngestionSession


def detect_crs(wkt: str | bytes | None) -> tuple[int | None, str | None, bool | None]:
    """Parse CRS from .prj WKT text.

    Returns (epsg_code, crs_name, is_projected) or (None, None, None) when the
    text is empty or not a recognizable CRS.
    """
    if wkt is None:
        return None, None, None
    if isinstance(wkt, bytes):
        wkt = wkt.decode("utf-8", errors="replace")
    if not wkt.strip():
        return None, None, None

    try:
        crs = CRS.from_wkt(wkt)
    except CRSError:
        return None, None, None

    return crs.to_epsg(), crs.name, crs.is_projected


def crs_fields(wkt: str | bytes | None) -> dict:
    """Session fields describing the detected CRS."""
    epsg, name, projected = detect_crs(wkt)
    return {"crs_epsg": epsg, "crs_name": name, "is_projected": projected}


def describe(session: IngestionSession) -> str:
    if session.crs_epsg is not None:
        return f"EPSG:{session.crs_epsg}"
    return session.crs_name or "unknown CRS"
