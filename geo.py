"""
OpenStreetMap lookups for picking job start and end points.

Geocoding goes through Nominatim and routing through the public OSRM server.
"""

import logging
import os
from typing import Any, Dict, List, Optional

import requests

from errors import ResourceNotFound, UpstreamError

logger = logging.getLogger(__name__)

NOMINATIM_URL = "https://nominatim.openstreetmap.org/search"
OSRM_URL = "https://router.project-osrm.org/route/v1/driving/"

USER_AGENT = os.getenv("GEO_USER_AGENT", "CocoTransport/1.0")
TIMEOUT = float(os.getenv("GEO_TIMEOUT", "10"))
# minLng,maxLat,maxLng,minLat
VIEWBOX = os.getenv("GEO_VIEWBOX")


def geocode_search(q: str, limit: int = 5, viewbox: Optional[str] = VIEWBOX) -> List[Dict[str, Any]]:
    params = {
        "q": q,
        "format": "json",
        "limit": max(1, min(limit, 10)),
        "addressdetails": 1,
    }
    if viewbox:
        params["viewbox"] = viewbox
        params["bounded"] = 1
    headers = {"User-Agent": USER_AGENT}
    try:
        r = requests.get(NOMINATIM_URL, params=params, headers=headers, timeout=TIMEOUT)
        r.raise_for_status()
        results = r.json()
    except (requests.RequestException, ValueError) as e:
        logger.warning("Nominatim search for %r failed: %s", q, e)
        raise UpstreamError(f"Geocoding error: {str(e)[:120]}")

    items: List[Dict[str, Any]] = []
    for it in results:
        try:
            items.append({
                "display_name": it.get("display_name"),
                "latitude": float(it.get("lat")),
                "longitude": float(it.get("lon")),
                "type": it.get("type"),
            })
        except (TypeError, ValueError):
            continue
    return items[:limit]


def route(start_lat: float, start_lng: float, end_lat: float, end_lng: float) -> Dict[str, Any]:
    """Driving route between two points: distance (km), duration (min) and path."""
    url = f"{OSRM_URL}{start_lng},{start_lat};{end_lng},{end_lat}"
    params = {
        "overview": "full",
        "geometries": "geojson",
        "alternatives": "false",
    }
    try:
        r = requests.get(url, params=params, headers={"User-Agent": USER_AGENT}, timeout=TIMEOUT)
        r.raise_for_status()
        data = r.json()
    except (requests.RequestException, ValueError) as e:
        logger.warning("OSRM route request failed: %s", e)
        raise UpstreamError(f"Routing error: {str(e)[:120]}")

    routes = data.get("routes", [])
    if not routes:
        raise ResourceNotFound("No route found")
    best = routes[0]
    coords = best.get("geometry", {}).get("coordinates", [])
    return {
        "distanceKm": round(best.get("distance", 0) / 1000.0, 3),
        "durationMin": round(best.get("duration", 0) / 60.0, 1),
        # GeoJSON is [lng, lat]
        "path": [{"latitude": c[1], "longitude": c[0]} for c in coords],
    }
