"""JSON 输出格式化。"""

from __future__ import annotations

import json
from typing import Any, Sequence

from visitwatch.domain.detection_types import DwellPeriod, ReconcileResult, VisitNeighbourhood


def periods_to_list(periods: Sequence[DwellPeriod]) -> list[dict[str, Any]]:
    """停留时段转字典列表。"""

    return [
        {
            "arrival_at": period.arrival_at.isoformat(),
            "departure_at": period.departure_at.isoformat(),
            "point_count": period.point_count,
        }
        for period in periods
    ]


def reconcile_to_dict(result: ReconcileResult) -> dict[str, Any]:
    return {"removed": result.removed, "added": result.added}


def neighbourhood_to_dict(neighbourhood: VisitNeighbourhood) -> dict[str, Any]:
    return {
        "visit_center": {"lat": neighbourhood.center_lat, "lon": neighbourhood.center_lon},
        "places": [
            {"id": place.place_id, "name": place.name, "distance_m": place.distance_m}
            for place in neighbourhood.places
        ],
    }


def render_json(payload: Any) -> str:
    """渲染 JSON 文本。"""

    return json.dumps(payload, ensure_ascii=False, indent=2)
