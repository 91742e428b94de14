"""Result formatters."""

from visitwatch.formatters.result_json import (
    neighbourhood_to_dict,
    periods_to_list,
    reconcile_to_dict,
    render_json,
)

__all__ = ["neighbourhood_to_dict", "periods_to_list", "reconcile_to_dict", "render_json"]
