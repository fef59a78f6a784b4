"""
Road network index: nearest road segment and its speed limit.
"""

from famtracker.roads.index import RoadNetworkIndex, RoadSnapshot, TIE_TOLERANCE_M, search_envelopes
from famtracker.roads.refresher import RoadIndexRefresher

__all__ = [
    "RoadNetworkIndex",
    "RoadSnapshot",
    "RoadIndexRefresher",
    "TIE_TOLERANCE_M",
    "search_envelopes",
]
