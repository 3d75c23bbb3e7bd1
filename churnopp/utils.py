"""
Small numeric helpers shared by the detector and the dashboard aggregates.
"""

import math


def round_half_up(value: float) -> int:
    """Round to the nearest integer with halves going up (2.5 -> 3, 0.5 -> 1)."""
    return math.floor(value + 0.5)
