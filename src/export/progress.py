import math
from typing import Iterable


def compute_progress(totals: Iterable[int], processed: Iterable[int]) -> int:
    """Whole-number percentage of work done across all categories.

    An export with nothing to do is complete, so a zero total gives 100.
    Halves round up.
    """
    total = sum(totals)
    done = sum(processed)
    if total <= 0:
        return 100
    pct = math.floor(done / total * 100 + 0.5)
    return max(0, min(100, pct))
