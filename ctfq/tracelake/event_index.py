"""
CTFQ Event-Type Index

Counts events per distinct event name across all tracks.
"""

from collections import Counter
from dataclasses import asdict, dataclass
from typing import Any, Dict, List

import pandas as pd

from ctfq.tracelake.trace import Trace


@dataclass
class EventTypeCount:
    name: str
    count: int

    def to_dict(self) -> Dict[str, Any]:
        return {"event_name": self.name, "count": self.count}


def count_by_name(trace: Trace) -> List[EventTypeCount]:
    """One row per distinct event name, in first-seen order."""
    counts = Counter(event.name for event in trace)
    return [EventTypeCount(name=name, count=count) for name, count in counts.items()]


def to_dataframe(counts: List[EventTypeCount]) -> pd.DataFrame:
    """Counts as a DataFrame sorted for display, most frequent first."""
    frame = pd.DataFrame([asdict(c) for c in counts], columns=["name", "count"])
    return frame.sort_values(["count", "name"], ascending=[False, True], kind="stable").reset_index(drop=True)
