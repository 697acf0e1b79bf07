"""
CTFQ Stats Aggregator

Per-callsite duration statistics over CallRecords: count, total, mean,
min and max, sorted by total descending so the most time-consuming call
sites come first.
"""

import logging
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Sequence

import pandas as pd

from ctfq.tracelake.matcher import CallRecord, callsite_key

logger = logging.getLogger(__name__)

STATS_HEADERS = ["name", "entry", "exit", "count", "total", "mean", "min", "max"]


class StatsGrouping(str, Enum):
    """Grouping key of the aggregation."""

    CALLSITE = "callsite"  # (entry name, exit name)
    LABEL = "label"  # (label value, entry name, exit name)


@dataclass
class StatsRow:
    name: str
    entry: str
    exit: str
    count: int
    total: int
    mean: float
    min: int
    max: int

    def to_list(self) -> List[Any]:
        return [getattr(self, h) for h in STATS_HEADERS]


@dataclass
class StatsTable:
    """Headers plus rows, rows ordered by total duration descending."""

    headers: List[str] = field(default_factory=lambda: list(STATS_HEADERS))
    rows: List[StatsRow] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.rows

    def column(self, header: str) -> List[Any]:
        return [getattr(row, header) for row in self.rows]

    def to_dict(self) -> Dict[str, Any]:
        return {"hdrs": list(self.headers), "rows": [row.to_list() for row in self.rows]}

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame([asdict(row) for row in self.rows], columns=self.headers)


def aggregate(records: Sequence[CallRecord],
              group_by: StatsGrouping = StatsGrouping.CALLSITE) -> StatsTable:
    """Group CallRecords and compute duration statistics per group."""
    if not records:
        return StatsTable()

    frame = pd.DataFrame({
        "entry": [r.entry_name for r in records],
        "exit": [r.exit_name for r in records],
        "duration": [r.duration for r in records],
    })

    keys = ["entry", "exit"]
    if group_by == StatsGrouping.LABEL:
        frame["label"] = [str(r.label) for r in records]
        keys = ["label"] + keys
    grouped = (
        frame.groupby(keys, sort=False)["duration"]
        .agg(count="count", total="sum", mean="mean", min="min", max="max")
        .reset_index()
    )
    # Total descending, ties by group key ascending
    grouped = grouped.sort_values(
        by=["total"] + keys,
        ascending=[False] + [True] * len(keys),
        kind="mergesort",
    )

    rows = []
    for group in grouped.to_dict("records"):
        if group_by == StatsGrouping.CALLSITE:
            name = callsite_key(group["entry"], group["exit"])
        else:
            name = group["label"]
        rows.append(StatsRow(
            name=name,
            entry=group["entry"],
            exit=group["exit"],
            count=int(group["count"]),
            total=int(group["total"]),
            mean=float(group["mean"]),
            min=int(group["min"]),
            max=int(group["max"]),
        ))

    logger.debug(f"Aggregated {len(records)} call records into {len(rows)} rows")
    return StatsTable(rows=rows)
