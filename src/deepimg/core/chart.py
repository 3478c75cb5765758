"""Label-frequency chart built from completed classification results."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from deepimg.core.files import ClassificationResult

# Colours repeat once there are more buckets than entries.
PALETTE: tuple[str, ...] = (
    "hsl(var(--chart-1))",
    "hsl(var(--chart-2))",
    "hsl(var(--chart-3))",
    "hsl(var(--chart-4))",
    "hsl(var(--chart-5))",
)


@dataclass(frozen=True)
class ChartBucket:
    label: str
    count: int
    color: str


@dataclass(frozen=True)
class LegendEntry:
    display_name: str
    color: str


@dataclass(frozen=True)
class ChartData:
    """Ordered buckets plus the legend lookup keyed by label."""

    buckets: tuple[ChartBucket, ...]
    legend: dict[str, LegendEntry]


def display_name(label: str) -> str:
    """First synonym of a comma-separated label: ``"tabby, tabby cat"`` -> ``"tabby"``."""
    return label.split(", ")[0]


def top_labels(results: Iterable[ClassificationResult]) -> list[str]:
    """Index-0 label of each non-empty result."""
    return [result[0].label for result in results if result]


def count_labels(labels: Iterable[str]) -> list[tuple[str, int]]:
    """Frequency per distinct label, in first-seen order."""
    counts: dict[str, int] = {}
    for label in labels:
        counts[label] = counts.get(label, 0) + 1
    return list(counts.items())


def build_chart(results: Sequence[ClassificationResult], palette: Sequence[str] = PALETTE) -> ChartData:
    """Histogram of top-ranked labels with palette colours assigned by bucket position."""
    if not palette:
        raise ValueError("palette must not be empty")

    buckets = tuple(
        ChartBucket(label=label, count=count, color=palette[index % len(palette)])
        for index, (label, count) in enumerate(count_labels(top_labels(results)))
    )
    legend = {bucket.label: LegendEntry(display_name=display_name(bucket.label), color=bucket.color) for bucket in buckets}
    return ChartData(buckets=buckets, legend=legend)
