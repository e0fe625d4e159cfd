from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List

import numpy as np

from scorefill.table import ScoreTable


def mean(values: Iterable[float]) -> float:
    arr = np.asarray(list(values), dtype=float)
    if arr.size == 0:
        return 0.0
    return float(np.sum(arr) / arr.size)


def present_scores(table: ScoreTable, metric: str) -> List[float]:
    out: List[float] = []
    for entity in table.entities:
        score = table.score(entity, metric)
        if score is not None:
            out.append(float(score))
    return out


def means_by_metric(table: ScoreTable) -> Dict[str, float]:
    return {metric: mean(present_scores(table, metric)) for metric in table.metric_names}


@dataclass(frozen=True)
class MetricStats:
    means: Dict[str, float]
    std_devs: Dict[str, float]

    def normalize(self, score: float, metric: str) -> float:
        mu = float(self.means.get(metric, 0.0))
        sd = float(self.std_devs.get(metric, 1.0)) or 1.0
        return (float(score) - mu) / sd


def metric_stats(table: ScoreTable) -> MetricStats:
    means: Dict[str, float] = {}
    std_devs: Dict[str, float] = {}
    for metric in table.metric_names:
        values = np.asarray(present_scores(table, metric), dtype=float)
        if values.size == 0:
            continue
        means[metric] = float(np.mean(values))
        sd = float(np.std(values, ddof=0))
        # Constant metrics normalize to 0 rather than dividing by zero.
        std_devs[metric] = sd if sd > 0.0 else 1.0
    return MetricStats(means=means, std_devs=std_devs)
