from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass
from typing import Dict, List, Optional

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from scipy import stats
from sklearn.metrics import mean_absolute_error, mean_squared_error

from scorefill.config import ImputationConfig
from scorefill.impute import estimate_missing_scores
from scorefill.stats import MetricStats, metric_stats
from scorefill.table import ScoreTable


logger = logging.getLogger(__name__)

DEFAULT_NUM_TESTS = 50


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or str(raw).strip() == "":
        return int(default)
    try:
        return int(raw)
    except ValueError:
        return int(default)


def default_n_jobs() -> int:
    return max(1, _env_int("SCOREFILL_N_JOBS", 1))


@dataclass
class HoldoutReport:
    mse: float
    rmse: float
    mae: float
    spearman: float
    n_tests: int
    details: pd.DataFrame

    def as_dict(self) -> Dict[str, float]:
        return {
            "mse": float(self.mse),
            "rmse": float(self.rmse),
            "mae": float(self.mae),
            "spearman": float(self.spearman),
            "n_tests": int(self.n_tests),
        }


def select_holdout_cells(table: ScoreTable, num_tests: int) -> List[tuple]:
    known = sorted((c.entity, c.metric) for c in table.observed_cells())
    return known[: max(0, min(int(num_tests), len(known)))]


def _evaluate_one(
    table: ScoreTable,
    entity: str,
    metric: str,
    config: ImputationConfig,
    norm: MetricStats,
) -> dict:
    true_score = float(table.score(entity, metric))
    held_out = table.without_observation(entity, metric)
    predicted = estimate_missing_scores(held_out, config).cell(entity, metric)
    row = {
        "entity": entity,
        "metric": metric,
        "true_score": true_score,
        "predicted_score": np.nan,
        "predicted_std_dev": np.nan,
        "true_normalized": norm.normalize(true_score, metric),
        "predicted_normalized": np.nan,
    }
    if predicted.score is not None and math.isfinite(predicted.score):
        row["predicted_score"] = float(predicted.score)
        row["predicted_std_dev"] = float(predicted.std_dev)
        row["predicted_normalized"] = norm.normalize(predicted.score, metric)
    return row


def evaluate_holdout(
    table: ScoreTable,
    config: ImputationConfig,
    num_tests: int = DEFAULT_NUM_TESTS,
    n_jobs: Optional[int] = None,
) -> HoldoutReport:
    norm = metric_stats(table)
    cells = select_holdout_cells(table, num_tests)
    jobs = default_n_jobs() if n_jobs is None else max(1, int(n_jobs))
    logger.info("holdout evaluation of %s on %d cells (n_jobs=%d)", config.key, len(cells), jobs)

    rows = Parallel(n_jobs=min(jobs, max(len(cells), 1)), prefer="processes")(
        delayed(_evaluate_one)(table, entity, metric, config, norm) for entity, metric in cells
    )
    details = pd.DataFrame(
        rows,
        columns=[
            "entity",
            "metric",
            "true_score",
            "predicted_score",
            "predicted_std_dev",
            "true_normalized",
            "predicted_normalized",
        ],
    )
    ok = details.dropna(subset=["predicted_normalized"])
    if ok.empty:
        raise ValueError("No predictions could be made for the holdout evaluation")
    for r in details[details["predicted_normalized"].isna()].itertuples(index=False):
        logger.warning("could not predict %s / %s", r.entity, r.metric)

    y = ok["true_normalized"].to_numpy(dtype=float)
    p = ok["predicted_normalized"].to_numpy(dtype=float)
    mse = float(mean_squared_error(y, p))
    spearman = float(stats.spearmanr(y, p)[0]) if len(y) > 2 else float("nan")
    return HoldoutReport(
        mse=mse,
        rmse=float(np.sqrt(mse)),
        mae=float(mean_absolute_error(y, p)),
        spearman=spearman,
        n_tests=int(len(ok)),
        details=details,
    )


def compare_algorithms(
    table: ScoreTable,
    configs: List[ImputationConfig],
    num_tests: int = DEFAULT_NUM_TESTS,
    n_jobs: Optional[int] = None,
) -> pd.DataFrame:
    records: List[dict] = []
    for config in configs:
        report = evaluate_holdout(table, config, num_tests=num_tests, n_jobs=n_jobs)
        rec = {"config": config.key, "algorithm": config.algorithm.value, "iterations": int(config.iterations)}
        rec.update(report.as_dict())
        records.append(rec)
        logger.info("[holdout] %s mse=%.6f rmse=%.6f", config.key, report.mse, report.rmse)
    summary = pd.DataFrame(records)
    if summary.empty:
        return summary
    return summary.sort_values(["mse", "config"], kind="mergesort").reset_index(drop=True)
