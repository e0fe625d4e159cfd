from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import numpy as np

from scorefill.stats import mean, means_by_metric
from scorefill.table import Cell, ScoreTable, replace_estimate


logger = logging.getLogger(__name__)

BIVARIATE_PROVENANCE = "weighted bivariate regression"
MEAN_PROVENANCE = "mean prediction"
WEIGHT_EPS = 1e-15


@dataclass
class PairEstimator:
    slope: float = 0.0
    intercept: float = 0.0
    mse: float = 0.0
    n: int = 0
    predictor_mean: float = 0.0
    predictor_sum_sq_dev: float = 0.0

    def predict(self, x: float) -> float:
        return float(self.slope) * float(x) + float(self.intercept)

    def prediction_variance(self, x: Optional[float]) -> float:
        if x is None or self.n == 0 or self.predictor_sum_sq_dev == 0.0:
            return float(self.mse)
        leverage = (float(x) - self.predictor_mean) ** 2 / self.predictor_sum_sq_dev
        return float(self.mse) * (1.0 + 1.0 / float(self.n) + leverage)


@dataclass(frozen=True)
class BivariatePrediction:
    score: float
    variance: float


# estimators[target][predictor]
Estimators = Dict[str, Dict[str, PairEstimator]]
# predictions[entity][target][predictor]
Predictions = Dict[str, Dict[str, Dict[str, BivariatePrediction]]]


def fit_pair(xs: np.ndarray, ys: np.ndarray) -> Tuple[float, float]:
    if xs.size == 0:
        return 0.0, 0.0
    x_mean = mean(xs)
    y_mean = mean(ys)
    dx = xs - x_mean
    den = float(np.sum(dx * dx))
    num = float(np.sum(dx * (ys - y_mean)))
    slope = num / den if den != 0.0 else 0.0
    return float(slope), float(y_mean - slope * x_mean)


def calculate_estimators(table: ScoreTable) -> Estimators:
    metrics = table.metric_names
    matrix = table.score_matrix()
    result: Estimators = {}
    for target in metrics:
        result[target] = {}
        y_col = matrix[target].to_numpy(dtype=float)
        for predictor in metrics:
            x_col = matrix[predictor].to_numpy(dtype=float)
            both = ~np.isnan(x_col) & ~np.isnan(y_col)
            slope, intercept = fit_pair(x_col[both], y_col[both])
            result[target][predictor] = PairEstimator(slope=slope, intercept=intercept)
    return result


def predict_bivariate_scores(table: ScoreTable, estimators: Estimators) -> Dict[str, Dict[str, Dict[str, float]]]:
    out: Dict[str, Dict[str, Dict[str, float]]] = {}
    for entity in table.entities:
        row = table.row(entity)
        out[entity] = {}
        for target in table.metric_names:
            out[entity][target] = {}
            for predictor, cell in row.items():
                if predictor == target or cell.score is None:
                    continue
                out[entity][target][predictor] = estimators[target][predictor].predict(cell.score)
    return out


def _fill_error_statistics(
    table: ScoreTable,
    estimators: Estimators,
    raw_predictions: Dict[str, Dict[str, Dict[str, float]]],
) -> None:
    for target in table.metric_names:
        for predictor in table.metric_names:
            est = estimators[target][predictor]
            xs: List[float] = []
            ys: List[float] = []
            for entity in table.entities:
                y = table.score(entity, target)
                if y is None:
                    continue
                x = table.score(entity, predictor)
                if x is None:
                    # Stand in for the missing predictor with this entity's
                    # own cross-predictions of it; the present target is always one.
                    x = mean(raw_predictions[entity][predictor].values())
                xs.append(float(x))
                ys.append(float(y))

            if not xs:
                est.mse = 0.0
                est.n = 0
                est.predictor_mean = 0.0
                est.predictor_sum_sq_dev = 0.0
                continue

            x_arr = np.asarray(xs, dtype=float)
            y_arr = np.asarray(ys, dtype=float)
            x_mean = mean(x_arr)
            residuals = y_arr - (est.slope * x_arr + est.intercept)
            est.mse = float(np.sum(residuals * residuals)) / max(len(xs) - 2, 1)
            est.n = len(xs)
            est.predictor_mean = x_mean
            est.predictor_sum_sq_dev = float(np.sum((x_arr - x_mean) ** 2))


def estimate_prediction_variances(
    table: ScoreTable,
    estimators: Estimators,
    raw_predictions: Dict[str, Dict[str, Dict[str, float]]],
) -> Predictions:
    _fill_error_statistics(table, estimators, raw_predictions)
    out: Predictions = {}
    for entity, by_target in raw_predictions.items():
        out[entity] = {}
        for target, by_predictor in by_target.items():
            out[entity][target] = {
                predictor: BivariatePrediction(
                    score=score,
                    variance=estimators[target][predictor].prediction_variance(table.score(entity, predictor)),
                )
                for predictor, score in by_predictor.items()
            }
    return out


def combine_predictions(predictions: Dict[str, BivariatePrediction]) -> Optional[BivariatePrediction]:
    if not predictions:
        return None
    scores = np.asarray([p.score for p in predictions.values()], dtype=float)
    variances = np.asarray([p.variance for p in predictions.values()], dtype=float)
    weights = 1.0 / (variances + WEIGHT_EPS)
    den = float(np.sum(weights))
    estimate = float(np.sum(weights * scores)) / den
    # Predictions of the same target are treated as fully correlated:
    # cov(s_j, s_l) = 1 for every j != l.
    own = float(np.sum(weights * weights * variances))
    cross = den * den - float(np.sum(weights * weights))
    variance = (own + cross) / (den * den)
    return BivariatePrediction(score=estimate, variance=max(variance, 0.0))


def combine_pass(table: ScoreTable) -> ScoreTable:
    estimators = calculate_estimators(table)
    raw = predict_bivariate_scores(table, estimators)
    predictions = estimate_prediction_variances(table, estimators, raw)
    means = means_by_metric(table)

    updates: List[Cell] = []
    for cell in table.missing_cells():
        fused = combine_predictions(predictions[cell.entity][cell.metric])
        if fused is None:
            m = float(means.get(cell.metric, 0.0))
            updates.append(replace_estimate(cell, m, abs(m), BIVARIATE_PROVENANCE))
        else:
            updates.append(replace_estimate(cell, fused.score, math.sqrt(fused.variance), BIVARIATE_PROVENANCE))
    return table.with_cells(updates)


def mean_fill(table: ScoreTable) -> ScoreTable:
    means = means_by_metric(table)
    updates = []
    for cell in table.missing_cells():
        m = float(means.get(cell.metric, 0.0))
        updates.append(replace_estimate(cell, m, abs(m), MEAN_PROVENANCE))
    return table.with_cells(updates)


def estimate_bivariate(table: ScoreTable, iterations: int = 1) -> ScoreTable:
    if table.is_empty():
        return table.copy()
    if iterations <= 0:
        return mean_fill(table)
    current = table
    for i in range(int(iterations)):
        current = combine_pass(current)
        logger.debug("bivariate pass %d/%d done", i + 1, iterations)
    logger.info(
        "bivariate imputation filled %d cells over %d entities x %d metrics (%d passes)",
        len(table.missing_cells()),
        len(table),
        len(table.metric_names),
        iterations,
    )
    return current
