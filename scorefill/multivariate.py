from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from scorefill.bivariate import combine_pass
from scorefill.linalg import gaussian_elimination, invert_matrix
from scorefill.stats import mean, means_by_metric
from scorefill.table import Cell, ScoreTable, replace_estimate


logger = logging.getLogger(__name__)

MULTIVARIATE_PROVENANCE = "multivariate regression"


@dataclass
class MultivariateModel:
    target: str
    bias: float
    coefficients: Dict[str, float]
    residual_variance: float
    feature_metrics: List[str]
    covariance: Optional[np.ndarray] = None
    xtx_inverse: Optional[np.ndarray] = None
    singular: bool = False
    n_samples: int = 0

    def parameter_vector(self) -> np.ndarray:
        return np.asarray([self.coefficients[m] for m in self.feature_metrics] + [self.bias], dtype=float)


@dataclass(frozen=True)
class Prediction:
    score: float
    variance: float

    @property
    def std_dev(self) -> float:
        return math.sqrt(max(self.variance, 0.0))


def residual_dof(n_samples: int, n_features: int) -> int:
    return max(int(n_samples) - int(n_features) - 1, 1)


def _design(
    table: ScoreTable,
    target: str,
    features: Sequence[str],
    fill_values: Mapping[str, float],
) -> Tuple[np.ndarray, np.ndarray]:
    rows: List[List[float]] = []
    ys: List[float] = []
    for entity in table.entities:
        y = table.score(entity, target)
        if y is None:
            continue
        row = []
        for metric in features:
            x = table.score(entity, metric)
            row.append(float(fill_values.get(metric, 0.0)) if x is None else float(x))
        row.append(1.0)  # bias
        rows.append(row)
        ys.append(float(y))
    X = np.asarray(rows, dtype=float).reshape(len(rows), len(features) + 1)
    return X, np.asarray(ys, dtype=float)


def _fallback_model(target: str, features: Sequence[str], y: np.ndarray) -> MultivariateModel:
    bias = mean(y)
    resid = y - bias
    return MultivariateModel(
        target=target,
        bias=bias,
        coefficients={m: 0.0 for m in features},
        residual_variance=float(np.sum(resid * resid)) / residual_dof(len(y), 0) if len(y) else 0.0,
        feature_metrics=list(features),
        singular=True,
        n_samples=int(len(y)),
    )


def train_model_for_metric(table: ScoreTable, target: str) -> MultivariateModel:
    features = [m for m in table.metric_names if m != target]
    X, y = _design(table, target, features, means_by_metric(table))
    if len(y) == 0:
        return MultivariateModel(
            target=target,
            bias=0.0,
            coefficients={m: 0.0 for m in features},
            residual_variance=0.0,
            feature_metrics=features,
            singular=True,
        )

    xtx = X.T @ X
    xty = X.T @ y
    beta = gaussian_elimination(xtx, xty)
    if beta is None:
        logger.warning("normal equations for %r are singular; falling back to the mean", target)
        return _fallback_model(target, features, y)

    resid = y - X @ beta
    residual_variance = float(np.sum(resid * resid)) / residual_dof(len(y), len(features))
    xtx_inverse = invert_matrix(xtx)
    covariance = residual_variance * xtx_inverse if xtx_inverse is not None else None
    return MultivariateModel(
        target=target,
        bias=float(beta[-1]),
        coefficients={m: float(beta[i]) for i, m in enumerate(features)},
        residual_variance=residual_variance,
        feature_metrics=features,
        covariance=covariance,
        xtx_inverse=xtx_inverse,
        n_samples=int(len(y)),
    )


def feature_vector(scores: Mapping[str, Optional[float]], model: MultivariateModel) -> np.ndarray:
    values = []
    for metric in model.feature_metrics:
        s = scores.get(metric)
        values.append(0.0 if s is None else float(s))
    values.append(1.0)
    return np.asarray(values, dtype=float)


def prediction_variance(x: np.ndarray, residual_variance: float, covariance: Optional[np.ndarray]) -> float:
    if covariance is None:
        return max(float(residual_variance), 0.0)
    # Irreducible noise plus estimation error of the coefficients.
    return max(float(residual_variance) + float(x @ covariance @ x), 0.0)


def predict_missing_score(scores: Mapping[str, Optional[float]], model: MultivariateModel) -> Prediction:
    x = feature_vector(scores, model)
    score = float(x @ model.parameter_vector())
    return Prediction(score=score, variance=prediction_variance(x, model.residual_variance, model.covariance))


def _scores_of(row: Mapping[str, Cell]) -> Dict[str, Optional[float]]:
    return {metric: cell.score for metric, cell in row.items()}


def train_all_models(table: ScoreTable) -> Dict[str, MultivariateModel]:
    return {metric: train_model_for_metric(table, metric) for metric in table.metric_names}


def predict_missing_cells(
    table: ScoreTable,
    models: Mapping[str, MultivariateModel],
    provenance: str = MULTIVARIATE_PROVENANCE,
) -> ScoreTable:
    updates: List[Cell] = []
    for cell in table.missing_cells():
        pred = predict_missing_score(_scores_of(table.row(cell.entity)), models[cell.metric])
        updates.append(replace_estimate(cell, pred.score, pred.std_dev, provenance))
    return table.with_cells(updates)


def seed_table(table: ScoreTable) -> ScoreTable:
    return combine_pass(table)


def estimate_multivariate(table: ScoreTable, iterations: int = 3) -> ScoreTable:
    if table.is_empty():
        return table.copy()
    current = seed_table(table)
    for i in range(int(iterations)):
        models = train_all_models(current)
        current = predict_missing_cells(current, models)
        n_singular = sum(1 for m in models.values() if m.singular)
        logger.debug("multivariate round %d/%d (%d singular fits)", i + 1, iterations, n_singular)
    logger.info(
        "multivariate imputation filled %d cells over %d entities x %d metrics (%d rounds)",
        len(table.missing_cells()),
        len(table),
        len(table.metric_names),
        iterations,
    )
    return current
