from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional

from scorefill.autograd import Node, constant, variable
from scorefill.bivariate import Estimators, calculate_estimators
from scorefill.config import DescentConfig
from scorefill.descent import DescentResult, log_trace, run_descent
from scorefill.stats import means_by_metric
from scorefill.table import Cell, ScoreTable, replace_estimate


logger = logging.getLogger(__name__)

CONSOLIDATED_PROVENANCE = "consolidated bivariate regression"
CONSOLIDATED_DESCENT_PROVENANCE = "consolidated bivariate gradient descent"


def consolidated_score(
    scores: Mapping[str, Optional[float]],
    target: str,
    estimators: Estimators,
    means: Mapping[str, float],
) -> float:
    # s_k = mean_k + sum_j (a_jk + a_kj)(s_j - mean_j) / sum_j (1 + a_kj^2)
    mean_k = float(means.get(target, 0.0))
    num = 0.0
    den = 0.0
    for predictor, s in scores.items():
        if predictor == target or s is None:
            continue
        forward = estimators[target][predictor].slope
        backward = estimators[predictor][target].slope
        num += (forward + backward) * (float(s) - float(means.get(predictor, 0.0)))
        den += 1.0 + backward * backward
    return mean_k + num / den if den != 0.0 else mean_k


def _residual_std(table: ScoreTable, target: str, predict: Callable[[str], Optional[float]]) -> float:
    sse = 0.0
    n = 0
    for entity in table.entities:
        cell = table.cell(entity, target)
        if not cell.observed:
            continue
        pred = predict(entity)
        if pred is None:
            continue
        sse += (float(cell.score) - pred) ** 2
        n += 1
    return math.sqrt(sse / n) if n else 0.0


def _observed_scores(table: ScoreTable, entity: str, skip: Optional[str] = None) -> Dict[str, Optional[float]]:
    return {
        metric: (cell.score if cell.observed and metric != skip else None)
        for metric, cell in table.row(entity).items()
    }


def estimate_consolidated(table: ScoreTable) -> ScoreTable:
    if table.is_empty():
        return table.copy()
    estimators = calculate_estimators(table)
    means = means_by_metric(table)

    std_devs = {
        target: _residual_std(
            table,
            target,
            lambda entity, t=target: consolidated_score(_observed_scores(table, entity, skip=t), t, estimators, means),
        )
        for target in table.metric_names
    }
    updates: List[Cell] = []
    for cell in table.missing_cells():
        score = consolidated_score(_observed_scores(table, cell.entity), cell.metric, estimators, means)
        updates.append(replace_estimate(cell, score, std_devs[cell.metric], CONSOLIDATED_PROVENANCE))
    logger.info(
        "consolidated bivariate imputation filled %d cells over %d entities x %d metrics",
        len(updates),
        len(table),
        len(table.metric_names),
    )
    return table.with_cells(updates)


@dataclass
class PairParameters:
    slope: Node
    intercept: Node
    weight: Node

    def nodes(self) -> List[Node]:
        return [self.slope, self.intercept, self.weight]


class ConsolidatedGraph:
    def __init__(
        self,
        observed: ScoreTable,
        initial: ScoreTable,
        estimators: Estimators,
        optimize_scores: bool = True,
    ) -> None:
        self.observed = observed
        self.metric_names = observed.metric_names
        self.scores: Dict[str, Dict[str, Node]] = {}
        for entity in observed.entities:
            self.scores[entity] = {}
            for metric in self.metric_names:
                cell = observed.cell(entity, metric)
                if cell.observed:
                    self.scores[entity][metric] = constant(cell.score)
                else:
                    start = float(initial.score(entity, metric))
                    self.scores[entity][metric] = variable(start) if optimize_scores else constant(start)

        # pairs[target][predictor]
        self.pairs: Dict[str, Dict[str, PairParameters]] = {}
        for target in self.metric_names:
            self.pairs[target] = {}
            for predictor in self.metric_names:
                if predictor == target:
                    continue
                est = estimators[target][predictor]
                self.pairs[target][predictor] = PairParameters(
                    slope=variable(est.slope),
                    intercept=variable(est.intercept),
                    weight=variable(1.0),
                )

    def trainable(self) -> List[Node]:
        out: List[Node] = []
        for by_predictor in self.pairs.values():
            for params in by_predictor.values():
                out.extend(params.nodes())
        for row in self.scores.values():
            out.extend(n for n in row.values() if n.is_variable)
        return out

    def prediction(self, entity: str, target: str) -> Optional[Node]:
        row = self.scores[entity]
        weighted = constant(0.0)
        total = constant(0.0)
        for predictor, params in self.pairs[target].items():
            pred = params.slope.multiply(row[predictor]).add(params.intercept)
            weighted = weighted.add(params.weight.multiply(pred))
            total = total.add(params.weight)
        if total.value == 0.0:
            return None
        return weighted.divide(total)

    def loss(self) -> Node:
        total = constant(0.0)
        for entity in self.observed.entities:
            for target in self.metric_names:
                if not self.observed.cell(entity, target).observed:
                    continue
                pred = self.prediction(entity, target)
                if pred is None:
                    continue
                total = total.add(pred.subtract(self.scores[entity][target]).power(2))
        return total


def _read_back(graph: ConsolidatedGraph) -> ScoreTable:
    def predict_with(target: str) -> Callable[[str], Optional[float]]:
        def predict(entity: str) -> Optional[float]:
            node = graph.prediction(entity, target)
            return None if node is None else node.value

        return predict

    table = graph.observed
    std_devs = {target: _residual_std(table, target, predict_with(target)) for target in graph.metric_names}
    updates = [
        replace_estimate(
            cell,
            graph.scores[cell.entity][cell.metric].value,
            std_devs[cell.metric],
            CONSOLIDATED_DESCENT_PROVENANCE,
        )
        for cell in table.missing_cells()
    ]
    return table.with_cells(updates)


def optimize_consolidated(
    table: ScoreTable,
    iterations: int = 100,
    config: Optional[DescentConfig] = None,
) -> DescentResult:
    config = config or DescentConfig()
    if table.is_empty():
        return DescentResult(table=table.copy())

    initial = estimate_consolidated(table)
    graph = ConsolidatedGraph(table, initial, calculate_estimators(table), optimize_scores=config.optimize_scores)
    trace = run_descent(graph, iterations, config)
    log_trace("consolidated bivariate gradient descent", trace, iterations)
    return DescentResult(table=_read_back(graph), trace=trace)


def estimate_consolidated_descent(
    table: ScoreTable,
    iterations: int = 100,
    config: Optional[DescentConfig] = None,
) -> ScoreTable:
    return optimize_consolidated(table, iterations, config).table
