from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

import numpy as np

from scorefill.autograd import Node, constant, restore, snapshot, variable
from scorefill.config import DescentConfig
from scorefill.multivariate import (
    MultivariateModel,
    predict_missing_cells,
    prediction_variance,
    residual_dof,
    seed_table,
    train_all_models,
)
from scorefill.table import Cell, ScoreTable, replace_estimate


logger = logging.getLogger(__name__)

DESCENT_PROVENANCE = "multivariate gradient descent"
MIN_GRADIENT_NORM = 1e-10


class LossGraph(Protocol):
    def trainable(self) -> List[Node]: ...

    def loss(self) -> Node: ...


@dataclass
class RegressionParameters:
    alpha: Node
    betas: Dict[str, Node]

    def nodes(self) -> List[Node]:
        return [self.alpha] + list(self.betas.values())


@dataclass
class DescentTrace:
    loss_history: List[float] = field(default_factory=list)
    step_sizes: List[float] = field(default_factory=list)
    iterations_run: int = 0
    stopped_early: bool = False

    @property
    def final_loss(self) -> float:
        return self.loss_history[-1] if self.loss_history else math.nan


@dataclass
class DescentResult:
    table: ScoreTable
    trace: DescentTrace = field(default_factory=DescentTrace)

    @property
    def loss_history(self) -> List[float]:
        return self.trace.loss_history

    @property
    def step_sizes(self) -> List[float]:
        return self.trace.step_sizes

    @property
    def iterations_run(self) -> int:
        return self.trace.iterations_run

    @property
    def stopped_early(self) -> bool:
        return self.trace.stopped_early

    @property
    def final_loss(self) -> float:
        return self.trace.final_loss


class RegressionGraph:
    def __init__(
        self,
        observed: ScoreTable,
        initial: ScoreTable,
        models: Mapping[str, MultivariateModel],
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

        self.parameters: Dict[str, RegressionParameters] = {}
        for target in self.metric_names:
            model = models[target]
            self.parameters[target] = RegressionParameters(
                alpha=variable(model.bias),
                betas={m: variable(model.coefficients.get(m, 0.0)) for m in self.metric_names if m != target},
            )

    def trainable(self) -> List[Node]:
        out: List[Node] = []
        for params in self.parameters.values():
            out.extend(params.nodes())
        for row in self.scores.values():
            out.extend(n for n in row.values() if n.is_variable)
        return out

    def score_variables(self) -> List[Tuple[str, str, Node]]:
        return [
            (entity, metric, node)
            for entity, row in self.scores.items()
            for metric, node in row.items()
            if node.is_variable
        ]

    def prediction(self, entity: str, target: str) -> Node:
        params = self.parameters[target]
        row = self.scores[entity]
        pred = params.alpha
        for metric, beta in params.betas.items():
            pred = pred.add(beta.multiply(row[metric]))
        return pred

    def loss(self) -> Node:
        total = constant(0.0)
        for entity in self.observed.entities:
            for target in self.metric_names:
                if not self.observed.cell(entity, target).observed:
                    continue
                error = self.scores[entity][target].subtract(self.prediction(entity, target))
                total = total.add(error.power(2))
        return total


def gradient_norm(nodes: Sequence[Node]) -> float:
    return math.sqrt(sum(n.gradient * n.gradient for n in nodes))


def gradient_step(nodes: Sequence[Node], step_size: float) -> bool:
    norm = gradient_norm(nodes)
    if not math.isfinite(norm) or norm < MIN_GRADIENT_NORM:
        return False
    lr = float(step_size) / norm
    for n in nodes:
        n.value = n.value - lr * n.gradient
    return True


def line_search(
    graph: LossGraph,
    nodes: Sequence[Node],
    current_loss: float,
    step_size: float,
    max_backtracks: int,
) -> Tuple[Optional[float], float]:
    saved = snapshot(nodes)
    for _ in range(int(max_backtracks)):
        if not gradient_step(nodes, step_size):
            return None, step_size
        new_loss = graph.loss().value
        if math.isfinite(new_loss) and new_loss < current_loss:
            return new_loss, step_size
        restore(nodes, saved)
        step_size /= 2.0
    return None, step_size


def log_trace(label: str, trace: DescentTrace, iterations: int) -> None:
    history = trace.loss_history
    logger.info(
        "%s ran %d/%d iterations, loss %s -> %s",
        label,
        trace.iterations_run,
        iterations,
        f"{history[0]:.6g}" if history else "n/a",
        f"{history[-1]:.6g}" if history else "n/a",
    )


def run_descent(graph: LossGraph, iterations: int, config: DescentConfig) -> DescentTrace:
    nodes = graph.trainable()
    trace = DescentTrace()
    step_cap = math.inf
    for i in range(int(iterations)):
        loss = graph.loss()
        if not math.isfinite(loss.value):
            logger.warning("loss diverged (%s) at iteration %d; keeping last valid state", loss.value, i + 1)
            trace.stopped_early = True
            break
        if not trace.loss_history:
            trace.loss_history.append(float(loss.value))
        loss.compute_gradients()
        # Halvings carry over: the schedule only ever lowers the starting step.
        start_step = min(config.step_size_at(i, iterations), step_cap)
        new_loss, used_step = line_search(graph, nodes, float(loss.value), start_step, config.max_backtracks)
        if new_loss is None:
            logger.info("no improving step at iteration %d/%d; stopping", i + 1, iterations)
            trace.stopped_early = True
            break
        step_cap = used_step
        trace.loss_history.append(float(new_loss))
        trace.step_sizes.append(float(used_step))
        trace.iterations_run += 1
        logger.debug("iteration %d/%d loss %.6g step size %.3g", i + 1, iterations, new_loss, used_step)
    return trace


def _final_residual_variance(graph: RegressionGraph, target: str) -> float:
    sse = 0.0
    n = 0
    for entity in graph.observed.entities:
        if not graph.observed.cell(entity, target).observed:
            continue
        r = graph.scores[entity][target].value - graph.prediction(entity, target).value
        sse += r * r
        n += 1
    if n == 0:
        return 0.0
    return sse / residual_dof(n, len(graph.parameters[target].betas))


def extract_table(graph: RegressionGraph, models: Mapping[str, MultivariateModel]) -> ScoreTable:
    # All predictions are evaluated before any score variable is overwritten.
    missing = [c for c in graph.observed.missing_cells()]
    predicted = {(c.entity, c.metric): graph.prediction(c.entity, c.metric).value for c in missing}
    for entity, metric, node in graph.score_variables():
        node.value = predicted[(entity, metric)]

    residual_variances = {t: _final_residual_variance(graph, t) for t in graph.metric_names}
    updates: List[Cell] = []
    for cell in missing:
        model = models[cell.metric]
        params = graph.parameters[cell.metric]
        x = np.asarray([graph.scores[cell.entity][m].value for m in params.betas] + [1.0], dtype=float)
        res_var = residual_variances[cell.metric]
        cov = res_var * model.xtx_inverse if model.xtx_inverse is not None else None
        var = prediction_variance(x, res_var, cov)
        updates.append(
            replace_estimate(cell, predicted[(cell.entity, cell.metric)], math.sqrt(var), DESCENT_PROVENANCE)
        )
    return graph.observed.with_cells(updates)


def optimize_multivariate(
    table: ScoreTable,
    iterations: int = 100,
    config: Optional[DescentConfig] = None,
) -> DescentResult:
    config = config or DescentConfig()
    if table.is_empty():
        return DescentResult(table=table.copy())

    seeded = seed_table(table)
    models = train_all_models(seeded)
    initial = predict_missing_cells(seeded, models)
    graph = RegressionGraph(table, initial, models, optimize_scores=config.optimize_scores)

    trace = run_descent(graph, iterations, config)
    out = extract_table(graph, models)
    log_trace("multivariate gradient descent", trace, iterations)
    return DescentResult(table=out, trace=trace)


def estimate_multivariate_descent(
    table: ScoreTable,
    iterations: int = 100,
    config: Optional[DescentConfig] = None,
) -> ScoreTable:
    return optimize_multivariate(table, iterations, config).table
