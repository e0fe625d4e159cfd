import math

import pytest

from scorefill.bivariate import calculate_estimators
from scorefill.config import DescentConfig
from scorefill.consolidated import (
    CONSOLIDATED_DESCENT_PROVENANCE,
    CONSOLIDATED_PROVENANCE,
    ConsolidatedGraph,
    consolidated_score,
    estimate_consolidated,
    optimize_consolidated,
)
from scorefill.stats import means_by_metric
from scorefill.table import Observation, build_table


def two_metric_table():
    # B = 2A + 1, B unknown for e5
    obs = []
    for i in range(1, 6):
        obs.append(Observation(f"e{i}", "A", float(i)))
        obs.append(Observation(f"e{i}", "B", None if i == 5 else 2.0 * i + 1.0))
    return build_table(obs)


def assert_non_increasing(values):
    for before, after in zip(values, values[1:]):
        assert after <= before


def test_closed_form_blends_both_regression_directions():
    table = two_metric_table()
    estimators = calculate_estimators(table)
    means = means_by_metric(table)
    # mean_B + (2 + 0.5) * (5 - 3) / (1 + 0.5^2)
    assert consolidated_score({"A": 5.0, "B": None}, "B", estimators, means) == pytest.approx(10.0)
    assert consolidated_score({"A": None, "B": None}, "B", estimators, means) == pytest.approx(6.0)


def test_closed_form_fills_with_in_sample_residual_spread():
    table = two_metric_table()
    filled = estimate_consolidated(table)
    cell = filled.cell("e5", "B")
    assert cell.score == pytest.approx(10.0)
    assert cell.std_dev == pytest.approx(1.0)
    assert cell.provenance == CONSOLIDATED_PROVENANCE
    assert not cell.observed
    for known in table.observed_cells():
        assert filled.cell(known.entity, known.metric) == known


def test_closed_form_empty_table():
    table = build_table([])
    assert estimate_consolidated(table) == table


def test_graph_parameters_per_ordered_pair():
    table = two_metric_table()
    initial = estimate_consolidated(table)
    estimators = calculate_estimators(table)
    free = ConsolidatedGraph(table, initial, estimators, optimize_scores=True)
    fixed = ConsolidatedGraph(table, initial, estimators, optimize_scores=False)
    # slope, intercept and weight for A->B and B->A, plus the unknown B of e5
    assert len(free.trainable()) == 2 * 3 + 1
    assert len(fixed.trainable()) == 2 * 3
    assert free.pairs["B"]["A"].slope.value == pytest.approx(2.0)
    assert free.pairs["A"]["B"].slope.value == pytest.approx(0.5)
    # only e5's A term misses: 0.5 * 10 - 0.5 = 4.5 against 5
    assert free.loss().value == pytest.approx(0.25)


def test_descent_lowers_pairwise_loss():
    result = optimize_consolidated(two_metric_table(), iterations=30)
    assert result.loss_history[0] == pytest.approx(0.25)
    assert result.loss_history[-1] < result.loss_history[0]
    assert_non_increasing(result.loss_history)
    assert_non_increasing(result.step_sizes)
    cell = result.table.cell("e5", "B")
    assert cell.provenance == CONSOLIDATED_DESCENT_PROVENANCE
    assert math.isfinite(cell.score)
    assert cell.std_dev >= 0.0


def test_descent_with_fixed_scores_keeps_closed_form(noisy_table):
    closed = estimate_consolidated(noisy_table)
    result = optimize_consolidated(noisy_table, iterations=10, config=DescentConfig(optimize_scores=False))
    assert_non_increasing(result.loss_history)
    for cell in noisy_table.missing_cells():
        assert result.table.score(cell.entity, cell.metric) == pytest.approx(closed.score(cell.entity, cell.metric))
    for cell in noisy_table.observed_cells():
        assert result.table.cell(cell.entity, cell.metric) == cell


def test_descent_empty_table():
    table = build_table([])
    result = optimize_consolidated(table, iterations=5)
    assert result.table == table
    assert result.loss_history == []
