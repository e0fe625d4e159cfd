import pytest

from scorefill.config import Algorithm, ImputationConfig
from scorefill.impute import as_table, estimate_missing_scores
from scorefill.table import table_to_records

from conftest import observations_from


ALL_CONFIGS = [
    ImputationConfig(Algorithm.MEAN, 0),
    ImputationConfig(Algorithm.BIVARIATE, 1),
    ImputationConfig(Algorithm.BIVARIATE, 3),
    ImputationConfig(Algorithm.MULTIVARIATE, 3),
    ImputationConfig(Algorithm.MULTIVARIATE_DESCENT, 15),
    ImputationConfig(Algorithm.CONSOLIDATED_BIVARIATE, 0),
    ImputationConfig(Algorithm.CONSOLIDATED_DESCENT, 15),
]


@pytest.mark.parametrize("config", ALL_CONFIGS, ids=lambda c: c.key)
def test_every_algorithm_fills_and_preserves(noisy_table, config):
    filled = estimate_missing_scores(noisy_table, config)
    assert filled.metric_names == noisy_table.metric_names
    assert filled.entities == noisy_table.entities
    for cell in noisy_table.observed_cells():
        assert filled.cell(cell.entity, cell.metric) == cell
    assert all(c.score is not None for c in filled.cells())
    assert all(c.std_dev >= 0.0 for c in filled.cells())


@pytest.mark.parametrize("config", ALL_CONFIGS, ids=lambda c: c.key)
def test_every_algorithm_is_deterministic(noisy_table, config):
    assert estimate_missing_scores(noisy_table, config) == estimate_missing_scores(noisy_table, config)


@pytest.mark.parametrize("config", ALL_CONFIGS, ids=lambda c: c.key)
def test_empty_input_stays_empty(config):
    assert estimate_missing_scores([], config).is_empty()


def test_default_is_one_bivariate_pass(sparse_linear_table):
    filled = estimate_missing_scores(sparse_linear_table)
    assert filled.score("e5", "B") == pytest.approx(11.0)


def test_accepts_records_and_observations(sparse_linear_table):
    from_records = estimate_missing_scores(table_to_records(sparse_linear_table))
    assert from_records.score("e5", "B") == pytest.approx(11.0)
    obs = observations_from({"x": {"a": 1.0, "b": 2.0}, "y": {"a": 2.0, "b": None}})
    assert estimate_missing_scores(obs).score("y", "b") is not None


def test_as_table_copies_tables(sparse_linear_table):
    copy = as_table(sparse_linear_table)
    assert copy == sparse_linear_table
    assert copy is not sparse_linear_table


@pytest.mark.parametrize("data", [42, "scores", [1.0, 2.0]])
def test_rejects_uninterpretable_input(data):
    with pytest.raises(ValueError):
        estimate_missing_scores(data)


def test_input_is_not_modified(noisy_table):
    snapshot = noisy_table.to_frame()
    estimate_missing_scores(noisy_table, ImputationConfig(Algorithm.MULTIVARIATE_DESCENT, 5))
    assert noisy_table.to_frame().equals(snapshot)
