import pytest

from scorefill.config import Algorithm, ImputationConfig
from scorefill.evaluation import compare_algorithms, default_n_jobs, evaluate_holdout, select_holdout_cells


def test_holdout_cells_are_sorted_and_capped(full_linear_table):
    cells = select_holdout_cells(full_linear_table, 4)
    assert cells == [("e1", "A"), ("e1", "B"), ("e1", "C"), ("e2", "A")]
    assert len(select_holdout_cells(full_linear_table, 1000)) == 15


def test_exact_relationships_predict_held_out_cells(full_linear_table):
    report = evaluate_holdout(full_linear_table, ImputationConfig(Algorithm.BIVARIATE, 1), num_tests=6, n_jobs=1)
    assert report.n_tests == 6
    assert report.mse == pytest.approx(0.0, abs=1e-12)
    assert report.mae == pytest.approx(0.0, abs=1e-6)
    assert list(report.details["entity"]) == ["e1", "e1", "e1", "e2", "e2", "e2"]
    assert report.details["predicted_score"].notna().all()
    assert set(report.as_dict()) == {"mse", "rmse", "mae", "spearman", "n_tests"}


def test_compare_orders_by_error(full_linear_table):
    summary = compare_algorithms(
        full_linear_table,
        [ImputationConfig(Algorithm.MEAN, 0), ImputationConfig(Algorithm.BIVARIATE, 1)],
        num_tests=6,
        n_jobs=1,
    )
    assert list(summary["algorithm"]) == ["bivariate", "mean"]
    assert summary.loc[1, "mse"] > summary.loc[0, "mse"]


def test_no_holdout_cells_is_an_error(full_linear_table):
    with pytest.raises(ValueError):
        evaluate_holdout(full_linear_table, ImputationConfig(), num_tests=0, n_jobs=1)


def test_n_jobs_from_environment(monkeypatch):
    monkeypatch.setenv("SCOREFILL_N_JOBS", "3")
    assert default_n_jobs() == 3
    monkeypatch.setenv("SCOREFILL_N_JOBS", "lots")
    assert default_n_jobs() == 1
    monkeypatch.delenv("SCOREFILL_N_JOBS")
    assert default_n_jobs() == 1
