from typing import Dict, List, Optional

import pytest

from scorefill.table import Observation, ScoreTable, build_table


# A = 1..5, B = 2A + 1, C = 10 - A
LINEAR_SCORES: Dict[str, Dict[str, float]] = {
    f"e{i}": {"A": float(i), "B": 2.0 * i + 1.0, "C": 10.0 - i} for i in range(1, 6)
}


def observations_from(scores: Dict[str, Dict[str, Optional[float]]], source: str = "paper") -> List[Observation]:
    out: List[Observation] = []
    for entity, row in scores.items():
        for metric, value in row.items():
            out.append(Observation(entity=entity, metric=metric, value=value, provenance=source))
    return out


@pytest.fixture
def full_linear_table() -> ScoreTable:
    return build_table(observations_from(LINEAR_SCORES))


@pytest.fixture
def sparse_linear_table() -> ScoreTable:
    scores = {e: dict(row) for e, row in LINEAR_SCORES.items()}
    del scores["e5"]["B"]
    del scores["e4"]["C"]
    return build_table(observations_from(scores))


@pytest.fixture
def noisy_table() -> ScoreTable:
    scores = {
        "m1": {"A": 10.0, "B": 21.5, "C": 40.2},
        "m2": {"A": 20.0, "B": 39.0, "C": 61.0},
        "m3": {"A": 30.0, "B": 62.0, "C": None},
        "m4": {"A": 40.0, "B": None, "C": 97.5},
        "m5": {"A": 50.0, "B": 98.5, "C": 121.0},
        "m6": {"A": None, "B": 70.0, "C": 88.0},
    }
    return build_table(observations_from(scores))
