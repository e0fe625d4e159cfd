from __future__ import annotations

import logging
from typing import Any, Mapping, Optional, Sequence, Union

from scorefill.bivariate import estimate_bivariate, mean_fill
from scorefill.consolidated import estimate_consolidated, estimate_consolidated_descent
from scorefill.config import Algorithm, ImputationConfig
from scorefill.descent import estimate_multivariate_descent
from scorefill.multivariate import estimate_multivariate
from scorefill.table import Observation, ScoreTable, build_table, table_from_records


logger = logging.getLogger(__name__)

TableInput = Union[ScoreTable, Sequence[Observation], Mapping[str, Any]]


def as_table(data: TableInput) -> ScoreTable:
    if isinstance(data, ScoreTable):
        return data.copy()
    if isinstance(data, Mapping):
        return table_from_records(data)
    if isinstance(data, Sequence) and all(isinstance(o, Observation) for o in data):
        return build_table(data)
    raise ValueError(f"Cannot build a score table from {type(data).__name__}")


def estimate_missing_scores(data: TableInput, config: Optional[ImputationConfig] = None) -> ScoreTable:
    config = config or ImputationConfig()
    table = as_table(data)
    logger.info(
        "imputing %d absent cells (%d entities x %d metrics) with %s",
        sum(1 for c in table.missing_cells()),
        len(table),
        len(table.metric_names),
        config.key,
    )
    if config.algorithm is Algorithm.MEAN:
        return mean_fill(table)
    if config.algorithm is Algorithm.BIVARIATE:
        return estimate_bivariate(table, config.iterations)
    if config.algorithm is Algorithm.MULTIVARIATE:
        return estimate_multivariate(table, config.iterations)
    if config.algorithm is Algorithm.MULTIVARIATE_DESCENT:
        return estimate_multivariate_descent(table, config.iterations, config.descent)
    if config.algorithm is Algorithm.CONSOLIDATED_BIVARIATE:
        return estimate_consolidated(table)
    if config.algorithm is Algorithm.CONSOLIDATED_DESCENT:
        return estimate_consolidated_descent(table, config.iterations, config.descent)
    raise ValueError(f"Unknown algorithm: {config.algorithm}")
