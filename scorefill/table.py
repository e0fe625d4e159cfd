from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd


ORIGINAL_PROVENANCE = "Original"


@dataclass(frozen=True)
class Observation:
    entity: str
    metric: str
    value: Optional[float]
    provenance: Optional[str] = None


@dataclass(frozen=True)
class Cell:
    entity: str
    metric: str
    score: Optional[float] = None
    std_dev: float = 0.0
    provenance: str = ""
    observed: bool = False

    @property
    def present(self) -> bool:
        return self.score is not None

    @property
    def variance(self) -> float:
        return float(self.std_dev) ** 2


class ScoreTable:
    def __init__(
        self,
        metric_names: Sequence[str],
        rows: Mapping[str, Mapping[str, Cell]],
        entity_info: Optional[Mapping[str, Mapping[str, Any]]] = None,
    ) -> None:
        self._metric_names: List[str] = list(metric_names)
        self._rows: Dict[str, Dict[str, Cell]] = {}
        for entity, cells in rows.items():
            row: Dict[str, Cell] = {}
            for metric in self._metric_names:
                cell = cells.get(metric)
                row[metric] = cell if cell is not None else Cell(entity=entity, metric=metric)
            self._rows[entity] = row
        self._entity_info: Dict[str, Dict[str, Any]] = {
            str(k): dict(v) for k, v in (entity_info or {}).items()
        }

    @property
    def metric_names(self) -> List[str]:
        return list(self._metric_names)

    @property
    def entities(self) -> List[str]:
        return list(self._rows)

    @property
    def entity_info(self) -> Dict[str, Dict[str, Any]]:
        return {k: dict(v) for k, v in self._entity_info.items()}

    def __len__(self) -> int:
        return len(self._rows)

    def __contains__(self, entity: object) -> bool:
        return entity in self._rows

    def is_empty(self) -> bool:
        return not self._rows or not self._metric_names

    def row(self, entity: str) -> Dict[str, Cell]:
        return dict(self._rows[entity])

    def cell(self, entity: str, metric: str) -> Cell:
        return self._rows[entity][metric]

    def score(self, entity: str, metric: str) -> Optional[float]:
        return self._rows[entity][metric].score

    def cells(self) -> Iterator[Cell]:
        for row in self._rows.values():
            for metric in self._metric_names:
                yield row[metric]

    def observed_cells(self) -> List[Cell]:
        return [c for c in self.cells() if c.observed]

    def missing_cells(self) -> List[Cell]:
        return [c for c in self.cells() if not c.observed]

    def copy(self) -> "ScoreTable":
        # Cells are frozen, so sharing them between copies is safe.
        return ScoreTable(self._metric_names, self._rows, self._entity_info)

    def with_cells(self, cells: Iterable[Cell]) -> "ScoreTable":
        out = self.copy()
        for cell in cells:
            if cell.entity not in out._rows or cell.metric not in out._rows[cell.entity]:
                raise ValueError(f"Unknown cell ({cell.entity!r}, {cell.metric!r})")
            out._rows[cell.entity][cell.metric] = cell
        return out

    def with_cell(self, cell: Cell) -> "ScoreTable":
        return self.with_cells([cell])

    def without_observation(self, entity: str, metric: str) -> "ScoreTable":
        return self.with_cell(Cell(entity=entity, metric=metric))

    def to_frame(self) -> pd.DataFrame:
        records = [
            {
                "entity": c.entity,
                "metric": c.metric,
                "score": np.nan if c.score is None else float(c.score),
                "std_dev": float(c.std_dev),
                "provenance": c.provenance,
                "observed": bool(c.observed),
            }
            for c in self.cells()
        ]
        return pd.DataFrame(
            records, columns=["entity", "metric", "score", "std_dev", "provenance", "observed"]
        )

    def score_matrix(self) -> pd.DataFrame:
        data = [
            [np.nan if row[m].score is None else float(row[m].score) for m in self._metric_names]
            for row in self._rows.values()
        ]
        return pd.DataFrame(data, index=list(self._rows), columns=list(self._metric_names), dtype=float)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ScoreTable):
            return NotImplemented
        return (
            self._metric_names == other._metric_names
            and self._rows == other._rows
            and self._entity_info == other._entity_info
        )

    def __repr__(self) -> str:
        n_missing = sum(1 for c in self.cells() if c.score is None)
        return (
            f"ScoreTable(entities={len(self._rows)}, metrics={len(self._metric_names)}, "
            f"absent={n_missing})"
        )


def _format_score(value: float) -> str:
    text = repr(float(value))
    return text[:-2] if text.endswith(".0") else text


def _is_absent(value: Optional[float]) -> bool:
    return value is None or math.isnan(float(value))


def _merge_group(entity: str, metric: str, values: Sequence[float], sources: Sequence[Optional[str]]) -> Cell:
    if len(values) == 1:
        return Cell(
            entity=entity,
            metric=metric,
            score=float(values[0]),
            std_dev=0.0,
            provenance=sources[0] or ORIGINAL_PROVENANCE,
            observed=True,
        )
    arr = np.asarray(values, dtype=float)
    avg = float(np.mean(arr))
    std = float(np.std(arr, ddof=1))
    provenance = "Multiple: " + "; ".join(
        f"Score {_format_score(v)} at {s or ORIGINAL_PROVENANCE}" for v, s in zip(values, sources)
    )
    return Cell(entity=entity, metric=metric, score=avg, std_dev=std, provenance=provenance, observed=True)


def build_table(
    observations: Iterable[Observation],
    entity_info: Optional[Mapping[str, Mapping[str, Any]]] = None,
) -> ScoreTable:
    obs = list(observations)
    entities: List[str] = []
    metrics: List[str] = []
    seen_entities = set()
    seen_metrics = set()
    for o in obs:
        if o.entity not in seen_entities:
            seen_entities.add(o.entity)
            entities.append(o.entity)
        if o.metric not in seen_metrics:
            seen_metrics.add(o.metric)
            metrics.append(o.metric)
    for entity in (entity_info or {}):
        if entity not in seen_entities:
            seen_entities.add(entity)
            entities.append(entity)

    rows: Dict[str, Dict[str, Cell]] = {e: {} for e in entities}
    frame = pd.DataFrame(
        [(o.entity, o.metric, o.value, o.provenance) for o in obs if not _is_absent(o.value)],
        columns=["entity", "metric", "value", "provenance"],
    )
    if not frame.empty:
        frame["value"] = frame["value"].astype(float)
        for (entity, metric), group in frame.groupby(["entity", "metric"], sort=False):
            rows[entity][metric] = _merge_group(
                entity,
                metric,
                group["value"].tolist(),
                [None if pd.isna(s) else str(s) for s in group["provenance"].tolist()],
            )
    return ScoreTable(metrics, rows, entity_info)


def _coerce_value(raw: Any, entity: str, metric: str) -> Optional[float]:
    if raw is None:
        return None
    if isinstance(raw, bool) or not isinstance(raw, (int, float, np.integer, np.floating)):
        raise ValueError(f"Non-numeric value {raw!r} for ({entity!r}, {metric!r})")
    value = float(raw)
    if math.isnan(value):
        return None
    if math.isinf(value):
        raise ValueError(f"Infinite value for ({entity!r}, {metric!r})")
    return value


def observations_from_records(payload: Mapping[str, Any]) -> Tuple[List[Observation], Dict[str, Dict[str, Any]]]:
    if not isinstance(payload, Mapping) or "entities" not in payload:
        raise ValueError("Score payload must be a mapping with an 'entities' list")
    raw_entities = payload["entities"]
    if not isinstance(raw_entities, Sequence) or isinstance(raw_entities, (str, bytes)):
        raise ValueError("'entities' must be a list")

    observations: List[Observation] = []
    info: Dict[str, Dict[str, Any]] = {}
    for i, raw_entity in enumerate(raw_entities):
        if not isinstance(raw_entity, Mapping) or "id" not in raw_entity:
            raise ValueError(f"Entity #{i} has no 'id'")
        entity = str(raw_entity["id"])
        info[entity] = {k: v for k, v in raw_entity.items() if k not in ("id", "metrics")}
        for j, raw_metric in enumerate(raw_entity.get("metrics") or []):
            if not isinstance(raw_metric, Mapping) or "name" not in raw_metric:
                raise ValueError(f"Metric #{j} of entity {entity!r} has no 'name'")
            metric = str(raw_metric["name"])
            observations.append(
                Observation(
                    entity=entity,
                    metric=metric,
                    value=_coerce_value(raw_metric.get("value"), entity, metric),
                    provenance=raw_metric.get("provenance"),
                )
            )
    return observations, info


def table_from_records(payload: Mapping[str, Any]) -> ScoreTable:
    observations, info = observations_from_records(payload)
    return build_table(observations, entity_info=info)


def table_to_records(table: ScoreTable) -> Dict[str, List[Dict[str, Any]]]:
    info = table.entity_info
    entities: List[Dict[str, Any]] = []
    for entity in table.entities:
        row = table.row(entity)
        record: Dict[str, Any] = {"id": entity}
        record.update(info.get(entity, {}))
        record["metrics"] = [
            {
                "name": metric,
                "value": row[metric].score,
                "std_dev": float(row[metric].std_dev),
                "provenance": row[metric].provenance,
            }
            for metric in table.metric_names
        ]
        entities.append(record)
    return {"entities": entities}


def replace_estimate(cell: Cell, score: float, std_dev: float, provenance: str) -> Cell:
    return replace(cell, score=float(score), std_dev=float(std_dev), provenance=provenance, observed=False)
