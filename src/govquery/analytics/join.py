"""
Join Executor Component - Capped Hash Equi-Join.

Joins the current pipeline frame with a stored dataset. Fan-out is bounded
twice while rows are emitted: per left row (``max_join_matches_per_left``)
and in total (``max_join_rows``). Hitting either cap truncates with a
warning; the full cross product is never materialized.
"""

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Hashable, Optional

import structlog

from govquery.analytics.datasets import Dataset
from govquery.analytics.frame import ExecutionBudget, Frame
from govquery.analytics.pipeline import (
    JoinHow,
    JoinStep,
    as_datetime,
    find_column,
    join_output_columns,
)

logger = structlog.get_logger(__name__)


def normalize_key(value: Any) -> Optional[Hashable]:
    """
    Normalize one key value so equal values of different kinds hash alike.

    Integers, floats and decimals compare by numeric value; dates compare as
    naive UTC datetimes. None (and NaN) never match.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return ("b", value)
    if isinstance(value, float):
        if value != value:
            return None
        value = Decimal(str(value))
    if isinstance(value, (int, Decimal)):
        d = Decimal(value)
        if not d.is_finite():
            return None
        if d == d.to_integral_value():
            return ("n", int(d))
        return ("n", d.normalize())
    if isinstance(value, (datetime, date)):
        return ("d", as_datetime(value))
    return ("s", value)


def _composite(row: tuple, indices: list[int]) -> Optional[tuple]:
    key = []
    for i in indices:
        k = normalize_key(row[i])
        if k is None:
            return None
        key.append(k)
    return tuple(key)


@dataclass
class JoinOutcome:
    frame: Frame
    warnings: list[str] = field(default_factory=list)
    skipped: bool = False


class JoinExecutor:
    """
    Hash-based equi-join with explosion guardrails.

    This component:
    1. Indexes the right dataset by its composite key, preserving row order
    2. Probes the index for each left row in order
    3. Caps matches per left row and total emitted rows incrementally
    4. Prefixes right-side columns to avoid name collisions
    """

    def __init__(self, max_join_rows: int = 50000, max_join_matches_per_left: int = 50):
        self.max_join_rows = max_join_rows
        self.max_join_matches_per_left = max_join_matches_per_left

    def execute(
        self,
        left: Frame,
        right: Dataset,
        step: JoinStep,
        budget: Optional[ExecutionBudget] = None,
    ) -> JoinOutcome:
        """
        Join a frame with a dataset.

        Args:
            left: Current pipeline frame
            right: Right-side dataset
            step: Join step
            budget: Optional execution budget

        Returns:
            JoinOutcome; ``skipped`` when key columns are missing
        """
        right_schema = right.schema_map
        left_idx = [left.index(k) for k in step.left_keys]
        right_names = [find_column(right_schema, k) for k in step.right_keys]
        if None in left_idx or None in right_names or len(left_idx) != len(right_names):
            warning = (
                f"join with {step.right_dataset_id} skipped: key columns not found"
            )
            logger.warning("join_skipped", right=step.right_dataset_id)
            return JoinOutcome(frame=left, warnings=[warning], skipped=True)

        right_pos = {c.name: i for i, c in enumerate(right.schema)}
        right_idx = [right_pos[n] for n in right_names]
        selected = join_output_columns(step, right_schema)
        selected_idx = [right_pos[name] for name, _, _ in selected]
        by_name = {c.name: c for c in right.schema}
        out_columns = list(left.columns) + [
            replace(by_name[name], name=out_name) for name, out_name, _ in selected
        ]

        index: dict[tuple, list[int]] = {}
        for i, row in enumerate(right.rows):
            if budget:
                budget.tick()
            key = _composite(row, right_idx)
            if key is not None:
                index.setdefault(key, []).append(i)

        empty_right = (None,) * len(selected_idx)
        rows: list[tuple] = []
        capped_lefts = 0
        total_capped = False
        for row in left.rows:
            if budget:
                budget.tick()
            key = _composite(row, left_idx)
            matches = index.get(key, []) if key is not None else []
            if len(matches) > self.max_join_matches_per_left:
                matches = matches[: self.max_join_matches_per_left]
                capped_lefts += 1

            if not matches:
                if step.how == JoinHow.LEFT:
                    if len(rows) >= self.max_join_rows:
                        total_capped = True
                        break
                    rows.append(tuple(row) + empty_right)
                continue

            for ri in matches:
                if len(rows) >= self.max_join_rows:
                    total_capped = True
                    break
                r = right.rows[ri]
                rows.append(tuple(row) + tuple(r[j] for j in selected_idx))
            if total_capped:
                break

        warnings = []
        if capped_lefts:
            warnings.append(
                f"join: {capped_lefts} left row(s) had more than "
                f"maxJoinMatchesPerLeft={self.max_join_matches_per_left} matches; "
                "extra matches were dropped."
            )
        if total_capped:
            warnings.append(
                f"join output truncated at maxJoinRows={self.max_join_rows} rows."
            )

        logger.info(
            "join_executed",
            right=step.right_dataset_id,
            how=step.how.value,
            left_rows=len(left.rows),
            right_rows=len(right.rows),
            output_rows=len(rows),
            truncated=bool(capped_lefts or total_capped),
        )
        return JoinOutcome(frame=Frame(columns=out_columns, rows=rows), warnings=warnings)
