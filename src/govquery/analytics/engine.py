"""
Analytics Engine Component - Pipeline Interpreter.

Runs a validated pipeline against a stored dataset. Steps execute in order
on an in-memory frame; every scan ticks an execution budget so a cancelled
or overdue run stops early. Results are capped by ``max_result_rows`` and can
be persisted as a new dataset for follow-up analysis.
"""

import hashlib
import json
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import structlog

from govquery.analytics.datasets import (
    Dataset,
    DatasetBounds,
    DatasetOwner,
    DatasetStore,
)
from govquery.analytics.errors import (
    DatasetNotFound,
    ExecutionFailed,
    GovernanceError,
    InvalidPipeline,
)
from govquery.analytics.frame import ExecutionBudget, Frame
from govquery.analytics.join import JoinExecutor
from govquery.analytics.pipeline import (
    AggregateOp,
    DateBucketStep,
    DateUnit,
    DeriveOperator,
    DeriveStep,
    FilterOperator,
    FilterStep,
    GroupByStep,
    JoinStep,
    PercentOfTotalStep,
    PipelineValidator,
    SelectStep,
    SortDirection,
    SortStep,
    TopNStep,
    ValidationReport,
    as_bool,
    as_datetime,
    as_number,
    coerce_filter_value,
    parse_pipeline,
)
from govquery.analytics.tabular import ColumnSchema, TabularData, TabularType

logger = structlog.get_logger(__name__)


def _clamp(value: int, lo: int, hi: int) -> int:
    return min(max(int(value), lo), hi)


@dataclass(frozen=True)
class RunBounds:
    """Result limits for one pipeline run."""

    max_groups: int = 200
    max_result_rows: int = 500
    top_n: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, "max_groups", _clamp(self.max_groups, 1, 5000))
        object.__setattr__(
            self, "max_result_rows", _clamp(self.max_result_rows, 1, 5000)
        )
        if self.top_n is not None:
            object.__setattr__(self, "top_n", _clamp(self.top_n, 1, 5000))


@dataclass
class RunResult:
    dataset_id: str
    schema: list[ColumnSchema]
    rows: list[tuple]
    warnings: list[str] = field(default_factory=list)
    result_dataset_id: Optional[str] = None

    @property
    def row_count(self) -> int:
        return len(self.rows)

    def to_dict(self, preview_rows: int = 100) -> dict[str, Any]:
        d = {
            "datasetId": self.dataset_id,
            "schema": [c.to_dict() for c in self.schema],
            "rowCount": self.row_count,
            "columnCount": len(self.schema),
            "previewRows": [list(r) for r in self.rows[:preview_rows]],
            "warnings": self.warnings,
        }
        if self.result_dataset_id:
            d["resultDatasetId"] = self.result_dataset_id
        return d


def pipeline_digest(steps: list) -> str:
    """Stable hash of typed pipeline steps."""
    canonical = json.dumps(
        [s.model_dump(mode="json") for s in steps],
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class AnalysisResultCache:
    """
    TTL cache of pipeline results.

    Keyed by (dataset id, pipeline digest, bounds, owner). Datasets are
    immutable, so a result stays valid until its entry expires. The clock is
    injectable for tests.
    """

    def __init__(
        self,
        ttl_seconds: float = 120,
        max_entries: int = 256,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max(1, max_entries)
        self.clock = clock
        self._entries: dict[tuple, tuple[float, RunResult]] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: tuple) -> Optional[RunResult]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry[0] <= self.clock():
                self._entries.pop(key, None)
                self.misses += 1
                return None
            self.hits += 1
            return replace(entry[1], warnings=list(entry[1].warnings))

    def put(self, key: tuple, result: RunResult):
        with self._lock:
            now = self.clock()
            if len(self._entries) >= self.max_entries:
                for k in [k for k, (exp, _) in self._entries.items() if exp <= now]:
                    del self._entries[k]
            while len(self._entries) >= self.max_entries:
                del self._entries[next(iter(self._entries))]
            self._entries[key] = (
                now + self.ttl_seconds,
                replace(result, warnings=list(result.warnings)),
            )


def _comparable(ttype: TabularType) -> Callable[[Any], Any]:
    """Value -> sortable/comparable key for a column type (None when absent)."""
    if ttype.is_numeric:
        return as_number
    if ttype == TabularType.DATETIME:
        return as_datetime
    if ttype == TabularType.BOOL:
        return as_bool
    return lambda v: None if v is None else str(v).casefold()


class _Accumulator:
    __slots__ = ("op", "key", "count", "total", "best", "best_key")

    def __init__(self, op: AggregateOp, key: Callable[[Any], Any]):
        self.op = op
        self.key = key
        self.count = 0
        self.total = 0.0
        self.best = None
        self.best_key = None

    def add(self, value: Any, whole_row: bool):
        if self.op == AggregateOp.COUNT:
            if whole_row or value is not None:
                self.count += 1
        elif self.op in (AggregateOp.SUM, AggregateOp.AVG):
            n = as_number(value)
            if n is not None:
                self.total += n
                self.count += 1
        else:
            k = self.key(value)
            if k is None:
                return
            if (
                self.best_key is None
                or (self.op == AggregateOp.MIN and k < self.best_key)
                or (self.op == AggregateOp.MAX and k > self.best_key)
            ):
                self.best, self.best_key = value, k

    def result(self) -> Any:
        if self.op == AggregateOp.COUNT:
            return self.count
        if self.op == AggregateOp.SUM:
            return self.total
        if self.op == AggregateOp.AVG:
            return self.total / self.count if self.count else None
        return self.best


def bucket_datetime(dt: datetime, unit: DateUnit) -> datetime:
    day = datetime(dt.year, dt.month, dt.day)
    match unit:
        case DateUnit.DAY:
            return day
        case DateUnit.WEEK:
            return day - timedelta(days=day.weekday())
        case DateUnit.MONTH:
            return datetime(dt.year, dt.month, 1)
        case DateUnit.QUARTER:
            return datetime(dt.year, 3 * ((dt.month - 1) // 3) + 1, 1)
        case DateUnit.YEAR:
            return datetime(dt.year, 1, 1)
    raise ValueError(f"unsupported date unit {unit}")


class AnalyticsEngine:
    """
    Pipeline interpreter over stored datasets.

    This component:
    1. Parses raw steps into the typed PipelineStep union
    2. Validates the whole pipeline statically before touching data
    3. Executes steps on an in-memory frame under an execution budget
    4. Caps, and optionally persists, the final result
    """

    def __init__(
        self,
        store: DatasetStore,
        join_executor: Optional[JoinExecutor] = None,
        wide_table_columns: int = 20,
        dataset_bounds: Optional[DatasetBounds] = None,
        result_cache: Optional[AnalysisResultCache] = None,
    ):
        """
        Initialize the Analytics Engine.

        Args:
            store: Dataset store holding source and result datasets
            join_executor: Executor for join steps
            wide_table_columns: Right-side width above which joins need selectRight
            dataset_bounds: Bounds used when persisting results
            result_cache: Cache of non-persisted results, disabled when None
        """
        self.store = store
        self.join_executor = join_executor or JoinExecutor()
        self.wide_table_columns = wide_table_columns
        self.dataset_bounds = dataset_bounds or DatasetBounds()
        self.result_cache = result_cache

    def _prepare(
        self,
        pipeline: Any,
        base_schema: dict[str, TabularType],
        owner: Optional[DatasetOwner],
    ) -> tuple[list, list[str], ValidationReport, dict[str, Dataset]]:
        steps, errors = parse_pipeline(pipeline)
        rights: dict[str, Dataset] = {}

        def resolve(dataset_id: str) -> Optional[dict[str, TabularType]]:
            if dataset_id not in rights:
                try:
                    rights[dataset_id] = self.store.get(dataset_id, owner)
                except DatasetNotFound:
                    return None
            return rights[dataset_id].schema_map

        report = ValidationReport()
        if not errors:
            report = PipelineValidator(resolve, self.wide_table_columns).validate(
                steps, base_schema
            )
        return steps, errors + report.errors, report, rights

    def validate(
        self,
        pipeline: Any,
        base_schema: dict[str, TabularType],
        owner: Optional[DatasetOwner] = None,
    ) -> list[str]:
        """
        Statically validate a pipeline against a schema.

        Args:
            pipeline: Raw or typed steps
            base_schema: Column name -> type map of the source dataset
            owner: Owner used to resolve join datasets

        Returns:
            List of errors, empty when the pipeline is valid
        """
        _, errors, _, _ = self._prepare(pipeline, base_schema, owner)
        return errors

    def run(
        self,
        dataset_id: str,
        pipeline: Any,
        bounds: Optional[RunBounds] = None,
        persist_result: bool = False,
        owner: Optional[DatasetOwner] = None,
        budget: Optional[ExecutionBudget] = None,
    ) -> RunResult:
        """
        Run a pipeline against a dataset.

        Args:
            dataset_id: Source dataset handle
            pipeline: Raw or typed steps
            bounds: Group, result-row and final top-N limits
            persist_result: Store the final rows as a new dataset
            owner: Caller identity for dataset access
            budget: Execution budget checked during scans

        Returns:
            RunResult

        Raises:
            DatasetNotFound: If the source dataset is unknown or expired
            InvalidPipeline: If validation fails; nothing is executed
            ExecutionFailed: If a step fails at runtime or the budget runs out
        """
        bounds = bounds or RunBounds()
        budget = budget or ExecutionBudget()
        dataset = self.store.get(dataset_id, owner)

        steps, errors, report, rights = self._prepare(
            pipeline, dataset.schema_map, owner
        )
        if errors:
            logger.info("pipeline_invalid", dataset_id=dataset_id, errors=len(errors))
            raise InvalidPipeline(errors)

        cache_key = None
        if self.result_cache is not None and not persist_result:
            cache_key = (dataset_id, pipeline_digest(steps), bounds, owner)
            cached = self.result_cache.get(cache_key)
            if cached is not None:
                logger.info("pipeline_cache_hit", dataset_id=dataset_id)
                return cached

        warnings = list(report.warnings)
        frame = Frame(columns=list(dataset.schema), rows=list(dataset.rows))
        current = None
        try:
            for i, step in enumerate(steps, start=1):
                current = f"step {i} ({step.op})"
                if isinstance(step, JoinStep):
                    if i in report.skipped_joins:
                        continue
                    outcome = self.join_executor.execute(
                        frame, rights[step.right_dataset_id], step, budget
                    )
                    frame = outcome.frame
                    warnings.extend(outcome.warnings)
                    continue
                handler = getattr(self, f"_apply_{step.op}")
                frame = handler(step, frame, bounds, budget, warnings)
            budget.check()
        except GovernanceError:
            raise
        except Exception as e:
            logger.error(
                "pipeline_execution_failed",
                dataset_id=dataset_id,
                step=current,
                error=str(e),
            )
            raise ExecutionFailed(
                f"{current} failed: {e}", {"datasetId": dataset_id, "step": current}
            ) from e

        rows = frame.rows
        if bounds.top_n is not None:
            rows = rows[: bounds.top_n]
        if len(rows) > bounds.max_result_rows:
            warnings.append(
                f"Result truncated from {len(rows)} to "
                f"maxResultRows={bounds.max_result_rows} rows."
            )
            rows = rows[: bounds.max_result_rows]

        result = RunResult(
            dataset_id=dataset_id, schema=frame.columns, rows=rows, warnings=warnings
        )
        if persist_result:
            if rows:
                persisted = self.store.create(
                    TabularData(columns=tuple(frame.columns), rows=tuple(rows)),
                    self.dataset_bounds,
                    table_name=f"result_of_{dataset.table_name or dataset_id}",
                    owner=owner,
                )
                result.result_dataset_id = persisted.dataset_id
            else:
                warnings.append("Result has no rows and was not persisted.")

        logger.info(
            "pipeline_executed",
            dataset_id=dataset_id,
            steps=len(steps),
            rows=result.row_count,
            persisted=result.result_dataset_id is not None,
        )
        if cache_key is not None:
            self.result_cache.put(cache_key, result)
        return result

    def _apply_filter(self, step: FilterStep, frame: Frame, bounds, budget, warnings):
        idx = frame.index(step.column)
        ttype = frame.columns[idx].tabular_type
        key = _comparable(ttype)
        op = step.operator

        def target(v):
            if ttype == TabularType.STRING:
                return None if v is None else str(v).casefold()
            return coerce_filter_value(ttype, v)

        if op == FilterOperator.EQ and step.value is None:
            pred = lambda v: v is None
        elif op == FilterOperator.NE and step.value is None:
            pred = lambda v: v is not None
        elif op in (FilterOperator.CONTAINS, FilterOperator.STARTSWITH):
            needle = str(step.value).casefold()
            if op == FilterOperator.CONTAINS:
                pred = lambda v: v is not None and needle in str(v).casefold()
            else:
                pred = lambda v: v is not None and str(v).casefold().startswith(needle)
        elif op == FilterOperator.IN:
            wanted = {target(v) for v in step.value}
            pred = lambda v: key(v) in wanted
        elif op == FilterOperator.BETWEEN:
            lo, hi = target(step.value[0]), target(step.value[1])
            pred = lambda v: (k := key(v)) is not None and lo <= k <= hi
        else:
            t = target(step.value)
            pred = {
                FilterOperator.EQ: lambda v: key(v) == t,
                FilterOperator.NE: lambda v: key(v) != t,
                FilterOperator.GT: lambda v: (k := key(v)) is not None and k > t,
                FilterOperator.GTE: lambda v: (k := key(v)) is not None and k >= t,
                FilterOperator.LT: lambda v: (k := key(v)) is not None and k < t,
                FilterOperator.LTE: lambda v: (k := key(v)) is not None and k <= t,
            }[op]

        rows = []
        for row in frame.rows:
            budget.tick()
            if pred(row[idx]):
                rows.append(row)
        return Frame(columns=frame.columns, rows=rows)

    def _apply_groupBy(self, step: GroupByStep, frame: Frame, bounds, budget, warnings):
        key_idx = [frame.index(b) for b in step.by]
        aggregates = step.effective_aggregates
        agg_idx = [frame.index(a.column) if a.column else None for a in aggregates]
        agg_keys = [
            _comparable(frame.columns[i].tabular_type) if i is not None else None
            for i in agg_idx
        ]

        groups: dict[tuple, list[_Accumulator]] = {}
        skipped = 0
        for row in frame.rows:
            budget.tick()
            key = tuple(row[i] for i in key_idx)
            accs = groups.get(key)
            if accs is None:
                if len(groups) >= bounds.max_groups:
                    skipped += 1
                    continue
                accs = [_Accumulator(a.op, k) for a, k in zip(aggregates, agg_keys)]
                groups[key] = accs
            for acc, i in zip(accs, agg_idx):
                acc.add(row[i] if i is not None else None, i is None)

        if skipped:
            warnings.append(
                f"groupBy reached maxGroups={bounds.max_groups}; {skipped} row(s) "
                "belonging to additional groups were skipped."
            )

        columns = [frame.columns[i] for i in key_idx]
        for agg, i in zip(aggregates, agg_idx):
            if agg.op == AggregateOp.COUNT:
                ttype = TabularType.INT64
            elif agg.op in (AggregateOp.SUM, AggregateOp.AVG):
                ttype = TabularType.DOUBLE
            else:
                ttype = frame.columns[i].tabular_type
            columns.append(
                ColumnSchema(name=agg.output_name, tabular_type=ttype, role="measure")
            )
        rows = [key + tuple(a.result() for a in accs) for key, accs in groups.items()]
        return Frame(columns=columns, rows=rows)

    def _apply_sort(self, step: SortStep, frame: Frame, bounds, budget, warnings):
        idx = frame.index(step.by)
        key = _comparable(frame.columns[idx].tabular_type)
        present = []
        nulls = []
        for row in frame.rows:
            budget.tick()
            (nulls if key(row[idx]) is None else present).append(row)
        present.sort(
            key=lambda r: key(r[idx]), reverse=step.direction == SortDirection.DESC
        )
        return Frame(columns=frame.columns, rows=present + nulls)

    def _apply_topN(self, step: TopNStep, frame: Frame, bounds, budget, warnings):
        return Frame(columns=frame.columns, rows=frame.rows[: step.n])

    def _apply_select(self, step: SelectStep, frame: Frame, bounds, budget, warnings):
        idx = [frame.index(c) for c in step.columns]
        rows = []
        for row in frame.rows:
            budget.tick()
            rows.append(tuple(row[i] for i in idx))
        return Frame(columns=[frame.columns[i] for i in idx], rows=rows)

    def _apply_derive(self, step: DeriveStep, frame: Frame, bounds, budget, warnings):
        def operand(o) -> Callable[[tuple], Optional[float]]:
            if isinstance(o, str):
                i = frame.index(o)
                return lambda r: as_number(r[i])
            return lambda r: float(o)

        left, right = operand(step.left), operand(step.right)

        def compute(a, b):
            if a is None or b is None:
                return None
            match step.operator:
                case DeriveOperator.ADD:
                    return a + b
                case DeriveOperator.SUB:
                    return a - b
                case DeriveOperator.MUL:
                    return a * b
                case DeriveOperator.DIV:
                    return a / b if b != 0 else None

        rows = []
        for row in frame.rows:
            budget.tick()
            rows.append(tuple(row) + (compute(left(row), right(row)),))
        columns = frame.columns + [
            ColumnSchema(name=step.as_, tabular_type=TabularType.DOUBLE, role="measure")
        ]
        return Frame(columns=columns, rows=rows)

    def _apply_percentOfTotal(
        self, step: PercentOfTotalStep, frame: Frame, bounds, budget, warnings
    ):
        idx = frame.index(step.column)
        total = 0.0
        for row in frame.rows:
            budget.tick()
            n = as_number(row[idx])
            if n is not None:
                total += n

        rows = []
        for row in frame.rows:
            budget.tick()
            n = as_number(row[idx])
            pct = n / total * 100 if n is not None and total != 0 else None
            rows.append(tuple(row) + (pct,))
        columns = frame.columns + [
            ColumnSchema(
                name=step.output_name,
                tabular_type=TabularType.DOUBLE,
                role="measure",
                unit="percent",
            )
        ]
        return Frame(columns=columns, rows=rows)

    def _apply_dateBucket(
        self, step: DateBucketStep, frame: Frame, bounds, budget, warnings
    ):
        idx = frame.index(step.column)
        rows = []
        unparsed = 0
        for row in frame.rows:
            budget.tick()
            dt = as_datetime(row[idx])
            if dt is None and row[idx] is not None:
                unparsed += 1
            rows.append(
                tuple(row) + (bucket_datetime(dt, step.unit) if dt else None,)
            )
        if unparsed:
            warnings.append(
                f"dateBucket: {unparsed} value(s) in '{step.column}' were not dates "
                "and bucketed as null."
            )
        columns = frame.columns + [
            ColumnSchema(
                name=step.output_name,
                tabular_type=TabularType.DATETIME,
                role="dimension",
            )
        ]
        return Frame(columns=columns, rows=rows)
