"""
Pipeline DSL - Typed Steps and Static Validation.

A pipeline is an ordered list of steps, each a variant of the closed
``PipelineStep`` union keyed by ``op``. Raw JSON is parsed into typed steps
and validated in one forward pass that threads a column-name -> type map
through every step, so execution never sees an ill-formed pipeline.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Annotated, Any, Callable, Literal, Mapping, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
)

from govquery.analytics.tabular import TabularType

SchemaMap = dict[str, TabularType]


class FilterOperator(str, Enum):
    EQ = "eq"
    NE = "ne"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IN = "in"
    BETWEEN = "between"
    CONTAINS = "contains"
    STARTSWITH = "startswith"


class AggregateOp(str, Enum):
    COUNT = "count"
    SUM = "sum"
    AVG = "avg"
    MIN = "min"
    MAX = "max"


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


class JoinHow(str, Enum):
    INNER = "inner"
    LEFT = "left"


class DeriveOperator(str, Enum):
    ADD = "add"
    SUB = "sub"
    MUL = "mul"
    DIV = "div"


class DateUnit(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    QUARTER = "quarter"
    YEAR = "year"


class _Step(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True, frozen=True)


def _lower(v: Any) -> Any:
    return v.strip().lower() if isinstance(v, str) else v


def _as_list(v: Any) -> Any:
    return [v] if isinstance(v, str) else v


class FilterStep(_Step):
    op: Literal["filter"] = "filter"
    column: str
    operator: Annotated[FilterOperator, BeforeValidator(_lower)] = FilterOperator.EQ
    value: Any = None


class Aggregate(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True, frozen=True)

    op: Annotated[AggregateOp, BeforeValidator(_lower)]
    column: Optional[str] = None
    as_: Optional[str] = Field(default=None, alias="as")

    @property
    def output_name(self) -> str:
        if self.as_:
            return self.as_
        if self.column is None:
            return self.op.value
        return f"{self.op.value}_{self.column}"


class GroupByStep(_Step):
    op: Literal["groupBy"] = "groupBy"
    by: Annotated[list[str], BeforeValidator(_as_list)] = Field(min_length=1)
    aggregates: list[Aggregate] = Field(default_factory=list)

    @property
    def effective_aggregates(self) -> list[Aggregate]:
        return self.aggregates or [Aggregate(op=AggregateOp.COUNT)]


class SortStep(_Step):
    op: Literal["sort"] = "sort"
    by: str
    direction: Annotated[SortDirection, BeforeValidator(_lower)] = Field(
        default=SortDirection.DESC, validation_alias=AliasChoices("direction", "dir")
    )


class TopNStep(_Step):
    op: Literal["topN"] = "topN"
    n: int = Field(ge=1)


class SelectStep(_Step):
    op: Literal["select"] = "select"
    columns: list[str] = Field(min_length=1)


class JoinStep(_Step):
    op: Literal["join"] = "join"
    right_dataset_id: str = Field(alias="rightDatasetId", min_length=1)
    left_keys: Annotated[list[str], BeforeValidator(_as_list)] = Field(
        alias="leftKeys", min_length=1
    )
    right_keys: Annotated[list[str], BeforeValidator(_as_list)] = Field(
        alias="rightKeys", min_length=1
    )
    how: Annotated[JoinHow, BeforeValidator(_lower)] = JoinHow.INNER
    right_prefix: str = Field(default="r_", alias="rightPrefix")
    select_right: Optional[list[str]] = Field(default=None, alias="selectRight")


Operand = Union[float, str]


class DeriveStep(_Step):
    op: Literal["derive"] = "derive"
    as_: str = Field(alias="as", min_length=1)
    operator: Annotated[DeriveOperator, BeforeValidator(_lower)]
    left: Operand
    right: Operand

    @field_validator("left", "right", mode="before")
    @classmethod
    def unwrap_operand(cls, v: Any) -> Any:
        if isinstance(v, Mapping):
            if "column" in v:
                return v["column"]
            if "value" in v:
                return v["value"]
        if isinstance(v, bool):
            raise ValueError("boolean operands are not numeric")
        return v


class PercentOfTotalStep(_Step):
    op: Literal["percentOfTotal"] = "percentOfTotal"
    column: str
    as_: Optional[str] = Field(default=None, alias="as")

    @property
    def output_name(self) -> str:
        return self.as_ or f"pct_{self.column}"


class DateBucketStep(_Step):
    op: Literal["dateBucket"] = "dateBucket"
    column: str
    unit: Annotated[DateUnit, BeforeValidator(_lower)]
    as_: Optional[str] = Field(default=None, alias="as")

    @property
    def output_name(self) -> str:
        return self.as_ or f"{self.column}_{self.unit.value}"


PipelineStep = Annotated[
    Union[
        FilterStep,
        GroupByStep,
        SortStep,
        TopNStep,
        SelectStep,
        JoinStep,
        DeriveStep,
        PercentOfTotalStep,
        DateBucketStep,
    ],
    Field(discriminator="op"),
]

_STEP_ADAPTER = TypeAdapter(PipelineStep)

OPS = {
    "filter": "filter",
    "groupby": "groupBy",
    "sort": "sort",
    "topn": "topN",
    "select": "select",
    "join": "join",
    "derive": "derive",
    "percentoftotal": "percentOfTotal",
    "datebucket": "dateBucket",
}


def parse_pipeline(raw: Any) -> tuple[list, list[str]]:
    """
    Parse raw JSON-like steps into typed steps.

    Returns:
        (steps, errors); steps is only meaningful when errors is empty
    """
    if raw is None:
        return [], []
    if not isinstance(raw, (list, tuple)):
        return [], ["pipeline must be a list of steps"]

    steps = []
    errors = []
    for i, item in enumerate(raw, start=1):
        if isinstance(item, BaseModel):
            steps.append(item)
            continue
        if not isinstance(item, Mapping):
            errors.append(f"step {i}: must be an object")
            continue
        op = item.get("op")
        canonical = OPS.get(str(op).strip().lower()) if op is not None else None
        if canonical is None:
            errors.append(
                f"step {i}: unknown op '{op}' (expected one of {', '.join(OPS.values())})"
            )
            continue
        try:
            steps.append(_STEP_ADAPTER.validate_python({**item, "op": canonical}))
        except ValidationError as e:
            for err in e.errors():
                loc = ".".join(str(p) for p in err["loc"][1:]) or canonical
                errors.append(f"step {i} ({canonical}): {loc}: {err['msg']}")
    return steps, errors


def find_column(schema: Mapping[str, Any], name: str) -> Optional[str]:
    """Case-insensitive lookup returning the schema's own spelling."""
    if name in schema:
        return name
    lowered = name.lower()
    for key in schema:
        if key.lower() == lowered:
            return key
    return None


def as_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(Decimal(value.strip()))
        except (InvalidOperation, ValueError):
            return None
    return None


def as_datetime(value: Any) -> Optional[datetime]:
    """Parse date-like values into naive UTC datetimes."""
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        try:
            dt = datetime.fromisoformat(value.strip())
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def as_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str) and value.strip().lower() in ("true", "false", "1", "0"):
        return value.strip().lower() in ("true", "1")
    return None


def coerce_filter_value(ttype: TabularType, value: Any) -> Any:
    """
    Coerce a filter literal to the column's type.

    Raises:
        ValueError: If the literal cannot be compared with the column
    """
    if value is None:
        return None
    if ttype.is_numeric:
        coerced = as_number(value)
        if coerced is None:
            raise ValueError(f"value {value!r} is not numeric")
        return coerced
    if ttype == TabularType.DATETIME:
        coerced = as_datetime(value)
        if coerced is None:
            raise ValueError(f"value {value!r} is not a date")
        return coerced
    if ttype == TabularType.BOOL:
        coerced = as_bool(value)
        if coerced is None:
            raise ValueError(f"value {value!r} is not a boolean")
        return coerced
    return str(value)


def join_output_columns(
    step: JoinStep, right_schema: Mapping[str, TabularType]
) -> list[tuple[str, str, TabularType]]:
    """(right column, output name, type) for the right side of a join."""
    names = step.select_right if step.select_right is not None else list(right_schema)
    out = []
    for name in names:
        actual = find_column(right_schema, name)
        if actual is not None:
            out.append((actual, f"{step.right_prefix}{actual}", right_schema[actual]))
    return out


@dataclass
class ValidationReport:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    output_schema: SchemaMap = field(default_factory=dict)
    # 1-based indices of join steps skipped for missing key columns
    skipped_joins: set[int] = field(default_factory=set)

    @property
    def ok(self) -> bool:
        return not self.errors


class PipelineValidator:
    """
    Static validator for typed pipelines.

    Validation never touches data. It only maps an input schema to an output
    schema, collecting errors, so running it twice gives identical results.
    """

    def __init__(
        self,
        resolve_right: Callable[[str], Optional[Mapping[str, TabularType]]],
        wide_table_columns: int = 20,
    ):
        """
        Args:
            resolve_right: Returns the schema of a join's right dataset, or None
            wide_table_columns: Right-side width above which selectRight is required
        """
        self.resolve_right = resolve_right
        self.wide_table_columns = wide_table_columns

    def validate(
        self, steps: list, base_schema: Mapping[str, TabularType]
    ) -> ValidationReport:
        report = ValidationReport()
        schema: SchemaMap = dict(base_schema)

        for i, step in enumerate(steps, start=1):
            errors: list[str] = []
            handler = getattr(self, f"_check_{step.op}")
            schema = handler(i, step, schema, errors, report)
            report.errors.extend(f"step {i} ({step.op}): {e}" for e in errors)

        report.output_schema = schema
        return report

    def _require(self, schema: SchemaMap, name: str, errors: list[str]) -> Optional[str]:
        actual = find_column(schema, name)
        if actual is None:
            errors.append(f"unknown column '{name}'")
        return actual

    def _require_numeric(
        self, schema: SchemaMap, name: str, errors: list[str]
    ) -> Optional[str]:
        actual = self._require(schema, name, errors)
        if actual is not None and not schema[actual].is_numeric:
            errors.append(f"column '{actual}' is {schema[actual].value}, not numeric")
            return None
        return actual

    @staticmethod
    def _add_output(schema: SchemaMap, name: str, ttype: TabularType, errors: list[str]):
        if find_column(schema, name) is not None:
            errors.append(f"duplicate output column '{name}'")
        else:
            schema[name] = ttype

    def _check_filter(self, i, step: FilterStep, schema, errors, report) -> SchemaMap:
        actual = self._require(schema, step.column, errors)
        if actual is None:
            return schema
        ttype = schema[actual]
        op = step.operator
        if op == FilterOperator.IN:
            if not isinstance(step.value, list) or not step.value:
                errors.append("'in' requires a non-empty list value")
                return schema
            values = step.value
        elif op == FilterOperator.BETWEEN:
            if not isinstance(step.value, list) or len(step.value) != 2:
                errors.append("'between' requires a [low, high] list value")
                return schema
            values = step.value
        elif isinstance(step.value, (list, dict)):
            errors.append(f"'{op.value}' requires a scalar value")
            return schema
        else:
            values = [step.value]

        if op in (FilterOperator.CONTAINS, FilterOperator.STARTSWITH):
            if step.value is None:
                errors.append(f"'{op.value}' requires a value")
            return schema
        for v in values:
            if v is None and op not in (FilterOperator.EQ, FilterOperator.NE):
                errors.append(f"'{op.value}' does not accept null")
                break
            try:
                coerce_filter_value(ttype, v)
            except ValueError as e:
                errors.append(str(e))
                break
        return schema

    def _check_groupBy(self, i, step: GroupByStep, schema, errors, report) -> SchemaMap:
        out: SchemaMap = {}
        for name in step.by:
            actual = self._require(schema, name, errors)
            if actual is not None:
                self._add_output(out, actual, schema[actual], errors)

        for agg in step.effective_aggregates:
            ttype = TabularType.INT64
            if agg.op == AggregateOp.COUNT:
                if agg.column is not None:
                    self._require(schema, agg.column, errors)
            elif agg.column is None:
                errors.append(f"aggregate '{agg.op.value}' requires a column")
                continue
            elif agg.op in (AggregateOp.SUM, AggregateOp.AVG):
                if self._require_numeric(schema, agg.column, errors) is None:
                    continue
                ttype = TabularType.DOUBLE
            else:
                actual = self._require(schema, agg.column, errors)
                if actual is None:
                    continue
                ttype = schema[actual]
            self._add_output(out, agg.output_name, ttype, errors)
        return out

    def _check_sort(self, i, step: SortStep, schema, errors, report) -> SchemaMap:
        self._require(schema, step.by, errors)
        return schema

    def _check_topN(self, i, step: TopNStep, schema, errors, report) -> SchemaMap:
        return schema

    def _check_select(self, i, step: SelectStep, schema, errors, report) -> SchemaMap:
        out: SchemaMap = {}
        for name in step.columns:
            actual = self._require(schema, name, errors)
            if actual is not None:
                self._add_output(out, actual, schema[actual], errors)
        return out

    def _check_join(self, i, step: JoinStep, schema, errors, report) -> SchemaMap:
        right = self.resolve_right(step.right_dataset_id)
        if right is None:
            errors.append(f"right dataset '{step.right_dataset_id}' not found or expired")
            return schema
        if len(step.left_keys) != len(step.right_keys):
            errors.append("leftKeys and rightKeys must have the same length")
            return schema
        if step.select_right is None and len(right) > self.wide_table_columns:
            errors.append(
                f"right dataset has {len(right)} columns; selectRight is required "
                f"above {self.wide_table_columns}"
            )
            return schema
        for name in step.select_right or []:
            if find_column(right, name) is None:
                errors.append(f"unknown right column '{name}'")
        if errors:
            return schema

        missing = [k for k in step.left_keys if find_column(schema, k) is None] + [
            f"right.{k}" for k in step.right_keys if find_column(right, k) is None
        ]
        if missing:
            report.skipped_joins.add(i)
            report.warnings.append(
                f"step {i} (join) skipped: key columns not found ({', '.join(missing)})"
            )
            return schema

        out = dict(schema)
        for _, name, ttype in join_output_columns(step, right):
            self._add_output(out, name, ttype, errors)
        return out

    def _operand(self, schema, operand: Operand, errors) -> None:
        if isinstance(operand, str):
            self._require_numeric(schema, operand, errors)

    def _check_derive(self, i, step: DeriveStep, schema, errors, report) -> SchemaMap:
        self._operand(schema, step.left, errors)
        self._operand(schema, step.right, errors)
        out = dict(schema)
        self._add_output(out, step.as_, TabularType.DOUBLE, errors)
        return out

    def _check_percentOfTotal(
        self, i, step: PercentOfTotalStep, schema, errors, report
    ) -> SchemaMap:
        self._require_numeric(schema, step.column, errors)
        out = dict(schema)
        self._add_output(out, step.output_name, TabularType.DOUBLE, errors)
        return out

    def _check_dateBucket(self, i, step: DateBucketStep, schema, errors, report) -> SchemaMap:
        actual = self._require(schema, step.column, errors)
        if actual is not None and schema[actual] not in (
            TabularType.DATETIME,
            TabularType.STRING,
        ):
            errors.append(f"column '{actual}' is {schema[actual].value}, not date-like")
        out = dict(schema)
        self._add_output(out, step.output_name, TabularType.DATETIME, errors)
        return out
