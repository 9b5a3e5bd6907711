"""
Tabular Reader Component - Stored-Procedure Output Parsing.

This module turns the ordered result sets produced by one stored-procedure
execution into typed tables. The output contract is positional:

- result-set 0 declares the schema (one row per table, one row per column)
- result-set 1 is an optional one-row summary
- result-sets 2..N are data tables

Each result set binds to the RS0 declaration carrying its ordinal. Result sets
without a declaration get a placeholder schema and are left for the
classifier to reject or resolve from catalog hints.
"""

import re
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, Mapping, Optional, Sequence, Union

import structlog

logger = structlog.get_logger(__name__)


class TabularType(str, Enum):
    """Normalized column types."""

    INT32 = "Int32"
    INT64 = "Int64"
    DOUBLE = "Double"
    DECIMAL = "Decimal"
    STRING = "String"
    BOOL = "Bool"
    DATETIME = "DateTime"

    @property
    def is_numeric(self) -> bool:
        return self in (
            TabularType.INT32,
            TabularType.INT64,
            TabularType.DOUBLE,
            TabularType.DECIMAL,
        )

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["TabularType"]:
        """Accept a declared tabular type ("Int32", "decimal", ...) or a SQL type."""
        if not value:
            return None
        text = str(value).strip()
        for member in cls:
            if member.value.lower() == text.lower():
                return member
        return cls.from_sql_type(text)

    @classmethod
    def from_sql_type(cls, sql_type: Optional[str]) -> Optional["TabularType"]:
        if not sql_type:
            return None
        base = re.sub(r"\(.*\)", "", str(sql_type)).strip().lower()
        if base in _SQL_TYPES:
            return _SQL_TYPES[base]
        for fragment, mapped in _SQL_TYPE_FRAGMENTS:
            if fragment in base:
                return mapped
        return None

    @classmethod
    def from_value(cls, value: Any) -> "TabularType":
        if isinstance(value, bool):
            return cls.BOOL
        if isinstance(value, int):
            return cls.INT32 if -(2**31) <= value < 2**31 else cls.INT64
        if isinstance(value, float):
            return cls.DOUBLE
        if isinstance(value, Decimal):
            return cls.DECIMAL
        if isinstance(value, (datetime, date)):
            return cls.DATETIME
        return cls.STRING


_SQL_TYPES = {
    "tinyint": TabularType.INT32,
    "smallint": TabularType.INT32,
    "int": TabularType.INT32,
    "integer": TabularType.INT32,
    "int32": TabularType.INT32,
    "short": TabularType.INT32,
    "byte": TabularType.INT32,
    "bigint": TabularType.INT64,
    "int64": TabularType.INT64,
    "long": TabularType.INT64,
    "bit": TabularType.BOOL,
    "bool": TabularType.BOOL,
    "boolean": TabularType.BOOL,
    "float": TabularType.DOUBLE,
    "real": TabularType.DOUBLE,
    "double": TabularType.DOUBLE,
    "decimal": TabularType.DECIMAL,
    "numeric": TabularType.DECIMAL,
    "money": TabularType.DECIMAL,
    "smallmoney": TabularType.DECIMAL,
    "uniqueidentifier": TabularType.STRING,
    "uuid": TabularType.STRING,
    "xml": TabularType.STRING,
    "string": TabularType.STRING,
}

_SQL_TYPE_FRAGMENTS = (
    ("date", TabularType.DATETIME),
    ("time", TabularType.DATETIME),
    ("char", TabularType.STRING),
    ("text", TabularType.STRING),
)


class Delivery(str, Enum):
    """Where a data table goes once classified."""

    ENGINE = "engine"
    DISPLAY = "display"
    BOTH = "both"

    @classmethod
    def parse(cls, value: Any) -> Optional["Delivery"]:
        if value is None:
            return None
        text = str(value).strip().lower()
        for member in cls:
            if member.value == text:
                return member
        return None


@dataclass(frozen=True)
class ColumnSchema:
    """One column of a table, immutable once read."""

    name: str
    tabular_type: TabularType = TabularType.STRING
    sql_type: Optional[str] = None
    role: Optional[str] = None
    semantic_type: Optional[str] = None
    unit: Optional[str] = None
    format: Optional[str] = None
    nullable: Optional[bool] = None
    example: Optional[str] = None
    notes: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        d = {
            "name": self.name,
            "sqlType": self.sql_type,
            "tabularType": self.tabular_type.value,
            "role": self.role,
            "semanticType": self.semantic_type,
            "unit": self.unit,
            "format": self.format,
            "nullable": self.nullable,
        }
        return {k: v for k, v in d.items() if v is not None}


@dataclass(frozen=True)
class ResultSetSchema:
    """Declared shape of one data result set."""

    index: int
    table_name: str
    table_kind: Optional[str] = None
    delivery: Optional[Delivery] = None
    grain: Optional[str] = None
    primary_key: tuple[str, ...] = ()
    join_hints: tuple[str, ...] = ()
    columns: tuple[ColumnSchema, ...] = ()
    declared: bool = True

    @property
    def is_summary(self) -> bool:
        return (self.table_kind or "").lower() == "summary" or (
            self.table_name or ""
        ).lower() == "summary"

    @property
    def is_placeholder(self) -> bool:
        return not self.declared or not self.table_name or self.table_name.lower() == (
            placeholder_name(self.index)
        )

    def to_dict(self) -> dict[str, Any]:
        d = {
            "index": self.index,
            "tableName": self.table_name,
            "tableKind": self.table_kind,
            "delivery": self.delivery.value if self.delivery else None,
            "grain": self.grain,
            "primaryKey": list(self.primary_key),
            "joinHints": list(self.join_hints),
            "columns": [c.to_dict() for c in self.columns],
        }
        return {k: v for k, v in d.items() if v is not None}


def placeholder_name(index: int) -> str:
    return f"rs{index}"


@dataclass(frozen=True)
class TabularData:
    """Typed rows aligned with their columns."""

    columns: tuple[ColumnSchema, ...]
    rows: tuple[tuple, ...]
    total_count: Optional[int] = None

    def __post_init__(self):
        width = len(self.columns)
        for i, row in enumerate(self.rows):
            if len(row) != width:
                raise ValueError(
                    f"row {i} has {len(row)} values but the table has {width} columns"
                )
        names = [c.name.lower() for c in self.columns]
        if len(set(names)) != len(names):
            raise ValueError("column names must be case-insensitively unique")

    @property
    def names(self) -> list[str]:
        return [c.name for c in self.columns]

    def column_index(self, name: str) -> Optional[int]:
        lowered = name.lower()
        for i, c in enumerate(self.columns):
            if c.name.lower() == lowered:
                return i
        return None


@dataclass(frozen=True)
class RawColumn:
    name: str
    sql_type: Optional[str] = None


@dataclass(frozen=True)
class RawResultSet:
    """One result set exactly as a procedure executor produced it."""

    columns: tuple[RawColumn, ...]
    rows: tuple[tuple, ...] = ()
    total_count: Optional[int] = None

    @classmethod
    def of(
        cls,
        columns: Sequence[Union[str, RawColumn, Sequence[str], Mapping[str, Any]]],
        rows: Iterable[Union[Sequence[Any], Mapping[str, Any]]] = (),
        total_count: Optional[int] = None,
    ) -> "RawResultSet":
        """Build from loose column specs and list or dict rows."""
        cols = []
        for c in columns:
            if isinstance(c, RawColumn):
                cols.append(c)
            elif isinstance(c, str):
                cols.append(RawColumn(c))
            elif isinstance(c, Mapping):
                cols.append(RawColumn(c["name"], c.get("sqlType") or c.get("type")))
            else:
                cols.append(RawColumn(c[0], c[1] if len(c) > 1 else None))
        names = [c.name for c in cols]
        out = []
        for row in rows:
            if isinstance(row, Mapping):
                out.append(tuple(row.get(n) for n in names))
            else:
                out.append(tuple(row))
        return cls(tuple(cols), tuple(out), total_count)


@dataclass(frozen=True)
class ResultTable:
    """A data table bound to its declared schema."""

    schema: ResultSetSchema
    data: TabularData
    unknown_columns: tuple[str, ...] = ()


@dataclass
class QuerySchema:
    """Everything RS0 declared for one execution."""

    result_sets: list[ResultSetSchema] = field(default_factory=list)
    metadata_found: bool = False
    # lower-cased column names whose type RS0 declared, by result-set index
    typed_columns: dict[int, frozenset[str]] = field(default_factory=dict)

    def declared(self, index: int) -> Optional[ResultSetSchema]:
        for rs in self.result_sets:
            if rs.index == index:
                return rs
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "metadataFound": self.metadata_found,
            "resultSets": [rs.to_dict() for rs in self.result_sets],
        }


@dataclass
class ReadResult:
    schema: QuerySchema
    summary: Optional[TabularData] = None
    tables: list[ResultTable] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ReadLimits:
    max_rows_per_table: int = 20000
    max_rows_summary: int = 500
    max_schema_rows: int = 50000
    max_tables: int = 20


_ALIASES = {
    "record_type": ("recordType", "type"),
    "index": ("resultSetIndex", "rsIndex", "rs", "resultSet"),
    "table_name": ("tableName", "name", "dataset", "table"),
    "table_kind": ("tableKind", "kind"),
    "delivery": ("delivery", "target", "audience"),
    "grain": ("grain",),
    "primary_key": ("primaryKey", "pk"),
    "join_hints": ("joinHints", "joins", "join"),
    "column_name": ("columnName", "column", "col", "field"),
    "ordinal": ("ordinal",),
    "sql_type": ("sqlType",),
    "tabular_type": ("tabularType",),
    "role": ("role",),
    "semantic_type": ("semanticType",),
    "unit": ("unit",),
    "format": ("format",),
    "nullable": ("nullable", "isNullable"),
    "example": ("example",),
    "notes": ("notes",),
}


@dataclass
class _DeclaredColumn:
    index: int
    name: str
    ordinal: int
    sql_type: Optional[str]
    tabular_type: Optional[TabularType]
    role: Optional[str]
    semantic_type: Optional[str]
    unit: Optional[str]
    format: Optional[str]
    nullable: Optional[bool]
    example: Optional[str]
    notes: Optional[str]


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _int(value: Any) -> Optional[int]:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def _bool(value: Any) -> Optional[bool]:
    if value is None or isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "y"):
        return True
    if text in ("0", "false", "no", "n"):
        return False
    return None


def _csv(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, (list, tuple)):
        parts = value
    else:
        parts = re.split(r"[,;]", str(value))
    return tuple(p.strip() for p in parts if p and str(p).strip())


class TabularReader:
    """
    Reader that converts raw result sets into typed tables.

    This component:
    1. Parses RS0 metadata through a tolerant alias table
    2. Binds each following result set to its declared ordinal
    3. Types columns from declarations, SQL types, or values
    4. Applies row, schema-row, and table-count limits
    """

    def __init__(self, limits: Optional[ReadLimits] = None):
        self.limits = limits or ReadLimits()

    def read(self, result_sets: Sequence[RawResultSet]) -> ReadResult:
        """
        Read one execution's result sets.

        Args:
            result_sets: Ordered result sets, RS0 first

        Returns:
            ReadResult with declared schema, summary and data tables
        """
        if not result_sets:
            return ReadResult(
                schema=QuerySchema(),
                warnings=["Procedure returned no result sets."],
            )

        warnings: list[str] = []
        schema = self._read_schema(result_sets[0], warnings)
        result = ReadResult(schema=schema, warnings=warnings)
        skipped = 0
        # RS1 is the summary slot unless RS0 names the summary elsewhere
        implicit_summary = schema.metadata_found and not any(
            rs.is_summary for rs in schema.result_sets
        )

        for ordinal in range(1, len(result_sets)):
            declared = schema.declared(ordinal) or ResultSetSchema(
                index=ordinal, table_name=placeholder_name(ordinal), declared=False
            )
            raw = result_sets[ordinal]

            if result.summary is None and (
                declared.is_summary
                or (implicit_summary and ordinal == 1 and declared.delivery is None)
            ):
                table = self._bind(
                    schema, declared, raw, self.limits.max_rows_summary, warnings
                )
                result.summary = table.data
                continue

            if len(result.tables) >= self.limits.max_tables:
                skipped += 1
                continue

            result.tables.append(
                self._bind(
                    schema, declared, raw, self.limits.max_rows_per_table, warnings
                )
            )

        if skipped:
            warnings.append(
                f"{skipped} data table(s) beyond maxTables={self.limits.max_tables} "
                "were not read."
            )

        logger.info(
            "result_sets_read",
            result_sets=len(result_sets),
            tables=len(result.tables),
            has_summary=result.summary is not None,
            metadata_found=schema.metadata_found,
        )
        return result

    def _read_schema(
        self, rs0: RawResultSet, warnings: list[str]
    ) -> QuerySchema:
        lookup = {c.name.lower(): i for i, c in enumerate(rs0.columns)}
        ordinals = {}
        for key, aliases in _ALIASES.items():
            for alias in aliases:
                if alias.lower() in lookup:
                    ordinals[key] = lookup[alias.lower()]
                    break

        if "index" not in ordinals:
            warnings.append(
                "Result-set 0 does not carry schema metadata (no resultSetIndex column)."
            )
            return QuerySchema()

        def get(row: tuple, key: str) -> Any:
            i = ordinals.get(key)
            return row[i] if i is not None and i < len(row) else None

        rows = rs0.rows
        if len(rows) > self.limits.max_schema_rows:
            warnings.append(
                f"Schema metadata truncated to maxSchemaRows={self.limits.max_schema_rows}."
            )
            rows = rows[: self.limits.max_schema_rows]

        sets: dict[int, ResultSetSchema] = {}
        columns: dict[int, list[_DeclaredColumn]] = {}
        for row in rows:
            index = _int(get(row, "index"))
            if index is None or index < 1:
                continue
            record_type = (_text(get(row, "record_type")) or "").lower()
            column_name = _text(get(row, "column_name"))
            if not record_type:
                record_type = "column" if column_name else "resultset"

            if record_type in ("column", "col"):
                if not column_name:
                    continue
                columns.setdefault(index, []).append(
                    _DeclaredColumn(
                        index=index,
                        name=column_name,
                        ordinal=_int(get(row, "ordinal")) or 0,
                        sql_type=_text(get(row, "sql_type")),
                        tabular_type=TabularType.parse(_text(get(row, "tabular_type"))),
                        role=_text(get(row, "role")),
                        semantic_type=_text(get(row, "semantic_type")),
                        unit=_text(get(row, "unit")),
                        format=_text(get(row, "format")),
                        nullable=_bool(get(row, "nullable")),
                        example=_text(get(row, "example")),
                        notes=_text(get(row, "notes")),
                    )
                )
            elif record_type in ("resultset", "table", "rs"):
                sets[index] = ResultSetSchema(
                    index=index,
                    table_name=_text(get(row, "table_name"))
                    or placeholder_name(index),
                    table_kind=_text(get(row, "table_kind")),
                    delivery=Delivery.parse(get(row, "delivery")),
                    grain=_text(get(row, "grain")),
                    primary_key=_csv(get(row, "primary_key")),
                    join_hints=_csv(get(row, "join_hints")),
                )

        # columns declared for an index without a resultset row still count
        for index in columns:
            if index not in sets:
                sets[index] = ResultSetSchema(
                    index=index, table_name=placeholder_name(index)
                )

        result_sets = []
        for index in sorted(sets):
            decls = sorted(columns.get(index, []), key=lambda c: (c.ordinal, c.name))
            result_sets.append(
                replace(
                    sets[index],
                    columns=tuple(
                        ColumnSchema(
                            name=c.name,
                            tabular_type=c.tabular_type
                            or TabularType.from_sql_type(c.sql_type)
                            or TabularType.STRING,
                            sql_type=c.sql_type,
                            role=c.role,
                            semantic_type=c.semantic_type,
                            unit=c.unit,
                            format=c.format,
                            nullable=c.nullable,
                            example=c.example,
                            notes=c.notes,
                        )
                        for c in decls
                    ),
                )
            )
        typed = {
            index: frozenset(
                c.name.lower()
                for c in decls
                if c.tabular_type is not None or c.sql_type is not None
            )
            for index, decls in columns.items()
        }
        return QuerySchema(
            result_sets=result_sets, metadata_found=True, typed_columns=typed
        )

    def _bind(
        self,
        schema: QuerySchema,
        declared: ResultSetSchema,
        raw: RawResultSet,
        max_rows: int,
        warnings: list[str],
    ) -> ResultTable:
        by_name = {c.name.lower(): c for c in declared.columns}
        explicit = schema.typed_columns.get(declared.index, frozenset())

        rows = raw.rows
        total_count = raw.total_count
        if len(rows) > max_rows:
            warnings.append(
                f"Table '{declared.table_name}' truncated from {len(rows)} to {max_rows} rows."
            )
            total_count = total_count if total_count is not None else len(rows)
            rows = rows[:max_rows]

        columns = []
        used: set[str] = set()
        unknown = []
        for pos, raw_col in enumerate(raw.columns):
            name = raw_col.name or f"col{pos + 1}"
            decl = by_name.get(name.lower())
            if decl is None:
                unknown.append(name)
            unique = name
            n = 2
            while unique.lower() in used:
                unique = f"{name}_{n}"
                n += 1
            if unique != name:
                warnings.append(
                    f"Duplicate column '{name}' in table '{declared.table_name}' renamed to '{unique}'."
                )
            used.add(unique.lower())

            if decl is not None and name.lower() in explicit:
                columns.append(replace(decl, name=unique))
                continue

            ttype = TabularType.from_sql_type(raw_col.sql_type)
            if ttype is None:
                sample = next((r[pos] for r in rows if r[pos] is not None), None)
                ttype = (
                    TabularType.from_value(sample)
                    if sample is not None
                    else TabularType.STRING
                )
            base = decl or ColumnSchema(name=unique)
            columns.append(
                replace(
                    base,
                    name=unique,
                    tabular_type=ttype,
                    sql_type=base.sql_type or raw_col.sql_type,
                )
            )

        present = {c.name.lower() for c in raw.columns}
        unknown.extend(
            f"(missing){c.name}" for c in declared.columns if c.name.lower() not in present
        )

        data = TabularData(columns=tuple(columns), rows=tuple(rows), total_count=total_count)
        return ResultTable(
            schema=replace(declared, columns=tuple(columns)),
            data=data,
            unknown_columns=tuple(unknown),
        )
