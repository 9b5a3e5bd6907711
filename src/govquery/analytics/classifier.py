"""
Result Set Classifier Component - Delivery Routing.

Decides, per data table, whether it stays server-side for analytics
(engine), goes to the client as a preview (display), or both. Classification
is fail-closed: a table whose delivery cannot be established is reported as
missing instead of being guessed.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Mapping, Optional

import structlog

from govquery.analytics.tabular import Delivery, ResultSetSchema, ResultTable

logger = structlog.get_logger(__name__)

REMEDIATION = (
    "Declare delivery (engine|display|both) for every data result set in RS0, "
    "or register a result-set hint for the procedure in the catalog."
)


@dataclass(frozen=True)
class FallbackHint:
    """Catalog-registered routing hint for one result-set index."""

    index: int
    delivery: Optional[str] = None
    dataset_name: Optional[str] = None
    table_kind: Optional[str] = None
    primary_key: tuple[str, ...] = ()
    join_hints: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, index: int, raw: Mapping[str, Any]) -> "FallbackHint":
        def names(value) -> tuple[str, ...]:
            if not value:
                return ()
            if isinstance(value, str):
                value = value.split(",")
            return tuple(v.strip() for v in value if v and v.strip())

        return cls(
            index=index,
            delivery=raw.get("delivery"),
            dataset_name=raw.get("datasetName") or raw.get("tableName"),
            table_kind=raw.get("tableKind"),
            primary_key=names(raw.get("primaryKey")),
            join_hints=names(raw.get("joinHints")),
        )


@dataclass(frozen=True)
class RoutingDecision:
    engine: bool
    display: bool
    reason: str

    @classmethod
    def of(cls, delivery: Delivery, source: str) -> "RoutingDecision":
        return cls(
            engine=delivery in (Delivery.ENGINE, Delivery.BOTH),
            display=delivery in (Delivery.DISPLAY, Delivery.BOTH),
            reason=f"{source}.delivery={delivery.value}",
        )


@dataclass
class Classification:
    """Routing for one table plus its resolved schema."""

    schema: ResultSetSchema
    decision: Optional[RoutingDecision]
    warnings: list[str] = field(default_factory=list)

    @property
    def decided(self) -> bool:
        return self.decision is not None


@dataclass
class ClassificationReport:
    classified: list[tuple[ResultTable, Classification]] = field(default_factory=list)
    missing: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.missing


class ResultSetClassifier:
    """
    Classifier that routes data tables to engine and/or display delivery.

    Precedence:
    1. Delivery declared by the table's RS0 schema
    2. Catalog fallback hint for the same result-set index
    3. Otherwise undecidable (reported as missing)
    """

    def classify(
        self, schema: ResultSetSchema, hint: Optional[FallbackHint] = None
    ) -> Classification:
        """
        Classify a single result set.

        Args:
            schema: Declared schema of the data table
            hint: Optional catalog fallback hint for the same index

        Returns:
            Classification with the resolved schema; decision is None when
            delivery could not be established
        """
        warnings: list[str] = []
        decision = None

        if schema.delivery is not None:
            decision = RoutingDecision.of(schema.delivery, "schema")
        elif hint is not None and (fallback := Delivery.parse(hint.delivery)):
            decision = RoutingDecision.of(fallback, "fallback")
            if schema.is_placeholder:
                schema = replace(
                    schema,
                    table_name=hint.dataset_name or schema.table_name,
                    table_kind=hint.table_kind or schema.table_kind,
                )

        primary_key = schema.primary_key or (hint.primary_key if hint else ())
        join_hints = schema.join_hints or (hint.join_hints if hint else ())
        if not join_hints and primary_key:
            join_hints = primary_key
            warnings.append(
                f"joinHints for table '{schema.table_name}' resolved from primaryKey "
                f"({', '.join(primary_key)}); declare joinHints explicitly."
            )
        schema = replace(schema, primary_key=primary_key, join_hints=join_hints)

        return Classification(schema=schema, decision=decision, warnings=warnings)

    def classify_all(
        self,
        tables: list[ResultTable],
        hints: Optional[Mapping[int, FallbackHint]] = None,
    ) -> ClassificationReport:
        """
        Classify every data table of one execution.

        Args:
            tables: Data tables in ordinal order
            hints: Catalog fallback hints keyed by result-set index

        Returns:
            ClassificationReport; ``missing`` lists undecidable tables
        """
        hints = hints or {}
        report = ClassificationReport()
        for table in tables:
            result = self.classify(table.schema, hints.get(table.schema.index))
            report.warnings.extend(result.warnings)
            if not result.decided:
                report.missing.append(
                    {
                        "index": table.schema.index,
                        "tableName": table.schema.table_name,
                        "declared": table.schema.declared,
                    }
                )
                continue
            report.classified.append(
                (replace(table, schema=result.schema), result)
            )

        logger.info(
            "result_sets_classified",
            classified=len(report.classified),
            missing=len(report.missing),
        )
        return report
