"""
Governed Query Orchestrator - Tool Operation Coordinator.

This module wires the components into the three tool operations exposed to
the model: ``catalog.search``, ``query.execute`` and ``analytics.run``.
Governance failures come back as structured error payloads; every outward
payload is bounded by the evidence compactor.
"""

import asyncio
import uuid
from datetime import timedelta
from typing import Annotated, Any, Optional

import structlog
from pydantic import AfterValidator, AliasChoices, BaseModel, ConfigDict, Field

from govquery.analytics.catalog import (
    CatalogGovernor,
    CatalogRepository,
    ParameterNameCache,
    ProcedureExecutor,
    RetryOnEmptyPolicy,
    resolve_normalizers,
)
from govquery.analytics.classifier import (
    REMEDIATION,
    ClassificationReport,
    ResultSetClassifier,
)
from govquery.analytics.compactor import CompactionLimits, EvidenceCompactor
from govquery.analytics.datasets import DatasetBounds, DatasetOwner, DatasetStore
from govquery.analytics.engine import AnalysisResultCache, AnalyticsEngine, RunBounds
from govquery.analytics.errors import (
    ExecutionTimeout,
    GovernanceError,
    SchemaMetadataRequired,
)
from govquery.analytics.frame import ExecutionBudget
from govquery.analytics.join import JoinExecutor
from govquery.analytics.tabular import ReadLimits, ReadResult, ResultTable, TabularReader
from govquery.config import settings

logger = structlog.get_logger(__name__)

# handles the caller needs to continue; pruned last
HANDLE_KEYS = (
    "datasetId",
    "resultDatasetId",
    "tableName",
    "rowCount",
    "code",
    "procedureName",
)


def _clamp_top_k(v: int) -> int:
    return min(max(v, 1), 20)


class CatalogSearchRequest(BaseModel):
    query: str = ""
    top_k: Annotated[int, AfterValidator(_clamp_top_k)] = Field(
        default=5, validation_alias=AliasChoices("topK", "top_k")
    )
    model_config = ConfigDict(populate_by_name=True)


class QueryExecuteRequest(BaseModel):
    procedure_name: str = Field(
        validation_alias=AliasChoices(
            "procedureName", "procedure_name", "spName", "storedProcedure"
        ),
        min_length=1,
    )
    params: dict[str, Any] = Field(default_factory=dict)
    model_config = ConfigDict(populate_by_name=True)


class AnalyticsRunRequest(BaseModel):
    dataset_id: str = Field(
        validation_alias=AliasChoices("datasetId", "dataset_id"), min_length=1
    )
    pipeline: list[Any] = Field(default_factory=list)
    top_n: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("topN", "top_n"), ge=1
    )
    persist_result: bool = Field(
        default=False, validation_alias=AliasChoices("persistResult", "persist_result")
    )
    model_config = ConfigDict(populate_by_name=True)


def _rows(table: ResultTable, max_rows: int, max_columns: int) -> list[list]:
    return [list(r[:max_columns]) for r in table.data.rows[:max_rows]]


class GovernedQueryService:
    """
    Orchestrator for governed execution and analytics.

    query.execute flow:
    1. Governor: authorize the procedure and apply the parameter contract
    2. Governor: drop unknown names (soft mode) and normalize values
    3. Executor: run the procedure (one bounded retry on normalized-empty)
    4. Reader: parse RS0, summary and data tables
    5. Classifier: route every data table, failing closed
    6. Store: promote engine tables to datasets
    7. Compactor: bound the outward payload
    """

    def __init__(
        self,
        governor: CatalogGovernor,
        executor: ProcedureExecutor,
        store: DatasetStore,
        engine: Optional[AnalyticsEngine] = None,
        reader: Optional[TabularReader] = None,
        classifier: Optional[ResultSetClassifier] = None,
        compactor: Optional[EvidenceCompactor] = None,
        dataset_bounds: Optional[DatasetBounds] = None,
        run_bounds: Optional[RunBounds] = None,
        cfg: Optional[settings.Settings] = None,
    ):
        """
        Initialize the service.

        Args:
            governor: Catalog governor
            executor: Stored-procedure executor
            store: Shared dataset store
            engine: Pipeline engine over ``store``
            reader: Result-set reader
            classifier: Result-set classifier
            compactor: Evidence compactor for outward payloads
            dataset_bounds: Bounds applied when creating datasets
            run_bounds: Default analytics result bounds
            cfg: Settings for delivery, timeout and preview limits
        """
        self.cfg = cfg or settings.Settings()
        self.governor = governor
        self.executor = executor
        self.store = store
        self.engine = engine or AnalyticsEngine(store)
        self.reader = reader or TabularReader()
        self.classifier = classifier or ResultSetClassifier()
        self.compactor = compactor or EvidenceCompactor(protected_keys=HANDLE_KEYS)
        self.dataset_bounds = dataset_bounds or DatasetBounds()
        self.run_bounds = run_bounds or RunBounds()

    @classmethod
    def from_settings(
        cls,
        executor: ProcedureExecutor,
        repository: CatalogRepository,
        cfg: Optional[settings.Settings] = None,
    ) -> "GovernedQueryService":
        cfg = cfg or settings.instance()
        gov = cfg.governance
        ds = cfg.datasets
        an = cfg.analytics
        store = DatasetStore(
            ttl=timedelta(seconds=ds.ttl_seconds),
            sliding_expiration=ds.sliding_expiration,
            shards=ds.shards,
        )
        dataset_bounds = DatasetBounds(
            max_rows=ds.max_rows, max_columns=ds.max_columns, preview_rows=ds.preview_rows
        )
        governor = CatalogGovernor(
            repository,
            default_schema=gov.default_schema,
            procedure_prefix=gov.procedure_prefix,
            normalizers=resolve_normalizers(gov.normalizers),
            param_cache=ParameterNameCache(ttl_seconds=gov.param_cache_ttl_seconds),
            retry_policy=RetryOnEmptyPolicy(enabled=gov.retry_on_empty),
        )
        engine = AnalyticsEngine(
            store,
            JoinExecutor(
                max_join_rows=an.max_join_rows,
                max_join_matches_per_left=an.max_join_matches_per_left,
            ),
            wide_table_columns=an.wide_table_columns,
            dataset_bounds=dataset_bounds,
            result_cache=(
                AnalysisResultCache(
                    ttl_seconds=an.result_cache_ttl_seconds,
                    max_entries=an.result_cache_max_entries,
                )
                if an.result_cache_ttl_seconds
                else None
            ),
        )
        return cls(
            governor=governor,
            executor=executor,
            store=store,
            engine=engine,
            reader=TabularReader(
                ReadLimits(
                    max_rows_per_table=cfg.read.max_rows_per_table,
                    max_rows_summary=cfg.read.max_rows_summary,
                    max_schema_rows=cfg.read.max_schema_rows,
                    max_tables=cfg.read.max_tables,
                )
            ),
            compactor=EvidenceCompactor(
                CompactionLimits(**cfg.compaction.model_dump()),
                protected_keys=HANDLE_KEYS,
            ),
            dataset_bounds=dataset_bounds,
            run_bounds=RunBounds(
                max_groups=an.max_groups, max_result_rows=an.max_result_rows
            ),
            cfg=cfg,
        )

    @property
    def command_timeout(self) -> float:
        return self.cfg.governance.command_timeout_seconds

    def _ensure_eviction(self):
        interval = self.cfg.datasets.eviction_interval_seconds
        if interval:
            self.store.start_eviction(interval)

    async def _within_timeout(self, awaitable, operation: str):
        try:
            return await asyncio.wait_for(awaitable, timeout=self.command_timeout)
        except (asyncio.TimeoutError, TimeoutError) as e:
            raise ExecutionTimeout(
                f"{operation} did not finish within {self.command_timeout} seconds.",
                {"operation": operation, "timeoutSeconds": self.command_timeout},
            ) from e

    def _compact(self, payload: dict[str, Any]) -> dict[str, Any]:
        bounded, truncated = self.compactor.bound(payload)
        if not isinstance(bounded, dict):
            return {"truncated": True}
        if truncated:
            bounded["truncated"] = True
        return bounded

    def error_payload(
        self, e: GovernanceError, warnings: Optional[list[str]] = None
    ) -> dict[str, Any]:
        return self._compact({"error": e.to_payload(), "warnings": warnings or []})

    async def catalog_search(self, request: CatalogSearchRequest) -> dict[str, Any]:
        """
        Search the catalog for executable procedures.

        Args:
            request: Query text and result count

        Returns:
            Bounded ``{"results": [...]}`` payload, or a structured error when
            the catalog does not answer in time
        """
        try:
            hits = await self._within_timeout(
                self.governor.repository.search(request.query, request.top_k),
                "catalog.search",
            )
        except GovernanceError as e:
            logger.warning("catalog_search_rejected", code=e.code, error=e.message)
            return self.error_payload(e, [])
        results = [
            {
                "procedureName": h.entry.procedure_name,
                "domain": h.entry.domain,
                "entity": h.entry.entity,
                "intent": h.entry.intent,
                "tags": list(h.entry.tags),
                "score": h.score,
                "parameters": [p.name for p in h.entry.params],
                "parameterDetails": [p.to_dict() for p in h.entry.params],
            }
            for h in hits
        ]
        logger.info("catalog_search", query=request.query, results=len(results))
        return self._compact({"query": request.query, "results": results})

    async def _execute(self, procedure_name: str, params: dict[str, Any]) -> ReadResult:
        raw = await self._within_timeout(
            self.executor.execute(procedure_name, params, self.command_timeout),
            procedure_name,
        )
        return self.reader.read(raw)

    async def query_execute(
        self, request: QueryExecuteRequest, owner: Optional[DatasetOwner] = None
    ) -> dict[str, Any]:
        """
        Execute a governed stored procedure.

        Args:
            request: Procedure name and parameters
            owner: Caller identity recorded on created datasets

        Returns:
            Bounded payload with schema, summary, display tables, engine
            datasets, evidence and warnings, or a structured error
        """
        trace_id = str(uuid.uuid4())
        warnings: list[str] = []
        logger.info(
            "query_execute_start",
            procedure=request.procedure_name,
            params=list(request.params),
            trace_id=trace_id,
        )
        self._ensure_eviction()

        try:
            entry = await self._within_timeout(
                self.governor.authorize(request.procedure_name), "catalog lookup"
            )
            contract = self.governor.apply_contract(entry, request.params)
            warnings.extend(contract.warnings)
            params = contract.params
            if contract.soft_mode:
                params, dropped = await self._within_timeout(
                    self.governor.reconcile_with_source(
                        self.executor, entry.procedure_name, params
                    ),
                    "parameter metadata lookup",
                )
                warnings.extend(dropped)

            normalization = self.governor.normalize_values(params)
            read = await self._execute(entry.procedure_name, normalization.params)
            if self.governor.retry_policy.should_retry(normalization, read):
                logger.info(
                    "query_execute_retry_original_values",
                    params=list(normalization.originals),
                    trace_id=trace_id,
                )
                warnings.append(
                    "Normalized values for "
                    f"{', '.join(normalization.originals)} returned no data; "
                    "retried once with the original values."
                )
                read = await self._execute(
                    entry.procedure_name, normalization.restored()
                )
            warnings.extend(read.warnings)

            report = self.classifier.classify_all(read.tables, entry.result_set_hints)
            if not report.ok:
                raise SchemaMetadataRequired(
                    f"{len(report.missing)} result set(s) of {entry.procedure_name} "
                    "have no delivery classification.",
                    {
                        "procedureName": entry.procedure_name,
                        "missing": report.missing,
                        "remediation": REMEDIATION,
                    },
                )
            warnings.extend(report.warnings)

            payload = self._deliver(entry, read, report, owner, warnings)

        except GovernanceError as e:
            logger.warning(
                "query_execute_rejected",
                code=e.code,
                error=e.message,
                trace_id=trace_id,
            )
            return self.error_payload(e, warnings)
        except Exception as e:
            logger.error(
                "query_execute_failed",
                error=str(e),
                procedure=request.procedure_name,
                trace_id=trace_id,
            )
            raise

        logger.info(
            "query_execute_complete",
            procedure=entry.procedure_name,
            engine_datasets=len(payload["engineDatasets"]),
            display_tables=len(payload["displayTables"]),
            warnings=len(warnings),
            trace_id=trace_id,
        )
        return self._compact(payload)

    def _deliver(
        self,
        entry,
        read: ReadResult,
        report: ClassificationReport,
        owner: Optional[DatasetOwner],
        warnings: list[str],
    ) -> dict[str, Any]:
        delivery = self.cfg.delivery
        display_tables = []
        engine_datasets = []

        for table, classification in report.classified:
            schema = table.schema
            decision = classification.decision
            if decision.engine:
                if not table.data.rows:
                    warnings.append(
                        f"Engine table '{schema.table_name}' returned zero rows; "
                        "no dataset was created."
                    )
                else:
                    ds = self.store.create(
                        table.data,
                        self.dataset_bounds,
                        table_name=schema.table_name,
                        owner=owner,
                    )
                    engine_datasets.append(
                        {
                            "index": schema.index,
                            "datasetId": ds.dataset_id,
                            "tableName": schema.table_name,
                            "tableKind": schema.table_kind,
                            "routingReason": decision.reason,
                            "schema": [c.to_dict() for c in ds.schema],
                            "primaryKey": list(schema.primary_key),
                            "joinHints": list(schema.join_hints),
                            "rowCount": len(ds.rows),
                            "sourceRowCount": ds.source_row_count,
                            "expiresAtUtc": ds.expires_at_utc,
                            "preview": {
                                "columns": [c.name for c in ds.schema],
                                "rows": [list(r) for r in ds.preview],
                            },
                        }
                    )

            if decision.display:
                rows = table.data.rows
                if len(rows) > delivery.max_display_rows:
                    warnings.append(
                        f"Display table '{schema.table_name}' truncated to "
                        f"{delivery.max_display_rows} of {len(rows)} rows. "
                        "Use engineDatasets + analytics.run for full analysis."
                    )
                columns = table.data.columns[: delivery.max_columns]
                display_tables.append(
                    {
                        "index": schema.index,
                        "tableName": schema.table_name,
                        "tableKind": schema.table_kind,
                        "routingReason": decision.reason,
                        "schema": [c.to_dict() for c in columns],
                        "rowCount": len(rows),
                        "totalCount": table.data.total_count,
                        "columns": [c.name for c in columns],
                        "rows": _rows(
                            table, delivery.max_display_rows, delivery.max_columns
                        ),
                    }
                )

            if table.unknown_columns:
                warnings.append(
                    f"Table '{schema.table_name}' columns differ from the RS0 declaration: "
                    f"{', '.join(table.unknown_columns)}."
                )

        if not read.tables:
            warnings.append(f"{entry.procedure_name} returned no data tables.")

        summary = None
        evidence = []
        if read.summary is not None and read.summary.rows:
            summary = dict(zip(read.summary.names, read.summary.rows[0]))
            if (i := read.summary.column_index("totalCount")) is not None:
                evidence.append(
                    {"type": "total_count", "value": read.summary.rows[0][i]}
                )
        evidence.append(
            {
                "type": "execution",
                "procedureName": entry.procedure_name,
                "dataTables": len(read.tables),
                "engineDatasets": len(engine_datasets),
                "displayTables": len(display_tables),
            }
        )

        return {
            "procedureName": entry.procedure_name,
            "catalog": {
                "domain": entry.domain,
                "entity": entry.entity,
                "intent": entry.intent,
                "tags": list(entry.tags),
            },
            "schema": read.schema.to_dict(),
            "summary": summary,
            "displayTables": display_tables,
            "engineDatasets": engine_datasets,
            "evidence": evidence,
            "warnings": warnings,
        }

    async def analytics_run(
        self, request: AnalyticsRunRequest, owner: Optional[DatasetOwner] = None
    ) -> dict[str, Any]:
        """
        Run an analytics pipeline against a dataset.

        Args:
            request: Dataset handle, pipeline, optional topN and persistResult
            owner: Caller identity used for dataset access

        Returns:
            Bounded ``{schema, rowCount, columnCount, previewRows,
            resultDatasetId?, warnings}`` payload, or a structured error
        """
        an = self.cfg.analytics
        bounds = RunBounds(
            max_groups=self.run_bounds.max_groups,
            max_result_rows=self.run_bounds.max_result_rows,
            top_n=request.top_n,
        )
        budget = ExecutionBudget(
            timeout_seconds=an.timeout_seconds, check_every=an.budget_check_rows
        )
        logger.info(
            "analytics_run_start",
            dataset_id=request.dataset_id,
            steps=len(request.pipeline),
        )
        try:
            result = await asyncio.to_thread(
                self.engine.run,
                request.dataset_id,
                request.pipeline,
                bounds,
                request.persist_result,
                owner,
                budget,
            )
        except asyncio.CancelledError:
            budget.cancel()
            raise
        except GovernanceError as e:
            logger.warning(
                "analytics_run_rejected", code=e.code, dataset_id=request.dataset_id
            )
            return self.error_payload(e, [])

        return self._compact(result.to_dict(preview_rows=an.preview_rows))
