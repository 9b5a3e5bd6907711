#
#  Copyright (C) 2017-2025 Dremio Corporation
#
#  Licensed under the Apache License, Version 2.0 (the "License");
#  you may not use this file except in compliance with the License.
#  You may obtain a copy of the License at
#
#      http://www.apache.org/licenses/LICENSE-2.0
#
#  Unless required by applicable law or agreed to in writing, software
#  distributed under the License is distributed on an "AS IS" BASIS,
#  WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#  See the License for the specific language governing permissions and
#  limitations under the License.
#
from pathlib import Path
from typing import Any, ClassVar, Dict, List, Optional

from pydantic import ValidationError

from govquery import log
from govquery.analytics.errors import InvalidParameters
from govquery.analytics.orchestrator import (
    AnalyticsRunRequest,
    CatalogSearchRequest,
    GovernedQueryService,
    QueryExecuteRequest,
)
from govquery.api.catalog import InMemoryCatalogRepository
from govquery.api.executor import FixtureProcedureExecutor
from govquery.config import settings

_service: Optional[GovernedQueryService] = None


def build_service(cfg: Optional[settings.Settings] = None) -> GovernedQueryService:
    cfg = cfg or settings.instance()
    repository = (
        InMemoryCatalogRepository.from_file(cfg.catalog.file)
        if cfg.catalog.file is not None
        else InMemoryCatalogRepository()
    )
    fixtures_dir = cfg.executor.fixtures_dir or (
        settings.default_config().parent / "fixtures"
    )
    executor = FixtureProcedureExecutor(fixtures_dir, source_id=cfg.executor.source_id)
    log.logger("tools").info(
        "service_built",
        catalog=str(cfg.catalog.file) if cfg.catalog.file else None,
        fixtures_dir=str(fixtures_dir),
    )
    return GovernedQueryService.from_settings(executor, repository, cfg)


# The dataset store lives on the service, so every tool must share one
def get_service() -> GovernedQueryService:
    global _service
    if _service is None:
        _service = build_service()
    return _service


def set_service(service: Optional[GovernedQueryService]):
    global _service
    _service = service


def _malformed(e: ValidationError) -> InvalidParameters:
    return InvalidParameters(
        "The tool arguments are malformed.",
        {
            "errors": [
                f"{'.'.join(str(p) for p in x['loc']) or 'request'}: {x['msg']}"
                for x in e.errors()
            ]
        },
    )


class Tool:
    name: ClassVar[str]

    def __init__(self, service: Optional[GovernedQueryService] = None):
        self._service = service

    @property
    def service(self) -> GovernedQueryService:
        return self._service or get_service()


class CatalogSearch(Tool):
    name = "catalog.search"

    async def invoke(self, query: str = "", topK: int = 5) -> Dict[str, Any]:
        """Search the catalog of approved, read-only stored procedures.

        Returns up to topK (1-20) matches ranked by how well the query matches
        the procedure name, tags, intent, domain and entity. Each result lists
        the parameters the procedure accepts. Only procedures returned here
        can be run with query.execute.

        Args:
            query: Free-text search, e.g. "season sales by region"
            topK: Maximum number of results
        """
        try:
            request = CatalogSearchRequest.model_validate(
                {"query": query, "topK": topK}
            )
        except ValidationError as e:
            return self.service.error_payload(_malformed(e))
        return await self.service.catalog_search(request)


class QueryExecute(Tool):
    name = "query.execute"

    async def invoke(
        self, procedureName: str, params: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Execute an approved stored procedure and return governed results.

        The procedure must be registered in the catalog (see catalog.search)
        and the parameters must match its contract. Small tables are returned
        inline under displayTables. Large tables are kept server-side and
        returned under engineDatasets as a datasetId with schema and a short
        preview; analyze them with analytics.run instead of asking for rows.

        Args:
            procedureName: Procedure name, e.g. "dbo.ai_sp_SalesBySeason"
            params: Parameter values keyed by name, e.g. {"@Season": "2024/25"}
        """
        try:
            request = QueryExecuteRequest.model_validate(
                {"procedureName": procedureName, "params": params or {}}
            )
        except ValidationError as e:
            return self.service.error_payload(_malformed(e))
        return await self.service.query_execute(request)


class AnalyticsRun(Tool):
    name = "analytics.run"

    async def invoke(
        self,
        datasetId: str,
        pipeline: Optional[List[Dict[str, Any]]] = None,
        topN: Optional[int] = None,
        persistResult: bool = False,
    ) -> Dict[str, Any]:
        """Run an analytics pipeline over a dataset returned by query.execute.

        The pipeline is a list of steps applied in order. Supported ops:
        filter {column, operator (eq|ne|gt|gte|lt|lte|in|between|contains|startswith),
        value},
        groupBy {by, aggregates: [{op (count|sum|avg|min|max), column, as}]},
        sort {by, direction (asc|desc)}, topN {n}, select {columns},
        join {rightDatasetId, leftKeys, rightKeys, how (inner|left),
        selectRight}, derive {as, operator (add|sub|mul|div), left, right},
        percentOfTotal {column, as}, dateBucket {column, unit
        (day|week|month|quarter|year), as}.
        The whole pipeline is validated before anything runs. Set
        persistResult to keep the result as a new dataset.

        Args:
            datasetId: Source dataset handle from query.execute
            pipeline: Ordered pipeline steps
            topN: Keep only the first N result rows
            persistResult: Store the result and return resultDatasetId
        """
        try:
            request = AnalyticsRunRequest.model_validate(
                {
                    "datasetId": datasetId,
                    "pipeline": pipeline or [],
                    "topN": topN,
                    "persistResult": persistResult,
                }
            )
        except ValidationError as e:
            return self.service.error_payload(_malformed(e))
        return await self.service.analytics_run(request)


def get_tools() -> List[type[Tool]]:
    return [CatalogSearch, QueryExecute, AnalyticsRun]
