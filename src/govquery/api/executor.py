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
import asyncio
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Union

from yaml import safe_load

from govquery import log
from govquery.analytics.tabular import RawResultSet


class FixtureProcedureExecutor:
    """
    Serves result sets from YAML fixture files, one file per procedure.

    ``<fixtures_dir>/<procedure>.yaml``::

        parameters: ["@Season"]
        resultSets:
          - columns: [recordType, resultSetIndex, tableName, delivery]
            rows: [[resultset, 2, sales, engine]]
          - columns: [...]
            rows: [...]
    """

    def __init__(self, fixtures_dir: Union[str, Path], source_id: str = "fixtures"):
        self.fixtures_dir = Path(fixtures_dir)
        self.source_id = source_id

    def _load(self, procedure_name: str) -> dict:
        path = self.fixtures_dir / f"{procedure_name}.yaml"
        if not path.exists():
            raise FileNotFoundError(f"No fixture for {procedure_name} at {path}")
        with path.open() as f:
            return safe_load(f) or {}

    async def execute(
        self,
        procedure_name: str,
        params: Mapping[str, Any],
        timeout_seconds: float,
    ) -> list[RawResultSet]:
        log.logger("fixture_executor").info(
            "fixture_execute", procedure=procedure_name, params=list(params)
        )
        doc = await asyncio.to_thread(self._load, procedure_name)
        return [
            RawResultSet.of(
                rs.get("columns", []), rs.get("rows", []), rs.get("totalCount")
            )
            for rs in doc.get("resultSets", [])
        ]

    async def describe_parameters(
        self, procedure_name: str
    ) -> Optional[Iterable[str]]:
        doc = await asyncio.to_thread(self._load, procedure_name)
        return doc.get("parameters")
