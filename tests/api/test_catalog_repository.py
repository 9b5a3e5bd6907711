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

import pytest
import yaml

from govquery.api.catalog import (
    EXACT_NAME_SCORE,
    InMemoryCatalogRepository,
)

from result_sets import CATALOG


@pytest.fixture
def catalog_file(tmp_path):
    path = tmp_path / "catalog.yaml"
    path.write_text(yaml.safe_dump({"procedures": CATALOG}))
    return path


class TestInMemoryCatalogRepository:
    """Tests for the in-memory catalog repository"""

    @pytest.mark.asyncio
    async def test_get_is_case_insensitive(self, catalog_repo):
        entry = await catalog_repo.get("DBO.AI_SP_SALESBYSEASON")
        assert entry.procedure_name == "dbo.ai_sp_SalesBySeason"
        assert entry.tags == ("sales", "season", "region")
        assert await catalog_repo.get("dbo.ai_sp_Nope") is None

    @pytest.mark.asyncio
    async def test_exact_name_wins(self, catalog_repo):
        [hit] = await catalog_repo.search("ai_sp_customers", 5)
        assert hit.entry.procedure_name == "dbo.ai_sp_Customers"
        assert hit.score == EXACT_NAME_SCORE

    @pytest.mark.asyncio
    async def test_field_scores(self, catalog_repo):
        hits = await catalog_repo.search("sales region", 5)
        assert [h.entry.procedure_name for h in hits] == ["dbo.ai_sp_SalesBySeason"]
        assert hits[0].score > 0

    @pytest.mark.asyncio
    async def test_search_skips_non_executable(self, catalog_repo):
        for query in ("disabled", "writes", "legacy"):
            assert await catalog_repo.search(query, 5) == []

    @pytest.mark.asyncio
    async def test_top_k(self, catalog_repo):
        assert len(await catalog_repo.search("", 1)) == 1
        assert len(await catalog_repo.search("", 10)) == 2

    @pytest.mark.asyncio
    async def test_from_file(self, catalog_file):
        repo = InMemoryCatalogRepository.from_file(catalog_file)
        entry = await repo.get("dbo.ai_sp_SalesBySeason")
        assert [p.name for p in entry.params] == ["@Season", "@Region", "@Page"]
        assert entry.param_defaults == {"@Page": 1}

    @pytest.mark.asyncio
    async def test_from_file_plain_list(self, tmp_path):
        path = tmp_path / "catalog.yaml"
        path.write_text(yaml.safe_dump([{"procedureName": "dbo.ai_sp_One"}]))
        repo = InMemoryCatalogRepository.from_file(path)
        assert await repo.get("dbo.ai_sp_one") is not None
