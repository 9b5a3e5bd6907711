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

from datetime import datetime

import pytest

from govquery.analytics.datasets import DatasetOwner
from govquery.analytics.engine import (
    AnalysisResultCache,
    AnalyticsEngine,
    RunBounds,
    RunResult,
    bucket_datetime,
    pipeline_digest,
)
from govquery.analytics.errors import (
    DatasetNotFound,
    ExecutionCancelled,
    InvalidPipeline,
)
from govquery.analytics.frame import ExecutionBudget
from govquery.analytics.pipeline import DateUnit, parse_pipeline
from govquery.analytics.tabular import ColumnSchema, TabularData, TabularType

from result_sets import sales_rows

SALES_COLUMNS = (
    ColumnSchema("id", TabularType.INT32),
    ColumnSchema("region", TabularType.STRING),
    ColumnSchema("amount", TabularType.DECIMAL),
)


@pytest.fixture
def engine(store):
    return AnalyticsEngine(store)


@pytest.fixture
def sales(store):
    return store.create(
        TabularData(columns=SALES_COLUMNS, rows=tuple(map(tuple, sales_rows(10_000)))),
        table_name="sales",
    )


@pytest.fixture
def small(store):
    rows = (
        (1, "North", 10.0, "2025-01-01"),
        (2, "north", None, "2025-01-08"),
        (3, "South", 30.0, "2025-02-15"),
        (4, None, 0.0, None),
        (5, "East", 60.0, "not a date"),
    )
    return store.create(
        TabularData(
            columns=SALES_COLUMNS + (ColumnSchema("day", TabularType.STRING),),
            rows=rows,
        ),
        table_name="small",
    )


class TestAnalyticsEngine:
    """Tests for running pipelines against datasets"""

    def test_group_sort_top(self, engine, sales):
        result = engine.run(
            sales.dataset_id,
            [
                {"op": "groupBy", "by": ["region"], "aggregates": [{"op": "sum", "column": "amount", "as": "total"}]},
                {"op": "sort", "by": "total"},
                {"op": "topN", "n": 2},
            ],
        )

        assert result.rows == [("South", 125000.0), ("West", 125000.0)]
        assert [c.name for c in result.schema] == ["region", "total"]
        assert result.warnings == []

        payload = result.to_dict()
        assert payload["rowCount"] == 2
        assert payload["columnCount"] == 2
        assert payload["previewRows"] == [["South", 125000.0], ["West", 125000.0]]
        assert "resultDatasetId" not in payload

    def test_group_totals(self, engine, sales):
        result = engine.run(
            sales.dataset_id,
            [{"op": "groupBy", "by": "region", "aggregates": [{"op": "count"}, {"op": "avg", "column": "amount"}]}],
        )
        assert sorted(result.rows) == [
            ("East", 2500, 40.0),
            ("North", 2500, 40.0),
            ("South", 2500, 50.0),
            ("West", 2500, 50.0),
        ]

    def test_max_groups(self, engine, sales):
        result = engine.run(
            sales.dataset_id,
            [{"op": "groupBy", "by": "id"}],
            bounds=RunBounds(max_groups=3, max_result_rows=100),
        )
        assert result.row_count == 3
        assert "maxGroups=3" in result.warnings[0]

    def test_result_row_cap_and_top_n(self, engine, sales):
        capped = engine.run(sales.dataset_id, [], bounds=RunBounds(max_result_rows=10))
        assert capped.row_count == 10
        assert "maxResultRows=10" in capped.warnings[0]

        top = engine.run(sales.dataset_id, [], bounds=RunBounds(top_n=3))
        assert top.row_count == 3
        assert top.warnings == []

    def test_invalid_pipeline_runs_nothing(self, engine, sales, store):
        before = len(store)
        with pytest.raises(InvalidPipeline) as e:
            engine.run(
                sales.dataset_id,
                [{"op": "sort", "by": "nope"}, {"op": "explode"}],
                persist_result=True,
            )
        assert e.value.code == "invalid_pipeline"
        assert e.value.errors == ["step 2: unknown op 'explode' (expected one of filter, groupBy, sort, topN, select, join, derive, percentOfTotal, dateBucket)"]
        assert len(store) == before

    def test_validation_errors_listed(self, engine, sales):
        errors = engine.validate(
            [{"op": "sort", "by": "nope"}, {"op": "select", "columns": ["gone"]}],
            sales.schema_map,
        )
        assert errors == [
            "step 1 (sort): unknown column 'nope'",
            "step 2 (select): unknown column 'gone'",
        ]

    def test_unknown_dataset(self, engine):
        with pytest.raises(DatasetNotFound):
            engine.run("ds_nope", [])

    def test_owner_is_enforced(self, engine, store):
        owner = DatasetOwner(user_id="u1")
        ds = store.create(
            TabularData(columns=SALES_COLUMNS, rows=((1, "N", 1.0),)), owner=owner
        )
        assert engine.run(ds.dataset_id, [], owner=owner).row_count == 1
        with pytest.raises(DatasetNotFound):
            engine.run(ds.dataset_id, [], owner=DatasetOwner(user_id="u2"))

    def test_persist_result(self, engine, sales, store):
        result = engine.run(
            sales.dataset_id,
            [{"op": "groupBy", "by": "region"}],
            persist_result=True,
        )
        persisted = store.get(result.result_dataset_id)

        assert persisted.table_name == "result_of_sales"
        assert list(persisted.rows) == result.rows
        assert result.to_dict()["resultDatasetId"] == result.result_dataset_id

    def test_empty_result_not_persisted(self, engine, sales):
        result = engine.run(
            sales.dataset_id,
            [{"op": "filter", "column": "region", "value": "Atlantis"}],
            persist_result=True,
        )
        assert result.result_dataset_id is None
        assert "not persisted" in result.warnings[0]

    def test_cancelled_budget(self, engine, sales):
        budget = ExecutionBudget(check_every=10)
        budget.cancel()
        with pytest.raises(ExecutionCancelled) as e:
            engine.run(sales.dataset_id, [{"op": "sort", "by": "amount"}], budget=budget)
        assert e.value.code == "execution_failed"

    def test_time_budget(self, engine, sales):
        ticks = iter(range(0, 1000, 10))
        budget = ExecutionBudget(
            timeout_seconds=15, check_every=100, clock=lambda: float(next(ticks))
        )
        with pytest.raises(ExecutionCancelled) as e:
            engine.run(sales.dataset_id, [{"op": "sort", "by": "amount"}], budget=budget)
        assert e.value.details == {"timeoutSeconds": 15}


class TestSteps:
    """Tests for individual step semantics"""

    def _ids(self, engine, dataset, pipeline):
        result = engine.run(dataset.dataset_id, pipeline + [{"op": "select", "columns": ["id"]}])
        return [r[0] for r in result.rows]

    @pytest.mark.parametrize(
        "step, ids",
        [
            ({"column": "region", "value": "NORTH"}, [1, 2]),
            ({"column": "region", "operator": "ne", "value": "north"}, [3, 4, 5]),
            ({"column": "region", "value": None}, [4]),
            ({"column": "region", "operator": "ne", "value": None}, [1, 2, 3, 5]),
            ({"column": "amount", "operator": "gt", "value": "10"}, [3, 5]),
            ({"column": "amount", "operator": "lte", "value": 10}, [1, 4]),
            ({"column": "amount", "operator": "between", "value": [5, 40]}, [1, 3]),
            ({"column": "id", "operator": "in", "value": [2, "4", 9]}, [2, 4]),
            ({"column": "region", "operator": "contains", "value": "OR"}, [1, 2]),
            ({"column": "region", "operator": "startswith", "value": "s"}, [3]),
        ],
    )
    def test_filter(self, engine, small, step, ids):
        assert self._ids(engine, small, [{"op": "filter", **step}]) == ids

    def test_sort_nulls_last(self, engine, small):
        asc = self._ids(engine, small, [{"op": "sort", "by": "amount", "direction": "asc"}])
        desc = self._ids(engine, small, [{"op": "sort", "by": "amount"}])
        assert asc == [4, 1, 3, 5, 2]
        assert desc == [5, 3, 1, 4, 2]

    def test_sort_is_stable(self, engine, small):
        assert self._ids(engine, small, [{"op": "sort", "by": "region", "dir": "asc"}]) == [5, 1, 2, 3, 4]

    def test_aggregates_skip_nulls(self, engine, small):
        result = engine.run(
            small.dataset_id,
            [
                {"op": "filter", "column": "id", "operator": "lte", "value": 2},
                {"op": "derive", "as": "one", "operator": "add", "left": 1, "right": 0},
                {
                    "op": "groupBy",
                    "by": "one",
                    "aggregates": [
                        {"op": "count", "column": "amount"},
                        {"op": "sum", "column": "amount"},
                        {"op": "min", "column": "region"},
                        {"op": "max", "column": "day"},
                    ],
                },
            ],
        )
        assert result.rows == [(1.0, 1, 10.0, "North", "2025-01-08")]

    def test_empty_sum_and_avg(self, engine, small):
        result = engine.run(
            small.dataset_id,
            [
                {"op": "filter", "column": "id", "value": 2},
                {"op": "groupBy", "by": "id", "aggregates": [{"op": "sum", "column": "amount"}, {"op": "avg", "column": "amount"}]},
            ],
        )
        assert result.rows == [(2, 0.0, None)]

    def test_derive(self, engine, small):
        result = engine.run(
            small.dataset_id,
            [
                {"op": "derive", "as": "ratio", "operator": "div", "left": "id", "right": {"column": "amount"}},
                {"op": "select", "columns": ["ratio"]},
            ],
        )
        assert [r[0] for r in result.rows] == [0.1, None, 0.1, None, 5 / 60]

    def test_percent_of_total(self, engine, small):
        result = engine.run(
            small.dataset_id,
            [{"op": "percentOfTotal", "column": "amount"}, {"op": "select", "columns": ["pct_amount"]}],
        )
        assert [r[0] for r in result.rows] == [10.0, None, 30.0, 0.0, 60.0]
        assert result.schema[0].unit == "percent"

    def test_percent_of_zero_total(self, engine, small):
        result = engine.run(
            small.dataset_id,
            [
                {"op": "filter", "column": "id", "value": 4},
                {"op": "percentOfTotal", "column": "amount", "as": "share"},
            ],
        )
        assert result.rows[0][-1] is None

    def test_date_bucket(self, engine, small):
        result = engine.run(
            small.dataset_id,
            [{"op": "dateBucket", "column": "day", "unit": "month"}, {"op": "select", "columns": ["day_month"]}],
        )
        assert [r[0] for r in result.rows] == [
            datetime(2025, 1, 1),
            datetime(2025, 1, 1),
            datetime(2025, 2, 1),
            None,
            None,
        ]
        assert "1 value(s) in 'day' were not dates" in result.warnings[0]


GROUP_BY_REGION = [
    {"op": "groupBy", "by": "region", "aggregates": [{"op": "count"}]},
    {"op": "sort", "by": "region"},
]


class TestAnalysisResultCache:
    """Tests for reusing pipeline results"""

    @pytest.fixture
    def cache(self, monotonic):
        return AnalysisResultCache(ttl_seconds=60, clock=monotonic)

    @pytest.fixture
    def cached_engine(self, store, cache):
        return AnalyticsEngine(store, result_cache=cache)

    def test_repeat_run_is_served_from_cache(self, cached_engine, cache, sales):
        first = cached_engine.run(sales.dataset_id, GROUP_BY_REGION)
        reordered = [
            {"aggregates": [{"op": "count"}], "by": "region", "op": "groupBy"},
            {"by": "region", "op": "sort"},
        ]
        second = cached_engine.run(sales.dataset_id, reordered)

        assert second.rows == first.rows
        assert (cache.hits, cache.misses) == (1, 1)
        assert len(cache) == 1

    def test_bounds_are_part_of_the_key(self, cached_engine, cache, sales):
        cached_engine.run(sales.dataset_id, GROUP_BY_REGION)
        top = cached_engine.run(sales.dataset_id, GROUP_BY_REGION, RunBounds(top_n=2))

        assert len(top.rows) == 2
        assert (cache.hits, cache.misses) == (0, 2)

    def test_entries_expire(self, cached_engine, cache, sales, monotonic):
        cached_engine.run(sales.dataset_id, GROUP_BY_REGION)
        monotonic.advance(61)
        cached_engine.run(sales.dataset_id, GROUP_BY_REGION)

        assert (cache.hits, cache.misses) == (0, 2)

    def test_persisted_runs_are_not_cached(self, cached_engine, cache, sales):
        first = cached_engine.run(sales.dataset_id, GROUP_BY_REGION, persist_result=True)
        second = cached_engine.run(sales.dataset_id, GROUP_BY_REGION, persist_result=True)

        assert first.result_dataset_id != second.result_dataset_id
        assert len(cache) == 0

    def test_invalid_pipeline_is_not_cached(self, cached_engine, cache, sales):
        with pytest.raises(InvalidPipeline):
            cached_engine.run(sales.dataset_id, [{"op": "sort", "by": "nope"}])
        assert len(cache) == 0

    def test_expired_dataset_is_not_served(self, cached_engine, sales, clock):
        cached_engine.run(sales.dataset_id, GROUP_BY_REGION)
        clock.advance(minutes=11)

        with pytest.raises(DatasetNotFound):
            cached_engine.run(sales.dataset_id, GROUP_BY_REGION)

    def test_oldest_entry_evicted_when_full(self, monotonic):
        cache = AnalysisResultCache(ttl_seconds=60, max_entries=2, clock=monotonic)
        for key in ("a", "b", "c"):
            cache.put((key,), RunResult(dataset_id=key, schema=[], rows=[]))

        assert cache.get(("a",)) is None
        assert cache.get(("c",)).dataset_id == "c"
        assert len(cache) == 2


def test_pipeline_digest_ignores_key_order():
    steps, _ = parse_pipeline(GROUP_BY_REGION)
    same, _ = parse_pipeline(
        [{"aggregates": [{"op": "count"}], "op": "groupBy", "by": "region"}, GROUP_BY_REGION[1]]
    )
    other, _ = parse_pipeline(GROUP_BY_REGION[:1])

    assert pipeline_digest(steps) == pipeline_digest(same)
    assert pipeline_digest(steps) != pipeline_digest(other)


@pytest.mark.parametrize(
    "unit, expected",
    [
        (DateUnit.DAY, datetime(2025, 5, 14)),
        (DateUnit.WEEK, datetime(2025, 5, 12)),
        (DateUnit.MONTH, datetime(2025, 5, 1)),
        (DateUnit.QUARTER, datetime(2025, 4, 1)),
        (DateUnit.YEAR, datetime(2025, 1, 1)),
    ],
)
def test_bucket_datetime(unit, expected):
    assert bucket_datetime(datetime(2025, 5, 14, 13, 30), unit) == expected


def test_run_bounds_clamped():
    bounds = RunBounds(max_groups=0, max_result_rows=10**6, top_n=0)
    assert (bounds.max_groups, bounds.max_result_rows, bounds.top_n) == (1, 5000, 1)
