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

from govquery.analytics.tabular import (
    ColumnSchema,
    Delivery,
    RawColumn,
    RawResultSet,
    ReadLimits,
    TabularData,
    TabularReader,
    TabularType,
)

from result_sets import rs0, sales_result_sets, slotted_result_sets, summary


class TestTabularReader:
    """Tests for reading RS0, the summary and data tables"""

    def test_reads_declared_schema_and_tables(self):
        result = TabularReader().read(sales_result_sets(10))

        assert result.schema.metadata_found
        assert result.summary is not None
        assert result.summary.rows == ((10,),)
        assert len(result.tables) == 1

        table = result.tables[0]
        assert table.schema.table_name == "sales"
        assert table.schema.delivery == Delivery.ENGINE
        assert table.schema.primary_key == ("id",)
        assert [c.tabular_type for c in table.data.columns] == [
            TabularType.INT32,
            TabularType.STRING,
            TabularType.DECIMAL,
        ]
        assert len(table.data.rows) == 10
        assert table.unknown_columns == ()

    def test_undeclared_result_set_gets_placeholder(self):
        sets = sales_result_sets(3) + [RawResultSet.of(["x"], [[1]])]
        result = TabularReader().read(sets)

        extra = result.tables[-1]
        assert extra.schema.index == 3
        assert extra.schema.table_name == "rs3"
        assert extra.schema.is_placeholder
        assert extra.schema.delivery is None

    def test_missing_metadata_warns(self):
        sets = [
            RawResultSet.of(["foo"], [["bar"]]),
            RawResultSet.of(["a", "b"], [[1, "x"]]),
        ]
        result = TabularReader().read(sets)

        assert not result.schema.metadata_found
        assert any("resultSetIndex" in w for w in result.warnings)
        assert result.tables[0].schema.table_name == "rs1"

    def test_no_result_sets(self):
        result = TabularReader().read([])
        assert result.tables == []
        assert result.warnings == ["Procedure returned no result sets."]

    def test_row_limit_keeps_total_count(self):
        reader = TabularReader(ReadLimits(max_rows_per_table=5))
        result = reader.read(sales_result_sets(12))

        table = result.tables[0]
        assert len(table.data.rows) == 5
        assert table.data.total_count == 12
        assert any("truncated from 12 to 5" in w for w in result.warnings)

    def test_table_limit(self):
        declared = rs0(
            [{"index": i, "name": f"t{i}", "delivery": "display"} for i in (1, 2, 3)]
        )
        tables = [RawResultSet.of(["v"], [[i]]) for i in (1, 2, 3)]
        result = TabularReader(ReadLimits(max_tables=2)).read([declared] + tables)

        assert [t.schema.table_name for t in result.tables] == ["t1", "t2"]
        assert any("maxTables=2" in w for w in result.warnings)

    def test_duplicate_columns_are_renamed(self):
        sets = [
            rs0([{"index": 1, "name": "t", "delivery": "display"}]),
            RawResultSet.of(["region", "Region"], [["a", "b"]]),
        ]
        result = TabularReader().read(sets)

        assert result.tables[0].data.names == ["region", "Region_2"]
        assert any("renamed to 'Region_2'" in w for w in result.warnings)

    def test_unknown_and_missing_columns(self):
        sets = [
            rs0(
                [{"index": 1, "name": "t", "delivery": "display"}],
                [
                    {"index": 1, "name": "a", "ordinal": 1},
                    {"index": 1, "name": "gone", "ordinal": 2},
                ],
            ),
            RawResultSet.of(["a", "extra"], [[1, 2]]),
        ]
        table = TabularReader().read(sets).tables[0]
        assert table.unknown_columns == ("extra", "(missing)gone")

    def test_declared_tabular_type_wins(self):
        sets = [
            rs0(
                [{"index": 1, "name": "t", "delivery": "display"}],
                [{"index": 1, "name": "code", "tabularType": "String"}],
            ),
            RawResultSet.of([RawColumn("code", "int")], [[7]]),
        ]
        table = TabularReader().read(sets).tables[0]
        assert table.data.columns[0].tabular_type == TabularType.STRING

    @pytest.mark.parametrize(
        "value, expected",
        [
            (1, TabularType.INT32),
            (2**40, TabularType.INT64),
            (1.5, TabularType.DOUBLE),
            (True, TabularType.BOOL),
            ("x", TabularType.STRING),
        ],
    )
    def test_type_inferred_from_values(self, value, expected):
        sets = [
            rs0([{"index": 1, "name": "t", "delivery": "display"}]),
            RawResultSet.of(["v"], [[None], [value]]),
        ]
        table = TabularReader().read(sets).tables[0]
        assert table.data.columns[0].tabular_type == expected

    def test_dict_rows_follow_column_order(self):
        raw = RawResultSet.of(["a", "b"], [{"b": 2, "a": 1}])
        assert raw.rows == ((1, 2),)

    def test_summary_uses_summary_row_limit(self):
        sets = sales_result_sets(3)
        sets[1] = RawResultSet.of(["totalCount"], [[i] for i in range(10)])
        result = TabularReader(ReadLimits(max_rows_summary=2)).read(sets)
        assert len(result.summary.rows) == 2

    def test_undeclared_first_result_set_is_summary(self):
        result = TabularReader().read(slotted_result_sets(100))

        assert result.summary.rows == ((100,),)
        assert [t.schema.table_name for t in result.tables] == ["sales", "regions"]
        assert [t.schema.delivery for t in result.tables] == [
            Delivery.ENGINE,
            Delivery.DISPLAY,
        ]

    def test_first_result_set_without_delivery_is_summary(self):
        sets = slotted_result_sets(5)
        sets[0] = rs0(
            [
                {"index": 1, "name": "totals"},
                {"index": 2, "name": "sales", "delivery": "engine"},
            ]
        )
        result = TabularReader().read(sets[:3])

        assert result.summary.names == ["totalCount"]
        assert [t.schema.table_name for t in result.tables] == ["sales"]

    def test_declared_summary_elsewhere_keeps_first_result_set(self):
        sets = [
            rs0(
                [
                    {"index": 1, "name": "orders"},
                    {"index": 2, "name": "summary", "kind": "summary"},
                ]
            ),
            RawResultSet.of(["id"], [[1], [2]]),
            summary(2),
        ]
        result = TabularReader().read(sets)

        assert result.summary.rows == ((2,),)
        assert [t.schema.table_name for t in result.tables] == ["orders"]


class TestTabularData:
    """Tests for the TabularData invariants"""

    def test_rejects_ragged_rows(self):
        with pytest.raises(ValueError):
            TabularData(columns=(ColumnSchema("a"), ColumnSchema("b")), rows=((1,),))

    def test_rejects_case_insensitive_duplicates(self):
        with pytest.raises(ValueError):
            TabularData(columns=(ColumnSchema("a"), ColumnSchema("A")), rows=())

    def test_column_index_is_case_insensitive(self):
        data = TabularData(columns=(ColumnSchema("Amount"),), rows=())
        assert data.column_index("amount") == 0
        assert data.column_index("missing") is None


@pytest.mark.parametrize(
    "sql_type, expected",
    [
        ("int", TabularType.INT32),
        ("bigint", TabularType.INT64),
        ("decimal(18,2)", TabularType.DECIMAL),
        ("nvarchar(max)", TabularType.STRING),
        ("datetime2", TabularType.DATETIME),
        ("bit", TabularType.BOOL),
        ("float", TabularType.DOUBLE),
        ("geography", None),
    ],
)
def test_from_sql_type(sql_type, expected):
    assert TabularType.from_sql_type(sql_type) == expected
