"""
Tests for table normalization of R data frame payloads.

Run tests:
    pytest tests/test_normalizer.py -v
"""

import dataclasses

import pytest

from api.errors import MalformedPayload
from api.normalizer import ColumnType, TableSnapshot, map_r_type, normalize_payload


def _payload(**overrides):
    payload = {
        "name": "df",
        "data": {"a": [1, 2, 3]},
        "nrow": 3,
        "ncol": 1,
        "colnames": ["a"],
        "coltypes": ["integer"],
    }
    payload.update(overrides)
    return payload


# ============================================================================
# Shape
# ============================================================================


class TestRowMaterialization:
    """Column-oriented input becomes row-oriented output."""

    def test_mtcars_scenario(self, mtcars_payload):
        snapshot = normalize_payload(mtcars_payload)

        assert snapshot.name == "mtcars"
        assert snapshot.rows == ((21, 6), (22.8, 4))
        assert [c.declared_type for c in snapshot.columns] == [ColumnType.NUMERIC, ColumnType.NUMERIC]
        assert [c.has_missing for c in snapshot.columns] == [False, False]
        assert snapshot.total_row_count == 2
        assert snapshot.total_column_count == 2
        assert snapshot.truncated is False

    def test_every_row_has_ncol_cells(self):
        snapshot = normalize_payload(_payload(
            data={"a": [1, 2, 3], "b": ["x"], "c": []},
            ncol=3,
            colnames=["a", "b", "c"],
            coltypes=["integer", "character", "logical"],
        ))
        assert len(snapshot.rows) == 3
        assert all(len(row) == 3 for row in snapshot.rows)

    def test_short_column_is_padded_with_null(self):
        snapshot = normalize_payload(_payload(
            data={"a": [1, 2, 3], "b": ["x"]},
            ncol=2,
            colnames=["a", "b"],
            coltypes=["integer", "character"],
        ))
        assert [row[1] for row in snapshot.rows] == ["x", None, None]

    def test_missing_column_is_all_null(self):
        snapshot = normalize_payload(_payload(
            data={"a": [1, 2, 3]},
            ncol=2,
            colnames=["a", "ghost"],
            coltypes=["integer", "character"],
        ))
        assert [row[1] for row in snapshot.rows] == [None, None, None]

    def test_long_column_is_cut_at_nrow(self):
        snapshot = normalize_payload(_payload(data={"a": [1, 2, 3, 4, 5]}))
        assert len(snapshot.rows) == 3

    def test_zero_rows(self):
        snapshot = normalize_payload(_payload(data={"a": []}, nrow=0))
        assert snapshot.rows == ()
        assert len(snapshot.columns) == 1

    def test_ordinal_index_follows_colnames(self):
        snapshot = normalize_payload(_payload(
            data={"z": [1], "a": [2]},
            nrow=1,
            ncol=2,
            colnames=["z", "a"],
            coltypes=["numeric", "numeric"],
        ))
        assert [(c.name, c.ordinal_index) for c in snapshot.columns] == [("z", 0), ("a", 1)]

    def test_unboxed_scalar_column(self):
        # jsonlite auto_unbox turns a length-1 column into a scalar
        snapshot = normalize_payload(_payload(data={"a": 7}, nrow=1))
        assert snapshot.rows == ((7,),)

    def test_boxed_counts_are_accepted(self):
        snapshot = normalize_payload(_payload(nrow=[3], ncol=[1]))
        assert snapshot.total_row_count == 3

    def test_capture_time_override(self):
        snapshot = normalize_payload(_payload(), now_ms=1234)
        assert snapshot.captured_at_epoch_millis == 1234


# ============================================================================
# Missing values
# ============================================================================


class TestMissingValues:
    """R's NA spellings collapse to None."""

    def test_na_string_and_null_become_none(self):
        snapshot = normalize_payload(_payload(data={"a": [1, "NA", None]}))
        assert [row[0] for row in snapshot.rows] == [1, None, None]
        assert snapshot.columns[0].has_missing is True

    def test_na_string_never_reaches_a_cell(self):
        snapshot = normalize_payload(_payload(
            data={"a": ["NA", "NA", "NA"], "b": ["x", "NA", "y"]},
            ncol=2,
            colnames=["a", "b"],
            coltypes=["character", "character"],
        ))
        for row in snapshot.rows:
            assert "NA" not in row

    def test_column_without_na(self):
        snapshot = normalize_payload(_payload())
        assert snapshot.columns[0].has_missing is False

    def test_padding_does_not_flag_missing(self):
        snapshot = normalize_payload(_payload(data={"a": [1]}))
        assert snapshot.columns[0].has_missing is False

    def test_other_strings_are_kept(self):
        snapshot = normalize_payload(_payload(data={"a": ["na", "N/A", ""]}, coltypes=["character"]))
        assert [row[0] for row in snapshot.rows] == ["na", "N/A", ""]


# ============================================================================
# Types
# ============================================================================


class TestTypeMapping:
    """Raw R class tags map onto ColumnType."""

    @pytest.mark.parametrize("tag,expected", [
        ("numeric", ColumnType.NUMERIC),
        ("double", ColumnType.NUMERIC),
        ("integer", ColumnType.INTEGER),
        ("character", ColumnType.CHARACTER),
        ("factor", ColumnType.FACTOR),
        ("logical", ColumnType.LOGICAL),
        ("Date", ColumnType.DATE),
        ("POSIXct", ColumnType.DATETIME),
        ("POSIXlt", ColumnType.DATETIME_ALT),
        ("complex", ColumnType.COMPLEX),
        ("raw", ColumnType.RAW),
        ("list", ColumnType.LIST),
        ("difftime", ColumnType.UNKNOWN),
        ("", ColumnType.UNKNOWN),
    ])
    def test_single_tags(self, tag, expected):
        assert map_r_type(tag) == expected

    def test_compound_tag(self):
        assert map_r_type("c('POSIXct', 'POSIXt')") == ColumnType.DATETIME
        assert map_r_type('c("ordered", "factor")') == ColumnType.FACTOR

    def test_class_vector(self):
        assert map_r_type(["POSIXct", "POSIXt"]) == ColumnType.DATETIME

    def test_first_match_in_table_order_wins(self):
        assert map_r_type("integer numeric") == ColumnType.NUMERIC

    def test_none_is_unknown(self):
        assert map_r_type(None) == ColumnType.UNKNOWN

    def test_object_form_matches_array_form(self):
        as_array = normalize_payload(_payload(
            data={"mpg": [21]}, nrow=1, colnames=["mpg"], coltypes=["numeric"],
        ))
        as_object = normalize_payload(_payload(
            data={"mpg": [21]}, nrow=1, colnames=["mpg"], coltypes={"mpg": "numeric"},
        ))
        assert as_array.columns[0].declared_type == as_object.columns[0].declared_type == ColumnType.NUMERIC

    def test_missing_type_entries_are_unknown(self):
        snapshot = normalize_payload(_payload(
            data={"a": [1], "b": [2]},
            nrow=1,
            ncol=2,
            colnames=["a", "b"],
            coltypes=["integer"],
        ))
        assert snapshot.columns[1].declared_type == ColumnType.UNKNOWN

    def test_absent_coltypes(self):
        payload = _payload()
        del payload["coltypes"]
        assert normalize_payload(payload).columns[0].declared_type == ColumnType.UNKNOWN


class TestLabelsAndCells:

    def test_labels_attach_to_columns(self):
        snapshot = normalize_payload(_payload(labels={"a": "Respondent age"}))
        assert snapshot.columns[0].label == "Respondent age"

    def test_non_string_label_ignored(self):
        snapshot = normalize_payload(_payload(labels={"a": ["x", "y"]}))
        assert snapshot.columns[0].label is None

    def test_nested_values_become_text(self):
        snapshot = normalize_payload(_payload(data={"a": [[1, 2], {"k": 1}, True]}, coltypes=["list"]))
        assert snapshot.rows[0][0] == "[1,2]"
        assert snapshot.rows[1][0] == '{"k":1}'
        assert snapshot.rows[2][0] is True


# ============================================================================
# Validation
# ============================================================================


class TestValidation:

    def test_missing_name(self):
        payload = _payload()
        del payload["name"]
        with pytest.raises(MalformedPayload, match="missing name or data"):
            normalize_payload(payload)

    def test_empty_name(self):
        with pytest.raises(MalformedPayload):
            normalize_payload(_payload(name=""))

    def test_missing_data(self):
        payload = _payload()
        del payload["data"]
        with pytest.raises(MalformedPayload, match="missing name or data"):
            normalize_payload(payload)

    def test_colnames_length_mismatch(self):
        with pytest.raises(MalformedPayload, match="colnames"):
            normalize_payload(_payload(ncol=2))

    @pytest.mark.parametrize("bad", [-1, 1.5, "3", None, True])
    def test_invalid_nrow(self, bad):
        with pytest.raises(MalformedPayload, match="nrow"):
            normalize_payload(_payload(nrow=bad))

    def test_not_an_object(self):
        with pytest.raises(MalformedPayload):
            normalize_payload([1, 2, 3])


class TestSnapshot:

    def test_snapshot_is_immutable(self, mtcars_payload):
        snapshot = normalize_payload(mtcars_payload)
        with pytest.raises(dataclasses.FrozenInstanceError):
            snapshot.name = "other"

    def test_ragged_rows_rejected(self):
        columns = normalize_payload(_payload()).columns
        with pytest.raises(ValueError):
            TableSnapshot(
                name="x",
                columns=columns,
                rows=((1, 2),),
                total_row_count=1,
                total_column_count=1,
                captured_at_epoch_millis=0,
            )

    def test_truncated_requires_fewer_rows(self):
        columns = normalize_payload(_payload()).columns
        partial = TableSnapshot(
            name="x",
            columns=columns,
            rows=((1,),),
            total_row_count=10,
            total_column_count=1,
            captured_at_epoch_millis=0,
            truncated=True,
        )
        assert partial.truncated
        with pytest.raises(ValueError):
            TableSnapshot(
                name="x",
                columns=columns,
                rows=((1,),),
                total_row_count=1,
                total_column_count=1,
                captured_at_epoch_millis=0,
                truncated=True,
            )

    def test_to_dict_wire_form(self, mtcars_payload):
        data = normalize_payload(mtcars_payload, now_ms=42).to_dict()
        assert data["rows"] == [[21, 6], [22.8, 4]]
        assert data["columns"][0] == {
            "name": "mpg",
            "type": "numeric",
            "label": None,
            "index": 0,
            "hasNA": False,
        }
        assert data["totalRows"] == 2
        assert data["capturedAt"] == 42
