"""Tests for worksheet schemas and header resolution."""

import pytest

from edcrm.services.schema import (
    ADD,
    CLEAR,
    DELETE,
    SCHEMAS,
    SchemaMismatchError,
    UPDATE,
    build_row,
    column_letter,
    get_schema,
    get_worksheet_map,
    resolve_columns,
)


class TestColumnLetter:
    @pytest.mark.parametrize("index, letters", [(0, "A"), (8, "I"), (25, "Z"), (26, "AA"), (27, "AB"), (701, "ZZ"), (702, "AAA")])
    def test_letters(self, index, letters):
        assert column_letter(index) == letters

    def test_negative(self):
        with pytest.raises(ValueError):
            column_letter(-1)

    def test_schema_field_letters(self):
        assert SCHEMAS["schools"].column_letter("spoke_to_cover_manager") == "I"
        assert SCHEMAS["opportunities"].column_letter("notes") == "F"
        assert SCHEMAS["call_logs"].column_letter("transcript") == "J"

    def test_unknown_field(self):
        with pytest.raises(KeyError):
            SCHEMAS["schools"].column_letter("favourite_colour")


class TestResolveColumns:
    def test_blank_header_uses_declared_order(self):
        schema = SCHEMAS["notes"]
        assert resolve_columns(schema, None) == schema.positional()
        assert resolve_columns(schema, ["", None, ""]) == schema.positional()

    def test_reordered_header(self):
        header = ["Note", "School Name", "Account Manager", "Cover Manager", "Contact 2", "Date"]
        columns = resolve_columns(SCHEMAS["notes"], header)
        assert columns["note"] == 0
        assert columns["school_name"] == 1
        assert columns["date"] == 5

    def test_alias_and_loose_matching(self):
        header = ["school", "account_manager", "COVER MANAGER", "contact 2", "date", "notes"]
        columns = resolve_columns(SCHEMAS["notes"], header)
        assert columns == SCHEMAS["notes"].positional()

    def test_missing_column_falls_back(self):
        header = ["School Name", "Account Manager", "Cover Manager", "Contact 2", "Date"]
        columns = resolve_columns(SCHEMAS["notes"], header)
        assert columns["note"] == 5

    def test_strict_raises(self):
        header = ["School Name", "Account Manager", "Cover Manager", "Contact 2", "Date"]
        with pytest.raises(SchemaMismatchError) as excinfo:
            resolve_columns(SCHEMAS["notes"], header, strict=True)
        assert excinfo.value.missing == ["note"]
        assert excinfo.value.worksheet == "Notes"

    def test_reserved_columns_are_not_required(self):
        schema = SCHEMAS["tasks"]
        header = [column.header for column in schema.columns if not column.reserved]
        header.insert(11, "")
        columns = resolve_columns(schema, header, strict=True)
        assert columns["reminder_date"] == 11
        assert columns["due_time"] == 12


class TestBuildRow:
    def test_unmapped_is_none_and_reserved_blank(self):
        row = build_row(SCHEMAS["tasks"], {"school_name": "Oakfield", "task_description": "Call"})
        assert len(row) == SCHEMAS["tasks"].width
        assert row[0] == "Oakfield"
        assert row[11] == ""
        assert row[1] is None

    def test_custom_column_map(self):
        columns = {"school_name": 2, "account_manager": 0, "cover_manager": 1, "contact2": 3, "date": 4, "note": 5}
        row = build_row(SCHEMAS["notes"], {"school_name": "Oakfield", "note": "Hi"}, columns)
        assert row == [None, None, "Oakfield", None, None, "Hi"]

    def test_opportunity_legacy_columns_blanked(self):
        row = build_row(SCHEMAS["opportunities"], {"name": "Cover"})
        assert row[6:10] == ["", "", "", ""]


class TestRegistry:
    def test_worksheet_names(self):
        worksheets = get_worksheet_map()
        assert worksheets["tasks"] == "Task"
        assert worksheets["call_logs"] == "Call Log"
        assert worksheets["job_alerts"] == "Jobs"

    def test_operations(self):
        assert SCHEMAS["schools"].allows(UPDATE)
        assert not SCHEMAS["schools"].allows(DELETE)
        assert SCHEMAS["email_templates"].allows(CLEAR)
        assert not SCHEMAS["announcements"].allows(DELETE)
        assert not SCHEMAS["users"].allows(ADD)

    def test_unknown_sheet(self):
        with pytest.raises(KeyError):
            get_schema("invoices")
