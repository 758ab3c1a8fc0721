"""
Tests for the QuickSight RLS CSV dialect:
  - serialization (field selection, wildcards, quoting, ordering)
  - parsing (dialect detection, name resolution, diagnostics)
  - wildcard consolidation and round trips

Run from project root:
  python -m pytest rlsmanager/codec/tests/test_csv_codec.py -v
"""

import random

import pytest

from rlsmanager.codec.csv_codec import (
    consolidate_wildcards,
    csv_header_columns,
    detect_format,
    generate_csv,
    generate_csv_for_data_set,
    parse_csv_line,
    parse_rls_csv,
)
from rlsmanager.codec.field_types import non_date_fields, parse_field_types
from rlsmanager.data_classes import CsvFormat, DataSetRecord, Permission, Principal
from rlsmanager.errors import ValidationError

DS = "arn:aws:quicksight:eu-west-1:111122223333:dataset/sales"
ALICE = "arn:aws:quicksight:eu-west-1:111122223333:user/default/alice"
BOB = "arn:aws:quicksight:eu-west-1:111122223333:user/default/bob"
ADMINS = "arn:aws:quicksight:eu-west-1:111122223333:group/default/admins"

FIELDS = {"region": "STRING", "dept": "STRING"}


def _perm(arn, field, values):
    return Permission(data_set_arn=DS, user_group_arn=arn, field=field, rls_values=values)


def _triples(perms):
    return {(p.user_group_arn, p.field, p.rls_values) for p in perms}


# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------

def test_parse_csv_line_honours_quotes():
    assert parse_csv_line('a,"b,c",d') == ["a", "b,c", "d"]
    assert parse_csv_line("a,,") == ["a", "", ""]
    assert parse_csv_line("") == [""]


def test_csv_header_columns():
    assert csv_header_columns("UserARN,GroupARN, region ,dept\nx,y,z,w") == ["UserARN", "GroupARN", "region", "dept"]
    assert csv_header_columns("") == []


# ---------------------------------------------------------------------------
# Serialize
# ---------------------------------------------------------------------------

def test_non_wildcard_field_keeps_value_and_wildcard_field_is_empty():
    csv = generate_csv([_perm(ALICE, "region", "US"), _perm(ALICE, "dept", "*")], FIELDS)
    assert csv == f"UserARN,GroupARN,region,dept\n{ALICE},,US,"


def test_full_wildcard_principal_renders_all_cells_empty():
    consolidated = consolidate_wildcards([_perm(ADMINS, "region", "*"), _perm(ADMINS, "dept", "*")], FIELDS)
    assert len(consolidated) == 1
    assert (consolidated[0].field, consolidated[0].rls_values) == ("*", "*")

    csv = generate_csv(consolidated, FIELDS)
    assert csv == f"UserARN,GroupARN,region,dept\n,{ADMINS},,"


def test_view_all_principal_is_empty_even_next_to_restricted_fields():
    csv = generate_csv([_perm(ALICE, "*", "*"), _perm(BOB, "region", "EU")], FIELDS)
    lines = csv.split("\n")
    assert lines[0] == "UserARN,GroupARN,region"
    assert lines[1] == f"{ALICE},,"
    assert lines[2] == f"{BOB},,EU"


def test_date_fields_are_never_in_the_header():
    field_types = {"signup_date": "DATE", "country": "STRING"}
    csv = generate_csv([_perm(ALICE, "signup_date", "2024-01-01"), _perm(ALICE, "country", "IT")], field_types)
    header = csv.split("\n")[0]
    assert "signup_date" not in header
    assert header == "UserARN,GroupARN,country"


def test_wildcard_only_permissions_use_every_non_date_field():
    field_types = {"region": "STRING", "created": "TIMESTAMP", "dept": "STRING"}
    csv = generate_csv([_perm(ALICE, "*", "*")], field_types)
    assert csv.split("\n")[0] == "UserARN,GroupARN,region,dept"


def test_multi_value_cell_is_quoted():
    csv = generate_csv([_perm(ALICE, "region", "US,CA,MX")], FIELDS)
    assert csv.split("\n")[1] == f'{ALICE},,"US,CA,MX"'


def test_rows_sorted_by_principal_and_output_is_deterministic():
    perms = [
        _perm(BOB, "region", "EU"),
        _perm(ADMINS, "dept", "HR"),
        _perm(ALICE, "region", "US"),
        _perm(ALICE, "dept", "IT"),
    ]
    expected = generate_csv(perms, FIELDS)
    rows = expected.split("\n")[1:]
    assert [r.split(",")[0] or r.split(",")[1] for r in rows] == sorted([ADMINS, ALICE, BOB])

    rnd = random.Random(7)
    for _ in range(5):
        shuffled = list(perms)
        rnd.shuffle(shuffled)
        assert generate_csv(shuffled, FIELDS) == expected


def test_fields_unknown_to_the_dataset_follow_known_ones_sorted():
    csv = generate_csv([_perm(ALICE, "zone", "A"), _perm(ALICE, "area", "B"), _perm(ALICE, "dept", "C")], FIELDS)
    assert csv.split("\n")[0] == "UserARN,GroupARN,dept,area,zone"


def test_empty_permission_set_renders_nothing():
    assert generate_csv([], FIELDS) == ""


def test_generate_csv_for_data_set_reads_store(catalog):
    catalog.create_data_set(DataSetRecord(data_set_arn=DS, data_set_id="sales", field_types=FIELDS))
    catalog.create_permission(_perm(ALICE, "region", "US"))
    assert generate_csv_for_data_set(catalog, DS) == f"UserARN,GroupARN,region\n{ALICE},,US"


def test_generate_csv_for_unknown_data_set_raises(catalog):
    with pytest.raises(ValidationError):
        generate_csv_for_data_set(catalog, DS)


# ---------------------------------------------------------------------------
# Parse
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("header,expected", [
    ("UserARN,GroupARN,region", CsvFormat.ARN),
    ("userarn,GROUPARN,region", CsvFormat.ARN),
    ("GroupName,region", CsvFormat.GROUP_NAME),
    ("group,region", CsvFormat.GROUP_NAME),
    ("UserName,region", CsvFormat.USER_NAME),
    ("USER,region", CsvFormat.USER_NAME),
])
def test_dialect_detection(header, expected):
    fmt, _ = detect_format(header.split(","))
    assert fmt is expected


def test_unrecognized_first_column_is_a_hard_error():
    result = parse_rls_csv("Email,region\nalice@example.com,US")
    assert result.format is CsvFormat.UNKNOWN
    assert result.permissions == []
    assert result.errors == [
        "Unrecognized CSV format. First column should be 'UserARN', 'GroupARN', "
        "'GroupName', or 'UserName'. Found: 'Email'"
    ]


def test_user_arn_alone_without_group_column_is_not_the_arn_dialect():
    result = parse_rls_csv(f"UserARN,region\n{ALICE},US")
    assert result.format is CsvFormat.UNKNOWN
    assert result.errors


def test_header_only_is_an_error():
    result = parse_rls_csv("UserARN,GroupARN,region\n\n")
    assert result.errors == ["CSV must have at least a header row and one data row"]


def test_no_field_columns_is_an_error():
    result = parse_rls_csv(f"UserARN,GroupARN\n{ALICE},")
    assert result.errors == ["No field columns found in CSV"]


def test_arn_dialect_parses_identity_and_empty_cells():
    result = parse_rls_csv(f"UserARN,GroupARN,region,dept\n{ALICE},,US,\n,{ADMINS},,HR")
    assert result.ok
    assert result.format is CsvFormat.ARN
    by_key = {(p.user_group_arn, p.field): p for p in result.permissions}
    assert by_key[(ALICE, "region")].rls_values == "US"
    assert by_key[(ALICE, "dept")].rls_values == "*"
    assert by_key[(ALICE, "region")].user_group_name == "alice"
    assert by_key[(ALICE, "region")].user_group_type == "USER"
    assert by_key[(ADMINS, "dept")].user_group_type == "GROUP"
    assert by_key[(ADMINS, "dept")].user_group_name == "admins"


def test_arn_dialect_row_with_both_identities_empty_is_skipped():
    result = parse_rls_csv(f"UserARN,GroupARN,region\n,,US\n{ALICE},,EU")
    assert "Row 2: Both UserARN and GroupARN are empty" in result.warnings
    assert _triples(result.permissions) == {(ALICE, "region", "EU")}
    assert result.skipped_rows == 1


def test_arn_dialect_row_with_both_identities_set_is_counted_as_skipped():
    result = parse_rls_csv(f"UserARN,GroupARN,region\n{ALICE},{ADMINS},US\n,{ADMINS},EU")
    assert "Row 2: Both UserARN and GroupARN are set" in result.warnings
    assert result.skipped_rows == 1
    assert _triples(result.permissions) == {(ADMINS, "region", "EU")}


def test_short_row_is_skipped_with_warning():
    result = parse_rls_csv(f"UserARN,GroupARN,region,dept\n{ALICE},,US")
    assert "Row 2: Not enough columns (expected 4, got 3)" in result.warnings
    assert result.skipped_rows == 1
    assert result.errors == ["No valid permissions found in CSV"]


def test_name_dialect_resolves_case_insensitively_and_flags_unknown_names():
    users = [Principal(name="Alice", arn=ALICE)]
    result = parse_rls_csv("UserName,region\nalice,US\nbob,EU", users=users)
    assert result.format is CsvFormat.USER_NAME
    assert "Row 3: Could not find user 'bob' in QuickSight" in result.warnings

    resolved = [p for p in result.permissions if p.is_resolved]
    unresolved = [p for p in result.permissions if not p.is_resolved]
    assert [(p.user_group_arn, p.user_group_name, p.rls_values) for p in resolved] == [(ALICE, "Alice", "US")]
    assert [(p.user_group_arn, p.user_group_name) for p in unresolved] == [("", "bob")]


def test_group_dialect_empty_name_is_skipped():
    groups = [Principal(name="admins", arn=ADMINS)]
    result = parse_rls_csv("GroupName,region\n,US\nADMINS,EU", groups=groups)
    assert "Row 2: Empty group name" in result.warnings
    assert _triples(result.permissions) == {(ADMINS, "region", "EU")}


def test_date_field_in_csv_is_a_warning_not_an_error():
    result = parse_rls_csv(f"UserARN,GroupARN,created\n{ALICE},,2024-01-01", field_types={"created": "DATE"})
    assert result.ok
    assert result.warnings[0].startswith("Date fields detected in CSV: created (DATE).")
    assert _triples(result.permissions) == {(ALICE, "created", "2024-01-01")}


def test_quoted_multi_value_parses_back():
    csv = generate_csv([_perm(ALICE, "region", "US,CA,MX")], FIELDS)
    result = parse_rls_csv(csv)
    assert _triples(result.permissions) == {(ALICE, "region", "US,CA,MX")}
    assert result.permissions[0].rls_values.split(",") == ["US", "CA", "MX"]


def test_all_wildcard_row_is_consolidated_on_parse():
    result = parse_rls_csv(f"UserARN,GroupARN,region,dept\n,{ADMINS},,\n{ALICE},,US,")
    assert _triples(result.permissions) == {
        (ADMINS, "*", "*"),
        (ALICE, "region", "US"),
        (ALICE, "dept", "*"),
    }


def test_unresolved_names_are_not_merged_together():
    csv = "UserName,region\nghost1,\nghost2,EU"
    result = parse_rls_csv(csv)
    assert {(p.user_group_name, p.field, p.rls_values) for p in result.permissions} == {
        ("ghost1", "*", "*"),
        ("ghost2", "region", "EU"),
    }


# ---------------------------------------------------------------------------
# Round trips
# ---------------------------------------------------------------------------

def test_parse_of_serialize_returns_the_same_triples():
    perms = [
        _perm(ALICE, "region", "US"),
        _perm(ALICE, "dept", "IT"),
        _perm(BOB, "region", "EU,APAC"),
        _perm(BOB, "dept", "*"),
        _perm(ADMINS, "*", "*"),
    ]
    result = parse_rls_csv(generate_csv(perms, FIELDS), field_types=FIELDS)
    assert result.ok and not result.warnings
    assert _triples(result.permissions) == _triples(perms)


def test_consolidation_is_idempotent_through_a_round_trip():
    consolidated = consolidate_wildcards(
        [_perm(ADMINS, "region", "*"), _perm(ADMINS, "dept", "*"), _perm(ALICE, "region", "US"), _perm(ALICE, "dept", "*")],
        FIELDS,
    )
    first = parse_rls_csv(generate_csv(consolidated, FIELDS))
    second = parse_rls_csv(generate_csv(
        [_perm(p.user_group_arn, p.field, p.rls_values) for p in first.permissions], FIELDS,
    ))
    assert _triples(first.permissions) == _triples(consolidated)
    assert _triples(second.permissions) == _triples(first.permissions)


def test_field_types_accept_dict_or_json_text():
    assert parse_field_types('{"region": "STRING", "created": "DATE"}') == {"region": "STRING", "created": "DATE"}
    assert parse_field_types({"region": "STRING"}) == {"region": "STRING"}
    assert parse_field_types(None) == {}
    assert non_date_fields({"region": "STRING", "created": "DATE", "ts": "timestamp"}) == ["region"]


@pytest.mark.parametrize("raw", ["{not json", '["region"]'])
def test_malformed_field_types_are_validation_errors(raw):
    with pytest.raises(ValidationError):
        parse_field_types(raw)
