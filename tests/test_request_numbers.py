from datetime import datetime

import pytest

from hrflow.utils.request_number import is_valid_request_number, next_request_number, parse_request_number


def test_counter_per_code_company_and_year(db):
    jan = datetime(2026, 1, 2)
    numbers = [
        next_request_number(db, "LEAVE", 1, jan),
        next_request_number(db, "leave", 1, jan),
        next_request_number(db, "LEAVE", 2, jan),
        next_request_number(db, "LEAVE", 1, datetime(2027, 1, 1)),
    ]
    db.commit()

    assert numbers == [
        "WFR-LEAVE-2026-00001",
        "WFR-LEAVE-2026-00002",
        "WFR-LEAVE-2026-00001",
        "WFR-LEAVE-2027-00001",
    ]


def test_parse_round_trip():
    assert parse_request_number("WFR-SHORT_LEAVE-2026-00042") == {
        "workflow_code": "SHORT_LEAVE", "year": 2026, "sequence": 42,
    }
    assert parse_request_number("WFR-WFH-2026-123456")["sequence"] == 123456


@pytest.mark.parametrize("bad", ["", "WFR-LEAVE-26-00001", "REQ-LEAVE-2026-00001", "WFR-LEAVE-2026-001"])
def test_invalid_numbers(bad):
    assert not is_valid_request_number(bad)
    with pytest.raises(ValueError):
        parse_request_number(bad)
