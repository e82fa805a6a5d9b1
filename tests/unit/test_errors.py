"""
Unit tests for error types.
"""

import pytest

from dataplane.tabledata.errors import (
    AlreadyExistsError,
    ConfigurationError,
    DataIntegrityError,
    DecodingError,
    MalformedChangeRecordError,
    MissingSequenceNumberError,
    NotFoundError,
    OptimisticLockingError,
    TableDataError,
    UnknownEntityTypeError,
    is_contention_error,
)

KEY = {"pk": "USER#GITHUB#8943", "sk": "LOGIN#alice"}


class TestErrors:
    """Tests for error construction and classification."""

    def test_not_found_message(self):
        error = NotFoundError("UserLogin", KEY)

        assert error.code == "NOT_FOUND"
        assert error.type_name == "UserLogin"
        assert error.primary_key == KEY
        assert "UserLogin" in str(error)
        assert "LOGIN#alice" in str(error)

    def test_already_exists_suggests_update(self):
        assert "switch to update" in str(AlreadyExistsError("UserLogin", KEY))

    def test_optimistic_locking_suggests_refresh(self):
        assert "refresh" in str(OptimisticLockingError("UserLogin", KEY))

    @pytest.mark.parametrize(
        "error,expected",
        [
            (AlreadyExistsError("UserLogin", KEY), True),
            (OptimisticLockingError("UserLogin", KEY), True),
            (NotFoundError("UserLogin", KEY), False),
            (DataIntegrityError("bad"), False),
            (ValueError("bad"), False),
        ],
    )
    def test_contention(self, error, expected):
        assert is_contention_error(error) is expected

    def test_malformed_record_is_decoding_and_integrity(self):
        error = MalformedChangeRecordError("no dynamodb section", details={"event_id": "1"})

        assert isinstance(error, DecodingError)
        assert isinstance(error, DataIntegrityError)
        assert error.code == "MALFORMED_CHANGE_RECORD"
        assert error.details == {"event_id": "1"}

    def test_missing_sequence_number(self):
        error = MissingSequenceNumberError("evt-1")

        assert isinstance(error, ConfigurationError)
        assert "ReportBatchItemFailures" in str(error)
        assert error.event_id == "evt-1"

    def test_all_inherit_base(self):
        for error in (
            NotFoundError("T", {}),
            DataIntegrityError("x"),
            UnknownEntityTypeError("T"),
            MissingSequenceNumberError(),
        ):
            assert isinstance(error, TableDataError)
