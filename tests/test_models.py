"""Tests for clamav_gateway.models."""

import pytest

from clamav_gateway.models import BatchOutcome, Result, ResultStatus, ScanVerdict, StreamVerdict


class TestStreamVerdict:
    def test_clean(self):
        v = StreamVerdict(verdict=ScanVerdict.CLEAN, reply="stream: OK", sent_bytes=10)
        assert v.clean is True
        assert v.signature == ""

    def test_signature(self):
        v = StreamVerdict(verdict=ScanVerdict.INFECTED, reply="stream: Win.Test.EICAR_HDB-1 FOUND")
        assert v.clean is False
        assert v.signature == "Win.Test.EICAR_HDB-1"
        assert v.sent_bytes == 0

    def test_error_has_no_signature(self):
        v = StreamVerdict(verdict=ScanVerdict.ERROR, reply="INSTREAM size limit exceeded. ERROR")
        assert v.clean is False
        assert v.signature == ""

    def test_frozen(self):
        v = StreamVerdict(verdict=ScanVerdict.CLEAN, reply="stream: OK")
        with pytest.raises(AttributeError):
            v.reply = "x"  # type: ignore[misc]


class TestResult:
    def test_to_dict_omits_empty_fields(self):
        assert Result(ResultStatus.SUCCESS, "clamav is ready").to_dict() == {
            "status": "success",
            "details": "clamav is ready",
        }
        assert Result(ResultStatus.FAILED).to_dict() == {"status": "failed"}

    def test_to_dict_with_id(self):
        r = Result(ResultStatus.VIRUS, "file contains a virus", id="upload")
        assert r.to_dict() == {"id": "upload", "status": "virus", "details": "file contains a virus"}


class TestBatchOutcome:
    def test_status_follows_last_add(self):
        outcome = BatchOutcome()
        outcome.add(Result(ResultStatus.SUCCESS), 200)
        outcome.add(Result(ResultStatus.FAILED), 502)
        assert outcome.status_code == 502
        assert len(outcome.to_dict()["results"]) == 2

    def test_empty(self):
        assert BatchOutcome().to_dict() == {"results": []}
        assert BatchOutcome().status_code == 200
