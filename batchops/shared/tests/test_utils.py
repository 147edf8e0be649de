from datetime import date

import pytest

from batchops.shared.utils import ConfigError, as_bool, as_int, as_positive_int, chunked, parse_date, setting


def test_chunked_splits_1200_into_500_500_200():
    chunks = list(chunked(list(range(1200)), 500))
    assert [len(c) for c in chunks] == [500, 500, 200]
    assert [x for c in chunks for x in c] == list(range(1200))


def test_setting_prefers_event_over_env(monkeypatch):
    monkeypatch.setenv("S3_BUCKET", "from-env")
    assert setting({"bucket": "from-event"}, "bucket", "S3_BUCKET") == "from-event"
    assert setting({}, "bucket", "S3_BUCKET") == "from-env"


def test_setting_required_missing_raises(monkeypatch):
    monkeypatch.delenv("FIREHOSE_ARN", raising=False)
    with pytest.raises(ConfigError, match="FIREHOSE_ARN"):
        setting({}, "firehose_arn", "FIREHOSE_ARN")


def test_setting_optional_allows_empty_env(monkeypatch):
    monkeypatch.setenv("S3_PREFIX", "")
    assert setting({}, "prefix", "S3_PREFIX", "") == ""
    monkeypatch.delenv("S3_PREFIX")
    assert setting({}, "prefix", "S3_PREFIX", "errors/") == "errors/"


def test_parse_date_and_numbers():
    assert parse_date("2025-12-25", "START_DATE") == date(2025, 12, 25)
    with pytest.raises(ConfigError, match="START_DATE"):
        parse_date("25/12/2025", "START_DATE")
    assert as_positive_int("20", "CONCURRENCY") == 20
    with pytest.raises(ConfigError):
        as_positive_int("0", "CONCURRENCY")
    with pytest.raises(ConfigError):
        as_positive_int("many", "CONCURRENCY")
    assert as_bool("TRUE") is True
    assert as_bool("false") is False


def test_as_int_allows_zero_but_not_negative():
    assert as_int("0", "MAX_RECORDS") == 0
    assert as_int("25", "MAX_RECORDS") == 25
    with pytest.raises(ConfigError, match="MAX_RECORDS must be >= 0"):
        as_int("-1", "MAX_RECORDS")
    with pytest.raises(ConfigError, match="must be an integer"):
        as_int("ten", "MAX_RECORDS")
