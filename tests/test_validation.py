from __future__ import annotations

from datetime import date, datetime

import pytest

from app import (
    env_log_level,
    parse_local_datetime,
    parse_report_date,
    read_report_form,
    validate_report,
)


def _fields(**overrides):
    fields = {
        "report_date": date(2024, 1, 1),
        "title": "Daily",
        "content": "did work",
        "start_time": datetime(2024, 1, 1, 9, 0),
        "finish_time": datetime(2024, 1, 1, 18, 0),
    }
    fields.update(overrides)
    return fields


def test_valid_report_has_no_errors():
    assert validate_report(_fields()) == []


def test_start_equal_to_finish_is_allowed():
    same = datetime(2024, 1, 1, 9, 0)
    assert validate_report(_fields(start_time=same, finish_time=same)) == []


def test_finish_before_start_is_rejected():
    errors = validate_report(_fields(finish_time=datetime(2024, 1, 1, 8, 0)))
    assert errors == ["終了時刻は開始時刻以降を指定してください。"]


def test_missing_fields_are_reported_in_order():
    errors = validate_report(
        _fields(report_date=None, title="  ", content="", start_time=None, finish_time=None)
    )
    assert errors == [
        "日付を入力してください。",
        "タイトルを入力してください。",
        "内容を入力してください。",
        "開始時刻を入力してください。",
        "終了時刻を入力してください。",
    ]


def test_title_longer_than_limit_is_rejected():
    errors = validate_report(_fields(title="あ" * 256))
    assert errors == ["タイトルは255文字以内で入力してください。"]


def test_already_reported_fields_are_not_repeated():
    errors = validate_report(_fields(start_time=None), reported={"start_time"})
    assert errors == []


def test_parse_local_datetime_uses_form_pattern():
    assert parse_local_datetime("2024-01-01T09:30") == datetime(2024, 1, 1, 9, 30)
    assert parse_local_datetime("  ") is None
    assert parse_local_datetime(None) is None


def test_parse_local_datetime_rejects_other_formats():
    with pytest.raises(ValueError, match="開始時刻の形式が不正です"):
        parse_local_datetime("2024/01/01 09:30", "開始時刻")


def test_parse_report_date():
    assert parse_report_date("2024-02-29") == date(2024, 2, 29)
    assert parse_report_date("") is None
    with pytest.raises(ValueError):
        parse_report_date("2024-02-30")


def test_read_report_form_defaults_empty_date(app):
    data = {
        "report_date": "",
        "title": "Daily",
        "content": "did work",
        "start_time": "2024-01-01T09:00",
        "finish_time": "2024-01-01T18:00",
    }
    with app.test_request_context("/reports", method="POST", data=data):
        fields, raw, errors, reported = read_report_form(default_date=date(2024, 5, 1))

    assert errors == []
    assert reported == set()
    assert fields["report_date"] == date(2024, 5, 1)
    assert fields["start_time"] == datetime(2024, 1, 1, 9, 0)
    assert raw == data


def test_read_report_form_collects_parse_errors(app):
    data = {
        "report_date": "yesterday",
        "title": "Daily",
        "content": "did work",
        "start_time": "9:00",
        "finish_time": "2024-01-01T18:00",
    }
    with app.test_request_context("/reports", method="POST", data=data):
        fields, raw, errors, reported = read_report_form()

    assert errors == [
        "日付の形式が不正です: yesterday",
        "開始時刻の形式が不正です: 9:00",
    ]
    assert reported == {"report_date", "start_time"}
    assert fields["report_date"] is None
    assert fields["start_time"] is None
    assert validate_report(fields, reported) == []


def test_env_log_level_accepts_known_names(monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "debug")
    assert env_log_level("LOG_LEVEL") == "DEBUG"


def test_env_log_level_falls_back_on_unknown_names(monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "loud")
    assert env_log_level("LOG_LEVEL") == "INFO"
    monkeypatch.delenv("LOG_LEVEL")
    assert env_log_level("LOG_LEVEL") == "INFO"
