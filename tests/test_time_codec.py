import pytest

from task_timer.time_codec import (
    DurationError,
    InvalidFormat,
    InvalidRange,
    add_seconds,
    format_duration,
    is_valid_duration,
    parse_duration,
)


@pytest.mark.parametrize(
    "text, expected",
    [
        ("00:00:00", 0),
        ("01:30:45", 5445),
        ("1:2:3", 3723),
        ("100:00:00", 360000),
        ("01:01:01", 3661),
        ("24:00:00", 86400),
    ],
)
def test_parse_duration(text, expected):
    assert parse_duration(text) == expected


@pytest.mark.parametrize(
    "seconds, expected",
    [
        (0, "00:00:00"),
        (3661, "01:01:01"),
        (360000, "100:00:00"),
        (59.6, "00:01:00"),
    ],
)
def test_format_duration(seconds, expected):
    assert format_duration(seconds) == expected


def test_format_rejects_negative():
    with pytest.raises(InvalidRange):
        format_duration(-1)


@pytest.mark.parametrize(
    "text, error, message",
    [
        ("", InvalidFormat, "Invalid time string format"),
        ("invalid", InvalidFormat, "Time string must be in HH:MM:SS format"),
        ("12:34", InvalidFormat, "Time string must be in HH:MM:SS format"),
        ("1:2:3:4", InvalidFormat, "Time string must be in HH:MM:SS format"),
        ("aa:bb:cc", InvalidFormat, "Invalid time values"),
        ("01:60:00", InvalidRange, "Invalid time range"),
        ("01:00:60", InvalidRange, "Invalid time range"),
        ("-1:00:00", InvalidRange, "Invalid time range"),
    ],
)
def test_parse_errors(text, error, message):
    with pytest.raises(error, match=message):
        parse_duration(text)


def test_parse_rejects_non_string():
    with pytest.raises(DurationError):
        parse_duration(None)  # type: ignore[arg-type]


@pytest.mark.parametrize(
    "text, delta, expected",
    [
        ("00:00:59", 1, "00:01:00"),
        ("01:59:59", 3601, "03:00:00"),
        ("23:59:30", 30, "24:00:00"),
        ("00:10:00", -30, "00:10:00"),
        ("00:01:00", -30, "00:01:00"),
    ],
)
def test_add_seconds(text, delta, expected):
    assert add_seconds(text, delta) == expected


@pytest.mark.parametrize("seconds", [0, 1, 59, 60, 3599, 3600, 86399, 359999, 360000, 1_234_567])
def test_seconds_survive_format_and_parse(seconds):
    assert parse_duration(format_duration(seconds)) == seconds


def test_format_parse_agree_for_valid_text():
    for text in ("00:00:01", "12:34:56", "99:59:59"):
        assert format_duration(parse_duration(text)) == text


def test_is_valid_duration():
    assert is_valid_duration("00:05:00")
    assert is_valid_duration("123:00:00")
    assert not is_valid_duration("1:2:3")
    assert not is_valid_duration("00:61:00")
    assert not is_valid_duration(None)
