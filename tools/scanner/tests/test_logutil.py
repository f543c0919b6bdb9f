import re

import pytest

import logutil


@pytest.fixture(autouse=True)
def _reset_level():
    yield
    logutil.set_level("INFO")


def test_format_line_sorted_fields():
    line = logutil.format_line("INFO", "candidate", {"of": 3, "endpoint": "[2001:db8::1]:443", "idx": 1})
    assert re.match(r"^time=\S+ level=INFO msg=\"candidate\" ", line)
    assert line.endswith("endpoint=[2001:db8::1]:443 idx=1 of=3")


def test_format_line_quotes_and_skips():
    line = logutil.format_line(
        "ERROR", 'said "no"', {"err": "connection refused", "empty": "", "none": None},
    )
    assert 'msg="said \\"no\\""' in line
    assert 'err="connection refused"' in line
    assert "empty=" not in line
    assert "none=" not in line


def test_embedded_timestamp_stripped():
    line = logutil.format_line("INFO", "2025/09/01 11:09:07 dial udp failed", None)
    assert 'msg="dial udp failed"' in line


def test_output_is_literal(capsys):
    logutil.warn("bad cidr", cidr="[bold]x[/bold]")
    out = capsys.readouterr().out
    assert "level=WARN" in out
    assert "cidr=[bold]x[/bold]" in out
    assert out.count("\n") == 1


def test_level_threshold(capsys):
    logutil.set_level("warn")
    logutil.info("hidden")
    logutil.error("shown")
    out = capsys.readouterr().out
    assert "hidden" not in out
    assert 'msg="shown"' in out


def test_unknown_level():
    with pytest.raises(ValueError):
        logutil.set_level("LOUD")
