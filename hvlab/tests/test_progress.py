"""Tests for progress marker parsing."""

from hvlab.progress import ProgressEvent, ProgressParser, parse_progress


def test_percent_prefix():
    assert parse_progress("[42%] Creating disk") == ProgressEvent(42, "Creating disk")


def test_progress_marker_keeps_full_line():
    event = parse_progress("Installing roles [PROGRESS:60]")

    assert event.percent == 60
    assert event.message == "Installing roles [PROGRESS:60]"


def test_out_of_range_ignored():
    assert parse_progress("[142%] nope") is None
    assert parse_progress("[PROGRESS:101]") is None


def test_plain_line_has_no_progress():
    assert parse_progress("Creating VM DC01") is None
    assert parse_progress("Step [42%] in the middle") is None


def test_boundaries():
    assert parse_progress("[0%] start").percent == 0
    assert parse_progress("[100%] done").percent == 100


class TestProgressParser:
    def test_logs_every_line_and_parses_stdout(self):
        logged = []
        progress = []
        parser = ProgressParser(lambda line, err: logged.append((line, err)), progress.append)

        parser("[10%] Creating switch", False)
        parser("plain output", False)
        parser("[20%] from stderr", True)

        assert logged == [
            ("[10%] Creating switch", False),
            ("plain output", False),
            ("[20%] from stderr", True),
        ]
        assert progress == [ProgressEvent(10, "Creating switch")]
