import pytest

from tubeshelf.progress import PercentProgressParser, ProgressUpdate


@pytest.fixture
def parser():
    return PercentProgressParser()


def test_parses_a_full_progress_line(parser):
    line = '[download]  42.3% of ~120.50MiB at    2.31MiB/s ETA 00:31'
    assert parser.parse(line) == ProgressUpdate(42.3, '2.31MiB/s', '00:31')


def test_parses_final_line_without_eta(parser):
    line = '[download] 100.0% of 120.50MiB in 00:00:52 at 2.29MiB/s'
    assert parser.parse(line) == ProgressUpdate(100.0, '2.29MiB/s', None)


def test_unknown_speed_is_kept_verbatim(parser):
    update = parser.parse('[download]   0.0% of 10.00MiB at  Unknown B/s ETA Unknown')
    assert update.percent == 0.0
    assert update.speed == 'Unknown'
    assert update.eta == 'Unknown'


@pytest.mark.parametrize('line', [
    '[youtube] dQw4w9WgXcQ: Downloading webpage',
    '[Merger] Merging formats into "out.mp4"',
    '[download] 42% of 10MiB',
    '',
])
def test_lines_without_decimal_percentage_are_ignored(parser, line):
    assert parser.parse(line) is None


def test_percentage_is_clamped(parser):
    assert parser.parse('[download] 100.5% done').percent == 100.0
