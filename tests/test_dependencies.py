import os
import sys

import pytest

from tubeshelf.dependencies import DependencyManager, search_path, subprocess_env


@pytest.mark.skipif(sys.platform == 'win32', reason="POSIX search directories")
def test_search_path_appends_common_locations(monkeypatch):
    monkeypatch.setenv('HOME', '/home/someone')

    extended = search_path('/usr/bin').split(os.pathsep)

    assert extended[0] == '/usr/bin'
    assert '/opt/homebrew/bin' in extended or '/usr/local/bin' in extended
    assert '/home/someone/.local/bin' in extended
    assert len(extended) == len(set(extended))


def test_subprocess_env_extends_path(monkeypatch):
    monkeypatch.setenv('TUBESHELF_MARKER', '1')
    env = subprocess_env()
    assert env['TUBESHELF_MARKER'] == '1'
    assert env['PATH'] == search_path()


def test_override_wins(tmp_path):
    tool = tmp_path / 'custom-yt-dlp'
    tool.write_text('')

    dependencies = DependencyManager(yt_dlp_override=tool)

    assert dependencies.find_yt_dlp() == tool
    assert dependencies.yt_dlp_command() == str(tool)


def test_missing_override_falls_back(tmp_path, monkeypatch):
    monkeypatch.setenv('PATH', '')
    monkeypatch.setattr('tubeshelf.dependencies.shutil.which', lambda name, path=None: None)

    dependencies = DependencyManager(yt_dlp_override=tmp_path / 'missing')

    assert dependencies.find_yt_dlp() is None
    assert dependencies.yt_dlp_command() == 'yt-dlp'


@pytest.mark.skipif(sys.platform == 'win32', reason="executables carry an .exe suffix")
def test_ffmpeg_next_to_yt_dlp_is_preferred(tmp_path, monkeypatch):
    monkeypatch.setattr('tubeshelf.dependencies.shutil.which', lambda name, path=None: None)
    (tmp_path / 'yt-dlp').write_text('')
    (tmp_path / 'ffmpeg').write_text('')

    dependencies = DependencyManager(yt_dlp_override=tmp_path / 'yt-dlp')
    dependencies.find_yt_dlp()

    assert dependencies.find_ffmpeg() == tmp_path / 'ffmpeg'


async def test_get_version(make_downloader):
    tool = make_downloader("print('2024.08.06')\nprint('extra line')", name='yt-dlp')
    assert await DependencyManager().get_version(tool) == '2024.08.06'


async def test_get_version_of_missing_tool(tmp_path):
    assert await DependencyManager().get_version(tmp_path / 'nothing') == 'Not found'
    assert await DependencyManager().get_version(None) == 'Not found'
