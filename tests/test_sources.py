"""Tests for the adb logcat source against a stand-in adb script"""

import stat
import subprocess
import sys

import pytest

from devinsight import ConnectionStatus, LogcatSource, SourceUnavailable

pytestmark = pytest.mark.skipif(sys.platform == 'win32', reason='needs /bin/sh')

LINE = '03-21 10:23:45.678  1234  5678 E MyTag: Something broke'


def _fake_adb(tmp_path, state_rc: int = 0, clear_rc: int = 0,
              follow: bool = False):
    """Write an executable adb stand-in that records its arguments"""
    calls  = tmp_path / 'calls.txt'
    script = tmp_path / 'adb'
    logcat = 'exec sleep 30' if follow else f'echo "{LINE}"'
    script.write_text(
        '#!/bin/sh\n'
        f'echo "$*" >> "{calls}"\n'
        'case "$*" in\n'
        f'  *get-state) exit {state_rc} ;;\n'
        f'  *"logcat -c") exit {clear_rc} ;;\n'
        f'  *logcat) {logcat} ;;\n'
        'esac\n')
    script.chmod(script.stat().st_mode | stat.S_IXUSR)
    return script, calls


class TestOpen:
    """Spawning `adb logcat`"""

    def test_missing_adb(self, tmp_path) -> None:
        """A missing adb binary is reported as an unavailable source"""
        src = LogcatSource(adb=str(tmp_path / 'no-such-adb'))

        with pytest.raises(SourceUnavailable):
            src.open()

    def test_streams_output(self, tmp_path) -> None:
        adb, calls = _fake_adb(tmp_path)
        with LogcatSource(adb=str(adb)) as src:
            data = src.open().read()

        assert data.decode('utf-8').strip() == LINE
        assert calls.read_text().splitlines() == ['logcat']

    def test_clear_runs_before_logcat(self, tmp_path) -> None:
        adb, calls = _fake_adb(tmp_path)
        with LogcatSource(serial='emulator-5554', clear=True, adb=str(adb)) as src:
            src.open().read()

        assert calls.read_text().splitlines() == [
            '-s emulator-5554 logcat -c',
            '-s emulator-5554 logcat',
        ]

    def test_failed_clear(self, tmp_path) -> None:
        """A non-zero `logcat -c` stops startup"""
        adb, calls = _fake_adb(tmp_path, clear_rc=1)

        with pytest.raises(SourceUnavailable):
            LogcatSource(clear=True, adb=str(adb)).open()
        assert calls.read_text().splitlines() == ['logcat -c']


class TestClose:
    """Shutting down the child process"""

    def test_terminates_running_logcat(self, tmp_path) -> None:
        adb, _ = _fake_adb(tmp_path, follow=True)
        src    = LogcatSource(adb=str(adb))
        stream = src.open()
        proc   = src._proc
        src.close()

        assert proc.returncode is not None
        assert stream.closed

    def test_close_twice(self, tmp_path) -> None:
        adb, _ = _fake_adb(tmp_path)
        src    = LogcatSource(adb=str(adb))
        src.open().read()
        src.close()
        src.close()


class TestProbe:
    """`adb get-state` mapped to a connection status"""

    def test_connected(self, tmp_path) -> None:
        adb, calls = _fake_adb(tmp_path, state_rc=0)

        assert LogcatSource(serial='abc', adb=str(adb)).probe() is ConnectionStatus.CONNECTED
        assert calls.read_text().splitlines() == ['-s abc get-state']

    def test_disconnected(self, tmp_path) -> None:
        adb, _ = _fake_adb(tmp_path, state_rc=1)

        assert LogcatSource(adb=str(adb)).probe() is ConnectionStatus.DISCONNECTED

    def test_missing_adb(self, tmp_path) -> None:
        src = LogcatSource(adb=str(tmp_path / 'no-such-adb'))

        assert src.probe() is ConnectionStatus.ERROR

    def test_timeout(self, monkeypatch) -> None:
        def hang(cmd, **kwargs):
            raise subprocess.TimeoutExpired(cmd, kwargs.get('timeout'))

        monkeypatch.setattr(subprocess, 'run', hang)

        assert LogcatSource().probe() is ConnectionStatus.DISCONNECTED
