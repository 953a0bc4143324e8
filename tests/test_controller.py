"""Tests for LogApp input handling, ticks and the rendered screen"""

import pytest
import urwid
from conftest import make_entry

from devinsight import (NOTIFY_INTERVAL, PROBE_INTERVAL, WARMUP_BATCH,
                        WARMUP_MAX_EMPTY, AppState, ConnectionStatus, Level,
                        LogApp, StorageInfo, View, build_screen, build_warmup,
                        visible_start)


def _text(widget, size=(100, 30)) -> str:
    canvas = widget.render(size)
    return '\n'.join(line.decode('utf-8') if isinstance(line, bytes) else line
                     for line in canvas.text)


def _ready_app(entry_q, status_q, n: int = 0, **kwargs) -> LogApp:
    app = LogApp(entry_q, status_q, **kwargs)
    app.finish_warm_up()
    for i in range(n):
        entry_q.put(('entry', make_entry(message=f'line {i}')))
    if n:
        app.tick(now=0.0)
    return app


class TestWarmUp:
    """The spinner stays up until enough entries arrived or input went quiet"""

    def test_finishes_after_batch(self, entry_q, status_q) -> None:
        app = LogApp(entry_q, status_q)
        for i in range(WARMUP_BATCH + 5):
            entry_q.put(('entry', make_entry(message=str(i))))

        app.tick(now=0.0)

        assert app.warming is False
        assert len(app.state.store) == WARMUP_BATCH
        assert app.state.scroll == WARMUP_BATCH - 1

        app.tick(now=0.05)
        assert len(app.state.store) == WARMUP_BATCH + 5

    def test_finishes_after_empty_ticks(self, entry_q, status_q) -> None:
        app = LogApp(entry_q, status_q)
        entry_q.put(('entry', make_entry()))
        app.tick(now=0.0)
        for i in range(WARMUP_MAX_EMPTY - 1):
            app.tick(now=0.05 * (i + 1))
            assert app.warming is True

        app.tick(now=5.0)
        assert app.warming is False
        assert len(app.state.store) == 1

    def test_keys_ignored_except_quit(self, entry_q, status_q) -> None:
        app = LogApp(entry_q, status_q)

        assert app.handle_input('2') is False
        assert app.state.view is View.LOGS
        with pytest.raises(urwid.ExitMainLoop):
            app.handle_input('q')

    def test_spinner_screen(self) -> None:
        text = _text(build_warmup('⠋', 12), (80, 24))

        assert 'Collecting logs 12/50' in text


class TestKeys:
    """Normal-mode key bindings"""

    def test_views(self, entry_q, status_q) -> None:
        app = _ready_app(entry_q, status_q)

        for key, view in (('2', View.STATS), ('3', View.STORAGE), ('1', View.LOGS)):
            assert app.handle_input(key) is True
            assert app.state.view is view

    def test_pause_drops_incoming(self, entry_q, status_q) -> None:
        app = _ready_app(entry_q, status_q, n=3)
        app.handle_input(' ')
        entry_q.put(('entry', make_entry()))
        app.tick(now=1.0)

        assert app.state.paused is True
        assert len(app.state.store) == 3

        app.handle_input(' ')
        assert app.state.paused is False

    def test_level_toggle(self, entry_q, status_q) -> None:
        app = _ready_app(entry_q, status_q, n=4)
        app.handle_input('i')

        assert Level.INFO not in app.state.filter.levels
        assert app.state.filtered == []

    def test_scroll_keys(self, entry_q, status_q) -> None:
        app = _ready_app(entry_q, status_q, n=40)
        st  = app.state

        app.handle_input('up')
        assert (st.scroll, st.tail) == (38, False)
        app.handle_input('page up')
        assert st.scroll == 28
        app.handle_input('g')
        assert st.scroll == 0
        app.handle_input('page down')
        assert st.scroll == 10
        app.handle_input('down')
        assert st.scroll == 11
        app.handle_input('G')
        assert (st.scroll, st.tail) == (39, True)
        app.handle_input('home')
        app.handle_input('end')
        assert st.tail is True

    def test_tail_toggle(self, entry_q, status_q) -> None:
        app = _ready_app(entry_q, status_q, n=5)
        app.handle_input('t')
        assert app.state.tail is False
        app.handle_input('t')
        assert app.state.tail is True

    def test_mouse_wheel(self, entry_q, status_q) -> None:
        app = _ready_app(entry_q, status_q, n=20)

        assert app.handle_input(('mouse press', 4, 10, 5)) is True
        assert (app.state.scroll, app.state.tail) == (16, False)
        app.handle_input(('mouse press', 5, 10, 5))
        assert (app.state.scroll, app.state.tail) == (19, True)
        assert app.handle_input(('mouse release', 0, 10, 5)) is False

    def test_unknown_key(self, entry_q, status_q) -> None:
        app = _ready_app(entry_q, status_q)

        assert app.handle_input('f5') is False

    def test_quit(self, entry_q, status_q) -> None:
        app = _ready_app(entry_q, status_q)

        with pytest.raises(urwid.ExitMainLoop):
            app.handle_input('Q')


class TestSearchKeys:
    """Search mode editing"""

    def _searching(self, entry_q, status_q) -> LogApp:
        app = _ready_app(entry_q, status_q)
        for msg in ('disk full', 'net up', 'Disk ok'):
            entry_q.put(('entry', make_entry(message=msg)))
        app.tick(now=0.0)
        app.handle_input('/')
        return app

    def test_typing_filters(self, entry_q, status_q) -> None:
        app = self._searching(entry_q, status_q)
        for ch in 'disk':
            app.handle_input(ch)

        assert app.state.search_mode is True
        assert app.state.filtered == [0, 2]

        app.handle_input('backspace')
        assert app.state.filter.query == 'dis'

    def test_quit_key_is_text_in_search(self, entry_q, status_q) -> None:
        app = self._searching(entry_q, status_q)
        app.handle_input('q')

        assert app.state.filter.query == 'q'

    def test_enter_keeps_query(self, entry_q, status_q) -> None:
        app = self._searching(entry_q, status_q)
        for ch in 'net':
            app.handle_input(ch)
        app.handle_input('enter')

        assert app.state.search_mode is False
        assert app.state.filter.query == 'net'
        assert app.state.filtered == [1]

    def test_esc_clears_query(self, entry_q, status_q) -> None:
        app = self._searching(entry_q, status_q)
        app.handle_input('n')
        app.handle_input('esc')

        assert app.state.search_mode is False
        assert app.state.filter.query == ''
        assert app.state.filtered == [0, 1, 2]


class TestHelpers:
    """Clipboard, notifications and the connection probe"""

    def test_copy_selected(self, entry_q, status_q) -> None:
        copied = []
        app = _ready_app(entry_q, status_q, n=2,
                         clipboard=lambda text: copied.append(text) or True)
        app.handle_input('y')

        assert copied == ['03-21 10:00:00.000 [Tag] INFO: line 1']
        assert app.state.status_text() == 'Log copied to clipboard'

    def test_copy_failure_is_silent(self, entry_q, status_q) -> None:
        app = _ready_app(entry_q, status_q, n=2, clipboard=lambda text: False)
        app.handle_input('c')

        assert app.state.status_message is None

    def test_notifications_rate_limited(self, entry_q, status_q) -> None:
        sent = []
        app = _ready_app(entry_q, status_q,
                         notifier=lambda *args: sent.append(args))
        for now in (10.0, 11.0, 10.0 + NOTIFY_INTERVAL + 1):
            entry_q.put(('entry', make_entry(level=Level.ERROR, tag='Crash', message='boom')))
            app.tick(now=now)

        assert sent == [('DevInsight Error', 'Crash', 'boom')] * 2

    def test_notifications_toggle(self, entry_q, status_q) -> None:
        sent = []
        app = _ready_app(entry_q, status_q,
                         notifier=lambda *args: sent.append(args))
        app.handle_input('n')
        entry_q.put(('entry', make_entry(level=Level.ERROR)))
        app.tick(now=1.0)

        assert app.state.notify_on_error is False
        assert sent == []

    def test_probe_updates_connection(self, entry_q, status_q) -> None:
        app   = _ready_app(entry_q, status_q,
                           probe=lambda: ConnectionStatus.DISCONNECTED)
        start = app._last_probe

        app.tick(now=start + PROBE_INTERVAL)
        app.probe_thread.join(5)
        app.tick(now=start + PROBE_INTERVAL + 0.05)

        assert app.state.connection is ConnectionStatus.DISCONNECTED
        assert app.probe_thread is None

    def test_failing_probe_keeps_probing(self, entry_q, status_q) -> None:
        """A probe that raises reports Error and is retried later"""
        calls = []

        def probe():
            calls.append(1)
            raise RuntimeError('adb went away')

        app   = _ready_app(entry_q, status_q, probe=probe)
        start = app._last_probe

        app.tick(now=start + PROBE_INTERVAL)
        app.probe_thread.join(5)
        app.tick(now=start + PROBE_INTERVAL + 0.05)

        assert app.state.connection is ConnectionStatus.ERROR
        assert app.probe_thread is None

        app.tick(now=start + 2 * PROBE_INTERVAL + 0.05)
        app.probe_thread.join(5)
        assert len(calls) == 2

    def test_eof_marks_disconnected(self, entry_q, status_q) -> None:
        app = _ready_app(entry_q, status_q)
        entry_q.put(('eof', None))
        app.tick(now=1.0)

        assert app.state.connection is ConnectionStatus.DISCONNECTED

    def test_storage_status(self, entry_q, status_q) -> None:
        app  = _ready_app(entry_q, status_q)
        info = StorageInfo('/tmp/logcat_x.jsonl', 2048, 1)
        status_q.put(('storage', info))
        status_q.put(('error', 'disk full'))
        app.tick(now=1.0)

        assert app.state.storage == info
        assert app.state.storage_error == 'disk full'
        assert app.state.status_text(1.5) == 'Storage error: disk full'


class TestRender:
    """Smoke tests of the rendered screen"""

    def test_visible_start(self) -> None:
        assert visible_start(100, 99, 20) == 80
        assert visible_start(100, 10, 20) == 10
        assert visible_start(5, 3, 20) == 0
        assert visible_start(0, 0, 20) == 0

    def test_log_view(self) -> None:
        state = AppState()
        for i in range(50):
            state.add_entry(make_entry(level=Level.WARNING, message=f'event {i}'))
        text = _text(build_screen(state))

        assert 'DevInsight' in text
        assert 'Log Output (50 logs)' in text
        assert 'event 49' in text
        assert 'event 0 ' not in text
        assert 'RUNNING' in text and 'TAIL' in text

    def test_log_view_scrolled(self) -> None:
        state = AppState()
        for i in range(50):
            state.add_entry(make_entry(message=f'event {i}'))
        state.go_top()
        text = _text(build_screen(state))

        assert 'event 0' in text
        assert 'event 49' not in text
        assert 'SCROLL' in text

    def test_empty_view(self) -> None:
        text = _text(build_screen(AppState()))

        assert 'no matching logs' in text

    def test_stats_view(self) -> None:
        state = AppState()
        state.add_entry(make_entry(level=Level.ERROR))
        state.view = View.STATS
        text = _text(build_screen(state))

        assert 'Log Statistics' in text
        assert 'Memory Usage: 1 / 10,000 entries' in text

    def test_storage_view(self) -> None:
        state = AppState()
        state.view = View.STORAGE
        assert 'Use --save to enable log storage' in _text(build_screen(state))

        state.storage = StorageInfo('/tmp/logcat_x.jsonl', 3 * 1024 * 1024, 2)
        text = _text(build_screen(state))
        assert 'logcat_x.jsonl' in text
        assert '3.00 MB' in text

    def test_search_status_line(self) -> None:
        state = AppState()
        state.search_mode = True
        state.filter.query = 'boom'

        assert 'Search: boom' in _text(build_screen(state))

    def test_screen_ignores_input(self) -> None:
        widget = build_screen(AppState())

        assert widget.selectable() is False
        assert widget.mouse_event((80, 24), 'mouse press', 4, 1, 1, True) is False
