#!/usr/bin/env python3
"""
devinsight.py: real-time Android log dashboard for the terminal
Requires: urwid  →  pip install urwid

Usage:    devinsight                       (spawns `adb logcat`)
          devinsight -s emulator-5554 --save
          some-command | devinsight --stdin
          devinsight --query 2026-10-17T09:00 2026-10-17T10:00

Keys:
  1 / 2 / 3     logs / stats / storage view
  space         pause (incoming lines are dropped while paused)
  t             toggle tail mode
  /             search (Enter keeps the query, Esc clears it)
  e w i d v     toggle error / warning / info / debug / verbose
  ↑ ↓ PgUp PgDn scroll            g / Home   first line
  G / End       latest line       y / c      copy line to clipboard
  n             toggle error notifications
  q             quit

Mouse:    scroll wheel moves the log view; scrolling back to the last
          line re-enables tail mode.

Stored logs are JSON lines, one file per rotation, in --storage-dir.
With --save every ingested line is stored, including lines that arrive
while the view is paused.
"""

import argparse
import enum
import json
import logging
import queue as _queue
import shutil
import subprocess
import sys
import threading
import time
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import NamedTuple

import urwid

log = logging.getLogger(__name__)

# Palette
PALETTE = [
    # chrome
    ('header',    'white,bold',        'dark blue'),
    ('h_dim',     'light blue',        'dark blue'),
    ('tab_on',    'light cyan,bold',   'dark blue'),
    ('conn_ok',   'light green,bold',  'dark blue'),
    ('conn_off',  'light red,bold',    'dark blue'),
    ('conn_err',  'yellow,bold',       'dark blue'),
    ('footer',    'black',             'light gray'),
    ('fk',        'dark blue,bold',    'light gray'),
    # status line
    ('st',        'light gray',        'dark gray'),
    ('st_off',    'black',             'dark gray'),
    ('st_msg',    'white,bold',        'dark gray'),
    ('st_run',    'light green,bold',  'dark gray'),
    ('st_pause',  'light red,bold',    'dark gray'),
    ('st_tail',   'light cyan,bold',   'dark gray'),
    ('st_scroll', 'yellow,bold',       'dark gray'),
    ('st_e',      'light red',         'dark gray'),
    ('st_w',      'yellow',            'dark gray'),
    ('st_i',      'light green',       'dark gray'),
    ('st_d',      'light blue',        'dark gray'),
    ('st_v',      'white',             'dark gray'),
    ('search',    'white,bold',        'dark blue'),
    # level pills (enabled)
    ('pill_e',    'dark gray,bold',    'light red'),
    ('pill_w',    'dark gray,bold',    'yellow'),
    ('pill_i',    'dark gray,bold',    'light green'),
    ('pill_d',    'white,bold',        'dark blue'),
    ('pill_v',    'black,bold',        'light gray'),
    # log line base colours
    ('ln',        'light gray',        'default'),
    ('le',        'light red',         'default'),
    ('lw',        'yellow',            'default'),
    ('li',        'light green',       'default'),
    ('ld',        'light blue',        'default'),
    ('lv',        'white',             'default'),
    ('cursor',    'black,bold',        'light gray'),
    # panes
    ('sp_border', 'dark cyan',         'default'),
    ('sp_hdr',    'black,bold',        'dark cyan'),
    ('sp_div',    'dark cyan',         'default'),
    ('sp_body',   'light gray',        'default'),
    ('sp_err',    'light red',         'default'),
    ('sp_dim',    'dark gray',         'default'),
    ('spin',      'light cyan,bold',   'default'),
]

CAP              = 10_000   # entries kept in memory
EVICT            = 1_000    # entries dropped at once when CAP is reached
TICK             = 0.05     # seconds between queue drains / redraws
STATUS_TTL       = 2.0      # seconds a status message stays on screen
PROBE_INTERVAL   = 5.0      # seconds between `adb get-state` checks
NOTIFY_INTERVAL  = 5.0      # minimum seconds between error notifications
WARMUP_BATCH     = 50
WARMUP_MAX_EMPTY = 20       # ~1s of empty ticks
LINE_STEP        = 1
PAGE_STEP        = 10
WHEEL_STEP       = 3
MiB              = 1024 * 1024

DEFAULT_STORAGE_DIR = Path.home() / '.devinsight' / 'logs'
DEFAULT_LOG_FILE    = Path.home() / '.devinsight' / 'devinsight.log'


# Levels

class Level(enum.Enum):
    ERROR   = 'ERROR'
    WARNING = 'WARN'
    INFO    = 'INFO'
    DEBUG   = 'DEBUG'
    VERBOSE = 'VERBOSE'
    UNKNOWN = 'UNKNOWN'

    @property
    def label(self) -> str:
        return self.value


# Levels the user can toggle, in display order. UNKNOWN is never shown.
TOGGLE_LEVELS = (Level.ERROR, Level.WARNING, Level.INFO, Level.DEBUG, Level.VERBOSE)

LEVEL_KEYS = {'e': Level.ERROR, 'w': Level.WARNING, 'i': Level.INFO,
              'd': Level.DEBUG, 'v': Level.VERBOSE}

LEVEL_ATTR = {
    Level.ERROR:   'le',
    Level.WARNING: 'lw',
    Level.INFO:    'li',
    Level.DEBUG:   'ld',
    Level.VERBOSE: 'lv',
    Level.UNKNOWN: 'ln',
}

_STATUS_ATTR = {
    Level.ERROR:   'st_e',
    Level.WARNING: 'st_w',
    Level.INFO:    'st_i',
    Level.DEBUG:   'st_d',
    Level.VERBOSE: 'st_v',
    Level.UNKNOWN: 'st',
}

_PILL_ATTR = {
    Level.ERROR:   'pill_e',
    Level.WARNING: 'pill_w',
    Level.INFO:    'pill_i',
    Level.DEBUG:   'pill_d',
    Level.VERBOSE: 'pill_v',
    Level.UNKNOWN: 'st',
}

LEVEL_ICON = {
    Level.ERROR:   '✖',
    Level.WARNING: '▲',
    Level.INFO:    '●',
    Level.DEBUG:   '◆',
    Level.VERBOSE: '·',
    Level.UNKNOWN: '?',
}

# Checked in this order; the first level with any marker in the raw line wins.
# Plain substring matching: a message containing " E " is read as an error.
_LEVEL_MARKERS = (
    (Level.ERROR,   (' E ', 'E/', 'Error')),
    (Level.WARNING, (' W ', 'W/', 'Warning')),
    (Level.INFO,    (' I ', 'I/', 'Info')),
    (Level.DEBUG,   (' D ', 'D/', 'Debug')),
    (Level.VERBOSE, (' V ', 'V/', 'Verbose')),
)


class View(enum.Enum):
    LOGS    = 'Logs'
    STATS   = 'Stats'
    STORAGE = 'Storage'


VIEW_KEYS = {'1': View.LOGS, '2': View.STATS, '3': View.STORAGE}


class ConnectionStatus(enum.Enum):
    CONNECTED    = 'Connected'
    DISCONNECTED = 'Disconnected'
    ERROR        = 'Error'


# Records

class LogEntry(NamedTuple):
    level:     Level
    timestamp: str
    tag:       str
    message:   str


class StorageInfo(NamedTuple):
    current_file: str
    total_size:   int
    file_count:   int


class StoredLog(NamedTuple):
    timestamp: datetime
    level:     str
    tag:       str
    message:   str
    device_id: str | None = None

    @classmethod
    def from_json(cls, line: str) -> 'StoredLog | None':
        # Decode one stored line; None for anything that isn't a valid record.
        try:
            d = json.loads(line)
        except ValueError:
            return None
        if not isinstance(d, dict):
            return None
        try:
            ts = datetime.fromisoformat(d['timestamp'])
        except (KeyError, TypeError, ValueError):
            return None
        device = d.get('device_id')
        return cls(
            timestamp = _as_local(ts),
            level     = str(d.get('level', '')),
            tag       = str(d.get('tag', '')),
            message   = str(d.get('message', '')),
            device_id = None if device is None else str(device),
        )


def _as_local(ts: datetime) -> datetime:
    # Naive datetimes are taken as local time so they compare with stored ones.
    return ts if ts.tzinfo is not None else ts.astimezone()


def format_entry(entry: LogEntry) -> str:
    return f'{entry.timestamp} [{entry.tag}] {entry.level.label}: {entry.message}'


# Parsing

def classify_level(line: str) -> Level:
    for level, markers in _LEVEL_MARKERS:
        if any(m in line for m in markers):
            return level
    return Level.UNKNOWN


def parse_line(raw, now: datetime | None = None) -> LogEntry | None:
    """
    Turn one raw logcat line into a LogEntry.

    The header is everything before the first ': ' (falling back to the
    first ':'), so the colons of an HH:MM:SS timestamp stay in the header.
    Returns None for undecodable or blank lines.
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode('utf-8')
        except UnicodeDecodeError:
            return None
    line = raw.rstrip('\r\n')
    if not line.strip():
        return None

    header, sep, message = line.partition(': ')
    if not sep:
        header, sep, message = line.partition(':')
    if not sep:
        header, message = line, line

    tokens = header.split()
    if len(tokens) >= 2:
        timestamp = f'{tokens[0]} {tokens[1]}'
        tag       = tokens[-2]
    else:
        timestamp = (now or datetime.now()).strftime('%m-%d %H:%M:%S')
        tag       = 'UNKNOWN'

    return LogEntry(classify_level(line), timestamp, tag, message.strip())


# Log Data

class LogStore:
    # Append-only, oldest first. Never holds more than `capacity` entries.

    def __init__(self, capacity: int = CAP, evict: int = EVICT):
        self.capacity = capacity
        self.evict    = max(1, min(evict, capacity))
        self._entries: list = []

    def __len__(self) -> int:
        return len(self._entries)

    def __getitem__(self, idx: int) -> LogEntry:
        return self._entries[idx]

    def __iter__(self):
        return iter(self._entries)

    def get(self, idx: int) -> LogEntry | None:
        if 0 <= idx < len(self._entries):
            return self._entries[idx]
        return None

    def append(self, entry: LogEntry) -> None:
        # Evicting in batches keeps the front-shift cost off most appends.
        # Any index handed out before this call may now point elsewhere.
        if len(self._entries) >= self.capacity:
            del self._entries[:self.evict]
        self._entries.append(entry)


class FilterIndex:
    """
    Store positions matching the enabled levels and the search query.

    Rebuilt from scratch by recompute(); indices are only meaningful until the
    store's next eviction.
    """

    def __init__(self, levels=None):
        self.levels: set  = set(TOGGLE_LEVELS if levels is None else levels)
        self.query:  str  = ''
        self.indices: list = []

    def __len__(self) -> int:
        return len(self.indices)

    def toggle(self, level: Level) -> bool:
        # Returns True if the level is now enabled.
        if level in self.levels:
            self.levels.discard(level)
            return False
        self.levels.add(level)
        return True

    def matches(self, entry: LogEntry) -> bool:
        if entry.level not in self.levels:
            return False
        if not self.query:
            return True
        q = self.query.lower()
        return (q in entry.message.lower()
                or q in entry.tag.lower()
                or q in entry.level.label.lower())

    def recompute(self, store: LogStore) -> list:
        self.indices = [i for i, entry in enumerate(store) if self.matches(entry)]
        return self.indices


def visible_start(total: int, scroll: int, height: int) -> int:
    # First filtered position to draw so the cursor row stays on screen.
    return max(0, min(scroll, total - height))


class AppState:
    # Everything the renderer reads. Mutated only by LogApp on the main loop.

    def __init__(self, levels=None, capacity: int = CAP, evict: int = EVICT):
        self.store  = LogStore(capacity, evict)
        self.filter = FilterIndex(levels)

        self.view        = View.LOGS
        self.scroll      = 0
        self.paused      = False
        self.tail        = True
        self.search_mode = False

        self.counts: Counter = Counter()
        self.storage:       StorageInfo | None = None
        self.storage_error: str | None         = None
        self.connection      = ConnectionStatus.CONNECTED
        self.notify_on_error = True
        self.status_message: tuple | None = None   # (text, monotonic time)

    @property
    def filtered(self) -> list:
        return self.filter.indices

    @property
    def last_index(self) -> int:
        return max(0, len(self.filter.indices) - 1)

    # Entries

    def add_entry(self, entry: LogEntry, refilter: bool = True) -> bool:
        # Paused: the entry was already taken off the queue, it is just dropped.
        if self.paused:
            return False
        self.counts[entry.level] += 1
        self.store.append(entry)
        if refilter:
            self.refilter()
        return True

    def refilter(self) -> None:
        self.filter.recompute(self.store)
        if self.tail:
            self.scroll = self.last_index
        else:
            self.scroll = min(self.scroll, self.last_index)

    def toggle_level(self, level: Level) -> None:
        self.filter.toggle(level)
        self.refilter()

    def selected_entry(self) -> LogEntry | None:
        indices = self.filter.indices
        if not 0 <= self.scroll < len(indices):
            return None
        return self.store.get(indices[self.scroll])

    # Search

    def search_push(self, ch: str) -> None:
        self.filter.query += ch
        self.refilter()

    def search_pop(self) -> None:
        if self.filter.query:
            self.filter.query = self.filter.query[:-1]
            self.refilter()

    def search_clear(self) -> None:
        self.filter.query = ''
        self.refilter()

    # Movement

    def scroll_to(self, pos: int) -> None:
        # Landing on the last line re-arms tail mode; anywhere else clears it.
        n = len(self.filter.indices)
        if not n:
            return
        self.scroll = max(0, min(pos, n - 1))
        self.tail   = self.scroll == n - 1

    def scroll_by(self, delta: int) -> None:
        self.scroll_to(self.scroll + delta)

    def go_top(self) -> None:
        self.scroll_to(0)

    def go_bottom(self) -> None:
        self.scroll_to(len(self.filter.indices) - 1)

    def toggle_tail(self) -> None:
        self.tail = not self.tail
        if self.tail:
            self.scroll = self.last_index

    # Status message

    def set_status(self, text: str, now: float | None = None) -> None:
        self.status_message = (text, time.monotonic() if now is None else now)

    def status_text(self, now: float | None = None) -> str | None:
        if self.status_message is None:
            return None
        text, at = self.status_message
        now = time.monotonic() if now is None else now
        return text if now - at <= STATUS_TTL else None

    def expire_status(self, now: float | None = None) -> None:
        if self.status_message is not None and self.status_text(now) is None:
            self.status_message = None


# Storage

def _scan_dir(base_dir: Path) -> tuple:
    # (total bytes, file count) over the stored *.jsonl files.
    total = count = 0
    for path in base_dir.glob('*.jsonl'):
        try:
            total += path.stat().st_size
        except OSError:
            continue
        count += 1
    return total, count


def query_logs(base_dir, start: datetime, end: datetime) -> list:
    """
    Linear scan of every file in base_dir for records with start <= ts <= end.
    Malformed lines are skipped; failing to list or open a file raises OSError.
    """
    start, end = _as_local(start), _as_local(end)
    found = []
    for path in sorted(Path(base_dir).iterdir()):
        if not path.is_file():
            continue
        with open(path, encoding='utf-8', errors='replace') as fh:
            for line in fh:
                rec = StoredLog.from_json(line)
                if rec is not None and start <= rec.timestamp <= end:
                    found.append(rec)
    return found


class StorageRotator:
    """
    Appends every stored entry as one JSON object per line to the current
    file and rotates to a new timestamp-named file once it reaches max size.

    Status snapshots go to status_q as ('storage', StorageInfo). Write errors
    are raised to the caller. Old files are never deleted.
    """

    PREFIX = 'logcat_'
    SUFFIX = '.jsonl'

    def __init__(self, base_dir, max_size_mb: float = 10.0,
                 status_q: _queue.SimpleQueue | None = None,
                 device_id: str | None = None):
        self.base_dir  = Path(base_dir)
        self.max_bytes = max(1, int(max_size_mb * MiB))
        self.device_id = device_id
        self._status_q = status_q
        self._fh       = None
        self.current_path: Path | None = None
        self.current_size = 0
        self._total       = 0
        self._count       = 0

        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._open_new()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _new_path(self) -> Path:
        # Two rotations within one second must still land in distinct files.
        stamp = datetime.now().strftime('%Y%m%d_%H%M%S')
        path  = self.base_dir / f'{self.PREFIX}{stamp}{self.SUFFIX}'
        n = 1
        while path.exists():
            path = self.base_dir / f'{self.PREFIX}{stamp}_{n}{self.SUFFIX}'
            n += 1
        return path

    def _open_new(self) -> None:
        path = self._new_path()
        fh   = open(path, 'ab')
        if self._fh is not None:
            self._fh.close()
        self._fh          = fh
        self.current_path = path
        self.current_size = 0
        self._total, self._count = _scan_dir(self.base_dir)
        log.info('storage: writing %s', path)

    def store(self, entry: LogEntry) -> None:
        record = {
            'timestamp': datetime.now().astimezone().isoformat(),
            'level':     entry.level.label,
            'tag':       entry.tag,
            'message':   entry.message,
            'device_id': self.device_id,
        }
        data = (json.dumps(record, ensure_ascii=False) + '\n').encode('utf-8')
        self._fh.write(data)
        self._fh.flush()
        self.current_size += len(data)
        self._total       += len(data)
        if self.current_size >= self.max_bytes:
            self.rotate()
        self._emit()

    def rotate(self) -> None:
        self._open_new()

    def info(self) -> StorageInfo:
        return StorageInfo(str(self.current_path), self._total, self._count)

    def _emit(self) -> None:
        if self._status_q is not None:
            self._status_q.put(('storage', self.info()))

    def query(self, start: datetime, end: datetime) -> list:
        return query_logs(self.base_dir, start, end)

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None


# Sources

class SourceUnavailable(Exception):
    pass


class LogcatSource:
    """
    Spawns `adb logcat` and hands its stdout to the ingest worker.
    probe() is blocking; LogApp only calls it from a worker thread.
    """

    def __init__(self, serial: str | None = None, clear: bool = False,
                 adb: str = 'adb'):
        self.serial = serial
        self.clear  = clear
        self._adb   = adb
        self._proc  = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _cmd(self, *args) -> list:
        target = ['-s', self.serial] if self.serial else []
        return [self._adb, *target, *args]

    def open(self):
        try:
            if self.clear:
                subprocess.run(self._cmd('logcat', '-c'), check=True, timeout=10,
                               stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
            self._proc = subprocess.Popen(self._cmd('logcat'),
                                          stdout=subprocess.PIPE,
                                          stderr=subprocess.DEVNULL)
        except (OSError, subprocess.SubprocessError) as exc:
            raise SourceUnavailable(f'cannot start adb logcat: {exc}') from exc
        return self._proc.stdout

    def probe(self) -> ConnectionStatus:
        try:
            result = subprocess.run(self._cmd('get-state'), capture_output=True,
                                    timeout=3)
        except subprocess.TimeoutExpired:
            return ConnectionStatus.DISCONNECTED
        except OSError:
            return ConnectionStatus.ERROR
        if result.returncode == 0:
            return ConnectionStatus.CONNECTED
        return ConnectionStatus.DISCONNECTED

    def close(self) -> None:
        proc, self._proc = self._proc, None
        if proc is None:
            return
        if proc.poll() is None:
            proc.terminate()
            try:
                proc.wait(timeout=2)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()
        if proc.stdout is not None:
            proc.stdout.close()


class StdinSource:
    # Lines piped into the process; the terminal is read from /dev/tty instead.

    def open(self):
        return sys.stdin.buffer

    def close(self) -> None:
        pass


# Ingestion

class IngestWorker:
    """
    Reads raw lines on a daemon thread, parses them and forwards each entry.

    Queue message tuples (entry_q):
      ('entry', LogEntry)
      ('eof',   None)    -- stream closed
    Storage failures go to status_q as ('error', str) and never stop ingestion.
    """

    def __init__(self, stream, entry_q: _queue.SimpleQueue,
                 storage: StorageRotator | None = None,
                 status_q: _queue.SimpleQueue | None = None,
                 tag_filter: str | None = None):
        self._stream     = stream
        self._entry_q    = entry_q
        self._storage    = storage
        self._status_q   = status_q
        self._tag_filter = tag_filter
        self._stop       = threading.Event()
        self._thread     = threading.Thread(target=self._run, daemon=True,
                                            name='ingest')

    def start(self) -> None:
        self._thread.start()

    def stop(self, timeout: float = 1.0) -> None:
        self._stop.set()
        self.join(timeout)

    def join(self, timeout: float | None = None) -> None:
        if self._thread.is_alive():
            self._thread.join(timeout)

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def _run(self) -> None:
        try:
            for raw in iter(self._stream.readline, b''):
                if self._stop.is_set():
                    break
                self.ingest(raw)
        except (OSError, ValueError) as exc:
            # ValueError: the pipe was closed under us during shutdown
            log.info('ingest: stream ended: %s', exc)
        log.info('ingest: end of stream')
        self._entry_q.put(('eof', None))

    def ingest(self, raw) -> LogEntry | None:
        entry = parse_line(raw)
        if entry is None:
            log.debug('ingest: skipped undecodable line')
            return None
        # --tag matches anywhere in the raw line; the parsed tag is only a
        # header token (the level letter for threadtime output).
        if self._tag_filter:
            line = raw.decode('utf-8') if isinstance(raw, bytes) else raw
            if self._tag_filter not in line:
                return None
        self._entry_q.put(('entry', entry))
        if self._storage is not None:
            try:
                self._storage.store(entry)
            except OSError as exc:
                log.warning('storage: failed to store entry: %s', exc)
                if self._status_q is not None:
                    self._status_q.put(('error', str(exc)))
        return entry


# Clipboard / notifications (best effort; failures are ignored)

_CLIPBOARD_CMDS = (
    ('wl-copy',),
    ('xclip', '-selection', 'clipboard'),
    ('xsel', '--clipboard', '--input'),
    ('pbcopy',),
)


def copy_to_clipboard(text: str) -> bool:
    for cmd in _CLIPBOARD_CMDS:
        if shutil.which(cmd[0]) is None:
            continue
        try:
            subprocess.run(cmd, input=text.encode('utf-8'), check=True, timeout=2,
                           stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
            return True
        except (OSError, subprocess.SubprocessError):
            continue
    return False


def send_notification(title: str, subtitle: str, message: str) -> None:
    if shutil.which('notify-send'):
        cmd = ['notify-send', f'{title}: {subtitle}', message]
    elif shutil.which('osascript'):
        script = (f'display notification {json.dumps(message)} '
                  f'with title {json.dumps(title)} subtitle {json.dumps(subtitle)}')
        cmd = ['osascript', '-e', script]
    else:
        return
    try:
        subprocess.Popen(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
    except OSError:
        pass


# Rendering
_HBAR_W = 24


def _bar(count: int, max_count: int, width: int = _HBAR_W, chars: str = '█░') -> str:
    if max_count == 0:
        return chars[1] * width
    filled = round(count / max_count * width)
    return chars[0] * filled + chars[1] * (width - filled)


def _div():
    return urwid.AttrMap(urwid.Divider('─'), 'sp_div')


def _hdr(text):
    return urwid.AttrMap(urwid.Text(f' {text} ', wrap='clip'), 'sp_hdr')


def _row(text, attr='sp_body'):
    return urwid.AttrMap(urwid.Text(text, wrap='clip'), attr)


def _pane(rows: list, title: str) -> urwid.Widget:
    listbox = urwid.ListBox(urwid.SimpleListWalker(rows))
    return urwid.AttrMap(urwid.LineBox(listbox, title=title), 'sp_border')


class Dashboard(urwid.WidgetWrap):
    # Top-level wrapper: never consumes keys or mouse events, so every input
    # reaches LogApp.handle_input through unhandled_input.

    def selectable(self):
        return False

    def mouse_event(self, size, event, button, col, row, focus):
        return False


class LogPane(urwid.Widget):
    """
    Box widget that lays out only the visible log rows at render time,
    since the row count depends on the terminal height.
    """
    _sizing     = frozenset([urwid.BOX])
    _selectable = False

    TIMESTAMP_W = 19
    TAG_W       = 8
    LEVEL_W     = 5

    def __init__(self, state: AppState):
        super().__init__()
        self._state = state

    def _title(self) -> str:
        st = self._state
        n  = len(st.filtered)
        if st.search_mode:
            return f" Log Output (Searching: '{st.filter.query}', {n} matches) "
        if st.filter.query:
            return f" Log Output (filter: '{st.filter.query}', {n} logs) "
        return f' Log Output ({n} logs) '

    def format_row(self, entry: LogEntry) -> str:
        tag = entry.tag[:self.TAG_W]
        return (f'{LEVEL_ICON[entry.level]} {entry.timestamp:<{self.TIMESTAMP_W}} '
                f'[{tag:<{self.TAG_W}}] {entry.level.label:<{self.LEVEL_W}}: '
                f'{entry.message}')

    def render(self, size, focus=False):
        maxcol, maxrow = size
        st      = self._state
        indices = st.filtered
        height  = max(0, maxrow - 2)
        start   = visible_start(len(indices), st.scroll, height)

        rows = []
        for pos in range(start, min(len(indices), start + height)):
            entry = st.store.get(indices[pos])
            if entry is None:
                continue
            attr = 'cursor' if pos == st.scroll and not st.tail else LEVEL_ATTR[entry.level]
            rows.append(_row(self.format_row(entry), attr))
        if not rows:
            rows.append(_row('  (no matching logs)', 'sp_dim'))

        return _pane(rows, self._title()).render(size, focus)


def build_stats_pane(state: AppState) -> urwid.Widget:
    counts = state.counts
    max_v  = max(counts[lv] for lv in TOGGLE_LEVELS)
    rows   = [_hdr('Log Statistics')]
    for level in TOGGLE_LEVELS:
        c = counts[level]
        rows.append(_row(
            f' {LEVEL_ICON[level]} {level.name.title():<8} {_bar(c, max_v)} {c:>8,}',
            LEVEL_ATTR[level]))
    rows += [
        _div(),
        _row(f' Total Logs:   {len(state.store):,}'),
        _row(f' Matching:     {len(state.filtered):,}'),
        _row(f' Memory Usage: {len(state.store):,} / {state.store.capacity:,} entries'),
    ]
    return _pane(rows, ' Statistics ')


def build_storage_pane(state: AppState) -> urwid.Widget:
    info = state.storage
    if info is None:
        rows = [_row(' Storage not enabled', 'sp_dim'),
                _row(''),
                _row(' Use --save to enable log storage', 'sp_dim')]
    else:
        rows = [_hdr('Storage Information'),
                _row(f' Current File: {info.current_file}'),
                _row(f' Total Size:   {info.total_size / MiB:.2f} MB'),
                _row(f' File Count:   {info.file_count}')]
    if state.storage_error:
        rows += [_div(), _row(f' Last error: {state.storage_error}', 'sp_err')]
    return _pane(rows, ' Storage Status ')


_CONN_MARKUP = {
    ConnectionStatus.CONNECTED:    ('conn_ok',  '● Connected '),
    ConnectionStatus.DISCONNECTED: ('conn_off', '○ Disconnected '),
    ConnectionStatus.ERROR:        ('conn_err', '⚠ Error '),
}

_HELP_MARKUP = [
    ('fk', ' 1-3'),   ('footer', ':views  '),
    ('fk', 'Space'),  ('footer', ':pause  '),
    ('fk', 't'),      ('footer', ':tail  '),
    ('fk', '/'),      ('footer', ':search  '),
    ('fk', 'y'),      ('footer', ':copy  '),
    ('fk', 'n'),      ('footer', ':notify  '),
    ('fk', 'e/w/i/d/v'), ('footer', ':levels  '),
    ('fk', '↑/↓'), ('footer', ':scroll  '),
    ('fk', 'End/G'),  ('footer', ':latest  '),
    ('fk', 'Home/g'), ('footer', ':first  '),
    ('fk', 'q'),      ('footer', ':quit'),
]


def _build_tabs(state: AppState) -> urwid.Widget:
    tabs = [('header', ' ◉ DevInsight  ')]
    for key, view in VIEW_KEYS.items():
        attr = 'tab_on' if view is state.view else 'h_dim'
        tabs.append((attr, f' {key} {view.value} '))
    conn = urwid.Text(_CONN_MARKUP[state.connection], wrap='clip')
    cols = urwid.Columns([urwid.Text(tabs, wrap='clip'), ('pack', conn)])
    return urwid.AttrMap(cols, 'header')


def _build_pills(state: AppState) -> urwid.Widget:
    cells = [('pack', urwid.AttrMap(urwid.Text(f' Total {len(state.store):,}  '), 'st'))]
    for level in TOGGLE_LEVELS:
        on   = level in state.filter.levels
        mark = '▶' if on else ' '
        attr = _PILL_ATTR[level] if on else 'st'
        text = f' {mark}{level.label} {state.counts[level]:,} '
        cells.append(('pack', urwid.AttrMap(urwid.Text(text), attr)))
    return urwid.AttrMap(urwid.Columns(cells), 'st')


def status_markup(state: AppState, now: float | None = None) -> list:
    if state.search_mode:
        return [('search', f' Search: {state.filter.query}'),
                ('st', ' | Press Enter to confirm or Esc to cancel')]
    msg = state.status_text(now)
    if msg:
        return [('st_msg', f' {msg}')]

    parts = [('st', ' [')]
    for i, level in enumerate(TOGGLE_LEVELS):
        if i:
            parts.append(('st', ' '))
        if level in state.filter.levels:
            parts.append((_STATUS_ATTR[level], level.label[0]))
        else:
            parts.append(('st_off', '-'))
    n   = len(state.filtered)
    pos = state.scroll + 1 if n else 0
    parts += [
        ('st', '] '),
        ('st_pause', 'PAUSED') if state.paused else ('st_run', 'RUNNING'),
        ('st', ' '),
        ('st_tail', 'TAIL') if state.tail else ('st_scroll', 'SCROLL'),
        ('st', f' | {n:>4} logs | Position: {pos:>4}/{n:<4}'),
    ]
    return parts


def build_screen(state: AppState, now: float | None = None) -> urwid.Widget:
    # Pure function of the state; rebuilt on every tick and keypress.
    header = urwid.Pile([_build_tabs(state), _build_pills(state)])
    if state.view is View.STATS:
        body = build_stats_pane(state)
    elif state.view is View.STORAGE:
        body = build_storage_pane(state)
    else:
        body = LogPane(state)
    footer = urwid.Pile([
        urwid.AttrMap(urwid.Text(status_markup(state, now), wrap='clip'), 'st'),
        urwid.AttrMap(urwid.Text(_HELP_MARKUP, wrap='clip'), 'footer'),
    ])
    return Dashboard(urwid.Frame(body=body, header=header, footer=footer))


# Spinner

class Spinner:
    _FRAMES = ['⠋', '⠙', '⠹', '⠸', '⠼', '⠴', '⠦', '⠧', '⠇', '⠏']

    def __init__(self):
        self._idx  = 0
        self.frame = self._FRAMES[0]

    def tick(self) -> str:
        self._idx  = (self._idx + 1) % len(self._FRAMES)
        self.frame = self._FRAMES[self._idx]
        return self.frame


def build_warmup(frame: str, collected: int) -> urwid.Widget:
    if collected == 0:
        text = f'{frame} Waiting for logs...'
    else:
        text = f'{frame} Collecting logs {collected}/{WARMUP_BATCH}'
    box = urwid.LineBox(urwid.Filler(urwid.Text(('spin', text), align='center')))
    return Dashboard(urwid.Overlay(box, urwid.SolidFill(' '),
                                   'center', 40, 'middle', 3))


# Main Application
class LogApp:
    """
    The interactive controller. Owns AppState and drains both queues on the
    urwid main-loop thread every TICK; nothing else touches the state.
    """

    def __init__(self, entry_q: _queue.SimpleQueue,
                 status_q: _queue.SimpleQueue,
                 state: AppState | None = None,
                 probe=None, clipboard=None, notifier=None):
        self.state      = state or AppState()
        self._entry_q   = entry_q
        self._status_q  = status_q
        self._probe     = probe
        self._clipboard = clipboard
        self._notifier  = notifier

        self._loop = None

        self.warming        = True
        self._warm_collected = 0
        self._warm_empty     = 0
        self._spinner        = Spinner()

        self._ingest_done   = False
        self._last_probe    = time.monotonic()
        self.probe_thread: threading.Thread | None = None
        self._last_notify: float | None = None

    # Loop

    def run(self, screen=None) -> None:
        # MainLoop.run() puts the terminal into raw/alternate-screen mode and
        # restores it on every exit path.
        loop = urwid.MainLoop(
            self.build_widget(),
            palette         = PALETTE,
            unhandled_input = self.handle_input,
            handle_mouse    = True,
            screen          = screen,
        )
        self._loop = loop
        loop.set_alarm_in(TICK, self._on_tick)
        try:
            loop.run()
        finally:
            self._loop = None

    def _on_tick(self, loop, _user_data) -> None:
        self.tick()
        loop.set_alarm_in(TICK, self._on_tick)

    def tick(self, now: float | None = None) -> None:
        now = time.monotonic() if now is None else now
        self._drain_status(now)
        if self.warming:
            self._warm_up_step(now)
        else:
            self._drain_entries(now=now)
        self.state.expire_status(now)
        self._maybe_probe(now)
        self._refresh()

    def build_widget(self, now: float | None = None) -> urwid.Widget:
        if self.warming:
            return build_warmup(self._spinner.frame, self._warm_collected)
        return build_screen(self.state, now)

    def _refresh(self) -> None:
        if self._loop is not None:
            self._loop.widget = self.build_widget()

    # Warm-up

    def _warm_up_step(self, now: float | None = None) -> None:
        got = self._drain_entries(limit=WARMUP_BATCH - self._warm_collected, now=now)
        self._warm_collected += got
        self._warm_empty = 0 if got else self._warm_empty + 1
        self._spinner.tick()
        if (self._warm_collected >= WARMUP_BATCH
                or self._warm_empty >= WARMUP_MAX_EMPTY):
            self.finish_warm_up()

    def finish_warm_up(self) -> None:
        self.warming = False
        self.state.refilter()
        self.state.scroll = self.state.last_index
        log.info('warm-up done: %d entries', len(self.state.store))

    # Queues

    def _drain_entries(self, limit: int | None = None,
                       now: float | None = None) -> int:
        # Absorbs the whole backlog, then rebuilds the filter index once.
        taken = added = 0
        while limit is None or taken < limit:
            try:
                kind, payload = self._entry_q.get_nowait()
            except _queue.Empty:
                break
            if kind == 'entry':
                taken += 1
                if self.state.add_entry(payload, refilter=False):
                    added += 1
                    self._maybe_notify(payload, now)
            elif kind == 'eof':
                self._ingest_done      = True
                self.state.connection  = ConnectionStatus.DISCONNECTED
        if added:
            self.state.refilter()
        return taken

    def _drain_status(self, now: float | None = None) -> None:
        while True:
            try:
                kind, payload = self._status_q.get_nowait()
            except _queue.Empty:
                break
            if kind == 'storage':
                self.state.storage = payload
            elif kind == 'error':
                self.state.storage_error = payload
                self.state.set_status(f'Storage error: {payload}', now)
            elif kind == 'connection':
                self.probe_thread = None
                if not self._ingest_done:
                    self.state.connection = payload

    def _maybe_probe(self, now: float) -> None:
        if (self._probe is None or self.probe_thread is not None
                or now - self._last_probe < PROBE_INTERVAL):
            return
        self._last_probe = now
        probe, status_q  = self._probe, self._status_q

        def _worker():
            status = ConnectionStatus.ERROR
            try:
                status = probe()
            except Exception:
                log.exception('probe failed')
            finally:
                status_q.put(('connection', status))

        self.probe_thread = threading.Thread(target=_worker, daemon=True, name='probe')
        self.probe_thread.start()

    def _maybe_notify(self, entry: LogEntry, now: float | None = None) -> None:
        if (entry.level is not Level.ERROR or not self.state.notify_on_error
                or self._notifier is None):
            return
        now = time.monotonic() if now is None else now
        if self._last_notify is not None and now - self._last_notify <= NOTIFY_INTERVAL:
            return
        self._last_notify = now
        self._notifier('DevInsight Error', entry.tag, entry.message)

    # Input

    def handle_input(self, key) -> bool:
        if isinstance(key, tuple):
            handled = self._on_mouse(*key)
        elif self.warming:
            handled = self._on_warmup_key(key)
        elif self.state.search_mode:
            handled = self._on_search_key(key)
        else:
            handled = self._on_key(key)
        self._refresh()
        return handled

    def _on_mouse(self, event, button, col, row) -> bool:
        if self.warming or event != 'mouse press':
            return False
        if button == 4:
            self.state.scroll_by(-WHEEL_STEP)
        elif button == 5:
            self.state.scroll_by(WHEEL_STEP)
        else:
            return False
        return True

    def _on_warmup_key(self, key: str) -> bool:
        if key in ('q', 'Q'):
            raise urwid.ExitMainLoop()
        return False

    def _on_search_key(self, key: str) -> bool:
        st = self.state
        if key == 'esc':
            st.search_mode    = False
            st.status_message = None
            st.search_clear()
        elif key == 'enter':
            # Leave search but keep filtering by the query.
            st.search_mode    = False
            st.status_message = None
            st.refilter()
        elif key == 'backspace':
            st.search_pop()
        elif len(key) == 1 and key.isprintable():
            st.search_push(key)
        else:
            return False
        return True

    def _on_key(self, key: str) -> bool:
        st = self.state
        if key in ('q', 'Q'):
            raise urwid.ExitMainLoop()
        elif key in VIEW_KEYS:
            st.view = VIEW_KEYS[key]
        elif key == ' ':
            st.paused = not st.paused
        elif key == 't':
            st.toggle_tail()
        elif key == '/':
            st.search_mode = True
        elif key in LEVEL_KEYS:
            st.toggle_level(LEVEL_KEYS[key])
        elif key == 'up':
            st.scroll_by(-LINE_STEP)
        elif key == 'down':
            st.scroll_by(LINE_STEP)
        elif key == 'page up':
            st.scroll_by(-PAGE_STEP)
        elif key == 'page down':
            st.scroll_by(PAGE_STEP)
        elif key in ('home', 'g'):
            st.go_top()
        elif key in ('end', 'G'):
            st.go_bottom()
        elif key in ('y', 'c'):
            self.copy_selected()
        elif key == 'n':
            st.notify_on_error = not st.notify_on_error
            st.set_status('Notifications '
                          + ('enabled' if st.notify_on_error else 'disabled'))
        else:
            return False
        return True

    def copy_selected(self) -> None:
        entry = self.state.selected_entry()
        if entry is None or self._clipboard is None:
            return
        if self._clipboard(format_entry(entry)):
            self.state.set_status('Log copied to clipboard')


# Entry point

def parse_levels(letters: str) -> set:
    # "EW" -> {ERROR, WARNING}; raises ValueError on an unknown letter.
    by_letter = {lv.label[0]: lv for lv in TOGGLE_LEVELS}
    levels = set()
    for ch in letters.upper():
        if ch not in by_letter:
            raise ValueError(f'unknown level {ch!r} (use E, W, I, D, V)')
        levels.add(by_letter[ch])
    return levels


def print_query(storage_dir, start: datetime, end: datetime) -> int:
    try:
        records = query_logs(storage_dir, start, end)
    except OSError as exc:
        sys.exit(f'Error: cannot read {storage_dir}: {exc}')
    for rec in records:
        print(f'{rec.timestamp.isoformat()} [{rec.tag}] {rec.level}: {rec.message}')
    return len(records)


def main():
    ap = argparse.ArgumentParser(
        description='DevInsight: real-time Android log dashboard',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__)
    ap.add_argument('-s', '--serial', metavar='SERIAL',
                    help='adb device serial (also stored as device_id)')
    ap.add_argument('--stdin', action='store_true',
                    help='read log lines from stdin instead of adb logcat')
    ap.add_argument('-f', '--level', metavar='LEVELS',
                    help='levels shown at start, e.g. EW (default: all)')
    ap.add_argument('-t', '--tag', metavar='TAG',
                    help='only ingest lines whose tag contains TAG')
    ap.add_argument('--save', action='store_true',
                    help='persist logs as rotating JSON-lines files '
                         '(lines arriving while paused are still saved)')
    ap.add_argument('--storage-dir', metavar='DIR', type=Path,
                    default=DEFAULT_STORAGE_DIR,
                    help=f'where stored logs go (default: {DEFAULT_STORAGE_DIR})')
    ap.add_argument('--max-size', metavar='MB', type=float, default=10.0,
                    help='rotate stored files at this size (default: 10)')
    ap.add_argument('--clear', action='store_true',
                    help='clear the device log buffer before starting')
    ap.add_argument('--no-notify', action='store_true',
                    help='disable desktop notifications for errors')
    ap.add_argument('--log-file', metavar='PATH', type=Path,
                    default=DEFAULT_LOG_FILE, help='diagnostic log file')
    ap.add_argument('--query', nargs=2, metavar=('START', 'END'),
                    help='print stored logs between two ISO-8601 times and exit')
    args = ap.parse_args()

    if args.max_size <= 0:
        ap.error('--max-size must be positive')
    levels = None
    if args.level:
        try:
            levels = parse_levels(args.level)
        except ValueError as exc:
            ap.error(str(exc))

    if args.query:
        try:
            start, end = (datetime.fromisoformat(v) for v in args.query)
        except ValueError as exc:
            ap.error(f'--query: {exc}')
        print_query(args.storage_dir, start, end)
        return

    args.log_file.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s %(name)s[%(process)d]: %(levelname)s %(message)s',
        datefmt='%Y-%m-%dT%H:%M:%S',
        handlers=[logging.FileHandler(args.log_file, mode='a', encoding='utf-8')],
    )

    entry_q:  _queue.SimpleQueue = _queue.SimpleQueue()
    status_q: _queue.SimpleQueue = _queue.SimpleQueue()

    storage = None
    if args.save:
        try:
            storage = StorageRotator(args.storage_dir, args.max_size,
                                     status_q=status_q, device_id=args.serial)
        except OSError as exc:
            sys.exit(f'Error: cannot open storage in {args.storage_dir}: {exc}')
        status_q.put(('storage', storage.info()))

    source = StdinSource() if args.stdin else LogcatSource(args.serial, args.clear)
    try:
        stream = source.open()
    except SourceUnavailable as exc:
        log.error('source unavailable: %s', exc)
        sys.exit(f'Error: {exc}')

    worker = IngestWorker(stream, entry_q, storage, status_q, tag_filter=args.tag)
    app    = LogApp(
        entry_q, status_q,
        state     = AppState(levels=levels),
        probe     = getattr(source, 'probe', None),
        clipboard = copy_to_clipboard,
        notifier  = None if args.no_notify else send_notification,
    )
    app.state.notify_on_error = not args.no_notify

    log.info('starting dashboard')
    worker.start()
    try:
        if args.stdin:
            # stdin carries the log stream, so keyboard input comes from the tty
            with open('/dev/tty') as tty:
                from urwid import raw_display
                app.run(raw_display.Screen(input=tty))
        else:
            app.run()
    except KeyboardInterrupt:
        log.info('KeyboardInterrupt')
    finally:
        source.close()
        worker.stop()
        if storage is not None:
            storage.close()
        log.info('exiting dashboard')


if __name__ == '__main__':
    main()
