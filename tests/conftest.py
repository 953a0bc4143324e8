import queue

import pytest

from devinsight import Level, LogEntry


def make_entry(level: Level = Level.INFO, message: str = 'msg', tag: str = 'Tag',
               timestamp: str = '03-21 10:00:00.000') -> LogEntry:
    return LogEntry(level, timestamp, tag, message)


def drain(q: queue.SimpleQueue) -> list:
    items = []
    while True:
        try:
            items.append(q.get_nowait())
        except queue.Empty:
            return items


@pytest.fixture
def entry_q() -> queue.SimpleQueue:
    return queue.SimpleQueue()


@pytest.fixture
def status_q() -> queue.SimpleQueue:
    return queue.SimpleQueue()
