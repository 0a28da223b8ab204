"""Pool of reusable read buffers for log tailing."""

from __future__ import annotations

import threading

DEFAULT_BUFFER_SIZE = 4096

# Upper bound on idle buffers kept around
_MAX_POOLED = 16

_pool: list[bytearray] = []
_lock = threading.Lock()


def get_buffer() -> bytearray:
    """Take a buffer of ``DEFAULT_BUFFER_SIZE`` bytes from the pool.

    Return it with :func:`put_buffer` when done.
    """
    with _lock:
        if _pool:
            return _pool.pop()
    return bytearray(DEFAULT_BUFFER_SIZE)


def put_buffer(buf: bytearray | None) -> None:
    """Return a buffer to the pool. Non-standard buffers are dropped."""
    if buf is None or len(buf) != DEFAULT_BUFFER_SIZE:
        return
    with _lock:
        if len(_pool) < _MAX_POOLED:
            _pool.append(buf)

