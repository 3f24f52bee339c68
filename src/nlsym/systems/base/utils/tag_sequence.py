# Copyright (C) 2025 Gil Benezer
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.

"""
Structural Tag Sequence

Hands out monotonically increasing structural tags to systems. Two systems
with the same tag are structurally identical, so tags are used as cheap
equality short-circuits and cache keys.

The process-wide sequence is installed explicitly by init_tag_sequence()
(the package does this once on import). Systems may also be given their
own sequence through dependency injection:

    >>> seq = TagSequence(start=100)
    >>> sys = NonlinearSystem(eqs, [x], [a], name="s", tag_sequence=seq)
    >>> sys.tag
    100
"""

import itertools
import threading
from typing import Optional


class TagSequence:
    """
    Thread-safe monotonically increasing integer sequence.

    Example:
        >>> seq = TagSequence()
        >>> seq.next(), seq.next()
        (1, 2)
    """

    def __init__(self, start: int = 1):
        self._start = start
        self._counter = itertools.count(start)
        self._next_value = start
        self._lock = threading.Lock()

    def next(self) -> int:
        """Return the next tag. Never returns the same value twice."""
        with self._lock:
            value = next(self._counter)
            self._next_value = value + 1
            return value

    def peek(self) -> int:
        """Value the next call to next() will return."""
        with self._lock:
            return self._next_value

    def __repr__(self) -> str:
        return f"TagSequence(start={self._start}, next={self.peek()})"


_process_sequence: Optional[TagSequence] = None
_process_lock = threading.Lock()


def init_tag_sequence(start: int = 1) -> TagSequence:
    """
    Install the process-wide tag sequence.

    Calling it again replaces the sequence. The replacement never starts
    below the next tag of the current sequence, so tags already handed out
    are not reissued. Returns the installed sequence.
    """
    global _process_sequence
    with _process_lock:
        if _process_sequence is not None:
            start = max(start, _process_sequence.peek())
        _process_sequence = TagSequence(start)
        return _process_sequence


def get_tag_sequence() -> TagSequence:
    """
    Return the process-wide tag sequence.

    Raises:
        RuntimeError: If init_tag_sequence() has not been called
    """
    sequence = _process_sequence
    if sequence is None:
        raise RuntimeError(
            "The structural tag sequence is not initialised. "
            "Call nlsym.systems.base.utils.tag_sequence.init_tag_sequence() first."
        )
    return sequence
