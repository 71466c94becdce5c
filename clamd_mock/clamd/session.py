"""clamd sessions.

IDSESSION puts a connection in a session: replies get prefixed by the
session id and the connection stays open after INSTREAM.  Ids come
from a counter shared by every connection of the server.

"""
import threading
from dataclasses import dataclass


class SessionCounter:
    """Server-wide, thread safe, strictly increasing session ids.
    """
    def __init__(self, start: int = 0):
        self._value = start
        self._lock = threading.Lock()

    def next_id(self) -> int:
        with self._lock:
            self._value += 1
            return self._value


@dataclass
class Session():
    """Session state of a single connection.
    """
    id: int | None = None

    @property
    def active(self) -> bool:
        return self.id is not None

    def start(self, counter: SessionCounter) -> int:
        """Enter a session with a fresh id from counter.
        """
        self.id = counter.next_id()
        return self.id
