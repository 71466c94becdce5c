"""Command framing for the clamd protocol.

Commands come in three shapes (see man clamd(8)):

 - ``z<COMMAND>\\0`` null terminated
 - ``n<COMMAND>\\n`` newline terminated, a trailing CR is stripped
 - ``<COMMAND>\\n`` bare, newline terminated, a trailing CR is stripped

Replies use the delimiter of the command that triggered them and carry
a ``<id>: `` prefix while the connection is in a session.

"""
import logging
import typing as t

from .types import Command, Framing

logger = logging.getLogger(__name__)


def read_until(rfile: t.BinaryIO, delimiter: bytes) -> bytes | None:
    """Read bytes up to delimiter, which is consumed and not returned.

    :param rfile: Binary stream to read from
    :param delimiter: Single byte terminator
    :return: Bytes read, None if the stream ended before the delimiter
    """
    if delimiter == b"\n":
        line = rfile.readline()
        if not line.endswith(b"\n"):
            return None
        return line[:-1]

    buf = bytearray()
    while True:
        ch = rfile.read(1)
        if not ch:
            return None
        if ch == delimiter:
            return bytes(buf)
        buf.extend(ch)


def read_line_crlf(rfile: t.BinaryIO) -> bytes | None:
    """Read a newline terminated line, dropping an optional trailing CR.
    """
    line = read_until(rfile, b"\n")
    if line is None:
        return None
    return line[:-1] if line.endswith(b"\r") else line


def read_exact(rfile: t.BinaryIO, size: int) -> bytes | None:
    """Read exactly size bytes.

    :return: Bytes read, None if the stream ended prematurely
    """
    data = bytearray()
    while len(data) < size:
        chunk = rfile.read(size - len(data))
        if not chunk:
            return None
        data.extend(chunk)
    return bytes(data)


def read_command(rfile: t.BinaryIO) -> Command | None:
    """Read one command off the wire.

    Only the very first byte selects the framing, so a bare command
    starting with 'z' or 'n' is read as a prefixed one.

    :param rfile: Binary stream of the connection
    :return: Parsed command, None when the peer closed the stream
    """
    first = rfile.read(1)
    if not first:
        return None

    if first == b"z":
        framing = Framing.NULL
        raw = read_until(rfile, framing.delimiter)
    elif first == b"n":
        framing = Framing.NEWLINE
        raw = read_line_crlf(rfile)
    else:
        framing = Framing.NEWLINE
        rest = read_line_crlf(rfile)
        raw = None if rest is None else first + rest

    if raw is None:
        logger.debug("Stream ended before command terminator")
        return None

    return Command(name=raw.decode("utf-8", errors="replace"),
                   framing=framing)


def format_reply(body: str,
                 framing: Framing,
                 session_id: int | None = None) -> bytes:
    """Frame a reply body.

    :param body: Reply text
    :param framing: Framing style of the triggering command
    :param session_id: Id of the active session, if any
    :return: Bytes to send
    """
    prefix = f"{session_id}: " if session_id is not None else ""
    return b"".join([
        prefix.encode(),
        body.encode(),
        framing.delimiter,
    ])


def write_reply(wfile: t.BinaryIO,
                command: Command,
                body: str,
                session_id: int | None = None) -> None:
    """Send a reply for command on wfile.
    """
    reply = format_reply(body, command.framing, session_id)
    logger.debug("Sending reply: %s", reply)
    wfile.write(reply)
    wfile.flush()
