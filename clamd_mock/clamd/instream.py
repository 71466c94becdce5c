"""INSTREAM sub-protocol.

After the INSTREAM command the client sends chunks, each prepended by
its length as a 4-byte unsigned integer in network byte order, and a
zero length chunk to mark the end of the stream.

"""
import logging
import struct
import typing as t

from .protocol import read_exact
from .scanbuffer import ScanBuffer
from .types import ConnectionTruncated, MAX_SIZE

logger = logging.getLogger(__name__)

SIZE_LIMIT_EXCEEDED = "INSTREAM size limit exceeded. ERROR"

# payload we are not keeping is consumed in pieces of this size
DRAIN_BUFFER_SIZE = 64 * 1024


def read_chunk_size(rfile: t.BinaryIO) -> int:
    size_bytes = read_exact(rfile, 4)
    if size_bytes is None:
        raise ConnectionTruncated("Stream ended reading INSTREAM chunk size")
    return struct.unpack("!L", size_bytes)[0]


def discard(rfile: t.BinaryIO, size: int) -> None:
    """Consume size bytes without keeping them.
    """
    while size > 0:
        chunk = rfile.read(min(size, DRAIN_BUFFER_SIZE))
        if not chunk:
            raise ConnectionTruncated("Stream ended reading INSTREAM chunk")
        size -= len(chunk)


def scan_stream(rfile: t.BinaryIO, max_size: int = MAX_SIZE) -> str:
    """Receive an INSTREAM upload and scan it.

    Once the total size goes over max_size, the remaining chunks are
    drained up to the terminator so the connection stays in sync.

    :param rfile: Binary stream of the connection, right after INSTREAM
    :param max_size: Max aggregate size of the payload
    :return: Reply body
    :raises ConnectionTruncated: The stream ended before the terminator
    """
    scan_buffer = ScanBuffer(max_size)
    total = 0
    overflowed = False

    size = read_chunk_size(rfile)
    while size:
        total += size
        if overflowed or total > max_size:
            if not overflowed:
                logger.info("INSTREAM over %d bytes, draining", max_size)
            overflowed = True
            discard(rfile, size)
        else:
            chunk = read_exact(rfile, size)
            if chunk is None:
                raise ConnectionTruncated(
                    "Stream ended reading INSTREAM chunk")
            scan_buffer.write(chunk)
        size = read_chunk_size(rfile)

    if overflowed:
        return SIZE_LIMIT_EXCEEDED

    detection = scan_buffer.detect()
    logger.debug("Scanned %d bytes: %s", total,
                 detection.signature or "clean")
    if detection.found:
        return f"stream: {detection.signature} FOUND"
    return "stream: OK"
