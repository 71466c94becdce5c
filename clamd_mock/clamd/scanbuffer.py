"""Bounded in-memory buffer that knows how to spot the EICAR test file.

A flat payload only matters in its first bytes, so past FLAT_LIMIT
writes are dropped unless the content looks like a zip or OLE
container, which is buffered whole up to the size cap.

"""
import io
import logging
import re
import struct
import typing as t
import zipfile
import zlib

from .types import CLEAN, \
    Detection, \
    EICAR, \
    EICAR_LEGACY_NAME, \
    EICAR_NAME, \
    FLAT_LIMIT, \
    MAX_SIZE, \
    OLE_MAGIC, \
    ZIP_MAGIC

logger = logging.getLogger(__name__)

# optionally padded with whitespace to 128 characters
# https://www.eicar.org/download-anti-malware-testfile/
eicar_padded_pattern = re.compile(re.escape(EICAR) + rb"[ \t\n\r\x1a]{0,60}")

# zip local file header: magic, version, flags, method, time, date,
# crc, compressed size, size, name length, extra length
local_header = struct.Struct("<4s2xHH8xLLHH")
DATA_DESCRIPTOR_FLAG = 0x08
DATA_DESCRIPTOR_MAGIC = b"PK\x07\x08"


class ScanBuffer:
    """Append-only byte buffer with a capacity policy and detection.
    """
    def __init__(self, max_size: int = MAX_SIZE):
        self.max_size = max_size
        self._data = bytearray()
        self._detection = None

    def __len__(self):
        return len(self._data)

    def getvalue(self) -> bytes:
        return bytes(self._data)

    def write(self, data: bytes) -> int:
        """Append data if the buffer still accepts it.

        Rejected data is dropped silently, the full length is reported
        as written either way.
        """
        if self.accepts_more():
            self._data.extend(data)
            self._detection = None
        return len(data)

    def accepts_more(self) -> bool:
        if len(self._data) <= FLAT_LIMIT:
            return True
        if self.is_zip() or self.is_ole():
            return len(self._data) <= self.max_size
        return False

    def is_zip(self) -> bool:
        return self._data[:4] == ZIP_MAGIC

    def is_ole(self) -> bool:
        return self._data[:4] == OLE_MAGIC

    def detect(self) -> Detection:
        """Scan the buffer, result is cached until the next write.
        """
        if self._detection is None:
            self._detection = self._detect()
        return self._detection

    def _detect(self) -> Detection:
        if self.is_zip():
            return self._zip_detection()
        if self.is_ole():
            return self._ole_detection()
        if self._data == EICAR:
            return Detection(EICAR_NAME)
        if eicar_padded_pattern.fullmatch(self._data):
            return Detection(EICAR_LEGACY_NAME)
        return CLEAN

    def _ole_detection(self) -> Detection:
        # no OLE parsing, enough for documents embedding the plain string
        if EICAR in self._data:
            return Detection(EICAR_NAME)
        return CLEAN

    def _zip_detection(self) -> Detection:
        try:
            for content in zip_entries(self.getvalue(), self.max_size):
                nested = ScanBuffer(self.max_size)
                nested.write(content)
                detection = nested.detect()
                if detection.found:
                    return detection
        except Exception as e:
            # a broken archive is just a clean one
            logger.debug("Unable to read zip content: %s", str(e))
        return CLEAN


def zip_entries(data: bytes, max_size: int) -> t.Iterator[bytes]:
    """Yield the content of each zip entry not larger than max_size.

    The central directory is used when there is one, otherwise the
    local file headers are walked from the start of the data.
    """
    try:
        archive = zipfile.ZipFile(io.BytesIO(data))
    except zipfile.BadZipFile:
        logger.debug("No zip central directory, reading local headers")
        yield from local_zip_entries(data, max_size)
        return

    with archive:
        for entry in archive.infolist():
            if entry.file_size > max_size:
                logger.debug("Skipping zip entry %s (%d bytes)",
                             entry.filename, entry.file_size)
                continue
            yield archive.read(entry)


def inflate(data: bytes, max_size: int) -> tuple[bytes, int]:
    """Decompress a raw deflate stream at the start of data.

    :return: Decompressed content and number of compressed bytes used
    """
    decompressor = zlib.decompressobj(-zlib.MAX_WBITS)
    content = decompressor.decompress(data, max_size + 1)
    if not decompressor.eof:
        raise zlib.error("Deflate stream truncated or over size limit")
    return content, len(data) - len(decompressor.unused_data)


def local_zip_entries(data: bytes, max_size: int) -> t.Iterator[bytes]:
    """Yield entries content reading only the zip local file headers.
    """
    offset = 0
    while data[offset:offset + 4] == ZIP_MAGIC:
        flags, method, compressed_size, size, name_len, extra_len = \
            local_header.unpack_from(data, offset)[1:]
        if method not in (zipfile.ZIP_STORED, zipfile.ZIP_DEFLATED):
            raise NotImplementedError(f"Zip compression method {method}")
        start = offset + local_header.size + name_len + extra_len

        if not flags & DATA_DESCRIPTOR_FLAG:
            end = start + compressed_size
            raw = data[start:end]
            if len(raw) < compressed_size:
                raise zipfile.BadZipFile("Zip entry truncated")
            offset = end
            if size > max_size:
                logger.debug("Skipping zip entry (%d bytes)", size)
                continue
            if method == zipfile.ZIP_STORED:
                yield raw
            else:
                yield inflate(raw, max_size)[0]
            continue

        # sizes follow the data, in the data descriptor
        if method == zipfile.ZIP_STORED:
            end = data.find(DATA_DESCRIPTOR_MAGIC, start)
            if end < 0:
                raise zipfile.BadZipFile("Zip data descriptor not found")
            content = data[start:end]
        else:
            content, used = inflate(data[start:], max_size)
            end = start + used
        if data[end:end + 4] == DATA_DESCRIPTOR_MAGIC:
            end += 4
        offset = end + 12
        if len(content) <= max_size:
            yield content
