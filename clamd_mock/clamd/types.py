"""Types and constants for the clamd protocol.

"""
from dataclasses import dataclass
from enum import Enum

EICAR = rb"X5O!P%@AP[4\PZX54(P^)7CC)7}$EICAR-STANDARD-ANTIVIRUS-TEST-FILE!$H+H*"
EICAR_NAME = "Win.Test.EICAR_HDB-1"
EICAR_LEGACY_NAME = "Eicar-Signature"

ZIP_MAGIC = b"\x50\x4b\x03\x04"
OLE_MAGIC = b"\xd0\xcf\x11\xe0"

# max aggregate INSTREAM payload, also the container buffering cap
MAX_SIZE = 1024 * 100
# room for a padded eicar plus one extra byte
FLAT_LIMIT = 128

VERSION = "ClamAV mock 0.0"


class ClamdException(Exception):
    """Raised when error occurred communicating over the clamd protocol.
    """


class ConnectionTruncated(ClamdException):
    """Raised when the peer closed the stream in the middle of a command.
    """


class Framing(Enum):
    """Framing style of a command, valued by its delimiter.
    """
    NULL = b"\x00"
    NEWLINE = b"\n"

    @property
    def delimiter(self) -> bytes:
        return self.value


@dataclass(frozen=True)
class Command():
    """A command read off the wire.
    """
    name: str
    framing: Framing


@dataclass(frozen=True)
class Detection():
    """Outcome of scanning a buffer, clean when signature is None.
    """
    signature: str | None = None

    @property
    def found(self) -> bool:
        return self.signature is not None


CLEAN = Detection()


class ClamdScanStatus(Enum):
    """Status of clamd scanning.
    """
    OK = "OK"
    FOUND = "FOUND"
    ERROR = "ERROR"
    # this is not an error returned by clamd, but reflects our
    # inability to parse the clamd response correctly
    CLIENT_PARSE_ERROR = "CLIENT_PARSE_ERROR"


@dataclass
class ClamdCmdResponse():
    """Response of a clamd command.
    """
    raw_data: str
    message: str
    session_id: int | None = None

    def __str__(self):
        return self.raw_data


@dataclass
class ClamdScanResult(ClamdCmdResponse):
    """Result of a clamd scanning.
    """
    input_file: str | None = None
    status: ClamdScanStatus = ClamdScanStatus.CLIENT_PARSE_ERROR
    virus: str | None = None
    err_msg: str | None = None
