"""Client for clamd over TCP socket.

Works against a real clamd as well as against the mock.  Commands can
be sent one per connection, or many on the same connection inside a
session:

.. code-block:: python

    with ClamdClient("localhost", 3310) as clamd:
        clamd.idsession()
        pong = clamd.ping()
        scan = clamd.instream(open("/my/file.txt", "rb"))
        clamd.end()

"""
import logging
import re
import socket
import struct
import typing as t

from .types import ClamdException, \
    ClamdScanResult, \
    ClamdScanStatus, \
    ClamdCmdResponse

logger = logging.getLogger(__name__)

scan_status_line_pattern = re.compile(r"^(.+?):\s+(.+)?\s?(OK|FOUND|ERROR)$")
error_line_pattern = re.compile(r"^(.+?)\s+ERROR$")
session_prefix_pattern = re.compile(r"^(\d+): (.*)$", re.DOTALL)


class ClamdClient:
    """Client for clamd daemon over TCP socket.
    """
    def __init__(self,
                 host: str,
                 port: int,
                 timeout: int = 300,  # seconds
                 cmd_terminator: bytes = b'\x00',
                 buffer_size: int = 1024):
        """Create clamd client instance for TCP socket.

        :param host: TCP host
        :param port: TCP port
        :param timeout: Timeout of the socket
        :param cmd_terminator: Terminator of clamd commands
        :param buffer_size: Size of the buffer to read/write to clamd
        """
        self.host = host
        self.port = port
        self.timeout = timeout
        self.cmd_terminator = cmd_terminator
        self.buffer_size = buffer_size

        # cmd specifier is a prefix we put before the command.  Its
        # value is 'z' for null terminated commands or 'n' for newline
        # terminated commands.  Read more in man clamd(8)
        if cmd_terminator == b'\x00':
            self.cmd_specifier = b'z'
        elif cmd_terminator == b'\n':
            self.cmd_specifier = b'n'
        else:
            raise ClamdException(
                f"Unknown command terminator {cmd_terminator!r}, "
                "only \\x00 and \\n are understood by clamd")
        self._sock = None
        self._pending = bytearray()

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, *args, **kwargs):
        self.close()
        return False

    def connect(self) -> None:
        """Connect to clamd daemon.
        """
        self._sock = socket.create_connection((self.host, self.port),
                                              timeout=self.timeout)

    def close(self) -> None:
        """Close connection to clamd daemon.
        """
        self._sock.close()

    def ping(self) -> ClamdCmdResponse:
        """Execute clamd PING command.

        Check the server's state. It should reply with "PONG".
        """
        return self._simple_command("PING")

    def version(self) -> ClamdCmdResponse:
        """Execute clamd VERSION command.
        """
        return self._simple_command("VERSION")

    def instream(self, input_stream: t.IO[bytes]) -> ClamdScanResult:
        """Execute clamd INSTREAM command.

        Scan a stream of data. The stream is sent to clamd in chunks,
        after INSTREAM, on the same socket on which the command was
        sent.

        :param input_stream: Input stream to analyze
        :return: Result of the scanning as ClamdScanResult instance
        """
        self._send_command_streaming("INSTREAM", input_stream)
        recd_raw = self._recv()
        return self._parse_scan_result(recd_raw)

    def idsession(self) -> None:
        """Execute clamd IDSESSION command.

        Start a clamd session. Within a session multiple commands can
        be sent on the same socket, replies are prefixed with the
        session id.  clamd does not reply to this command.
        """
        self._send_command("IDSESSION")

    def end(self) -> None:
        """Execute clamd END command, closing the session.
        """
        self._send_command("END")

    def _simple_command(self, command: str) -> ClamdCmdResponse:
        """Send a command and read its one line reply.
        """
        self._send_command(command)
        recd_raw = self._recv()
        return self._parse_response(recd_raw)

    def _send_command(self, command: str) -> None:
        """Send command to clamd.

        :param command: Command to execute, possible values in man clamd(8)
        """
        full_cmd = b''.join([
            self.cmd_specifier,
            command.encode(),
            self.cmd_terminator,
        ])
        logger.debug("Sending command: %s", full_cmd)
        self._sock.sendall(full_cmd)

    def _recv(self) -> str:
        """Receive one reply from clamd socket.

        The connection may be kept open by a session, so we read up to
        the command terminator rather than to the end of the stream.

        :return: Raw data received (UTF-8), terminator included
        """
        while self.cmd_terminator not in self._pending:
            recd_buf = self._sock.recv(self.buffer_size)
            if not recd_buf:
                # connection closed without a full reply
                recd_data = bytes(self._pending)
                self._pending.clear()
                return recd_data.decode()
            self._pending.extend(recd_buf)

        end = self._pending.index(self.cmd_terminator) + 1
        recd_data = bytes(self._pending[:end])
        del self._pending[:end]
        return recd_data.decode()

    def _send_command_streaming(self,
                                command: str,
                                input_stream: t.IO[bytes]) -> None:
        """Send a command streaming content to clamd.

        :param command: Command to send
        :input_stream: Input stream to send chunked to clamd
        """
        self._send_command(command)

        # for packing the chunk we prepend the length of chunk data in a
        # 4-byte integer, so we can read 4 bytes less from the input stream
        read_buf_size = self.buffer_size - 4

        # send stream of packets
        buf = input_stream.read(read_buf_size)
        while buf:
            buflen = len(buf)
            # pack buf as man clamd(8) says for INSTREAM command
            chunk = struct.pack('!L{}s'.format(buflen), buflen, buf)
            self._sock.sendall(chunk)
            buf = input_stream.read(read_buf_size)

        # send an empty buffer to signal that we are finished
        self._sock.sendall(struct.pack('!L', 0))

    def _parse_response(self, raw_resp: str) -> ClamdCmdResponse:
        """Parse a generic clamd response to a command.

        :param raw_resp: Raw clamd response string
        :return: Structured response object
        """
        message = raw_resp.removesuffix(self.cmd_terminator.decode())

        # inside a session clamd prepends "<id>: "
        session_id = None
        m = session_prefix_pattern.match(message)
        if m:
            session_id = int(m.group(1))
            message = m.group(2)

        return ClamdCmdResponse(
            raw_data=raw_resp,
            message=message,
            session_id=session_id,
        )

    def _parse_scan_result(self, raw_resp: str) -> ClamdScanResult:
        """Parse a scanning command response.

        :param raw_resp: Raw clamd response string
        :return: Structured scan result
        """
        resp = self._parse_response(raw_resp)

        # parse the main line (message)
        m = scan_status_line_pattern.match(resp.message)
        if not m:
            # errors not bound to a file, e.g. size limit exceeded
            m_err = error_line_pattern.match(resp.message)
            if m_err:
                return ClamdScanResult(
                    raw_data=raw_resp,
                    message=resp.message,
                    session_id=resp.session_id,
                    status=ClamdScanStatus.ERROR,
                    err_msg=m_err.group(1),
                )
            # not able to parse correctly clamd response
            return ClamdScanResult(
                raw_data=raw_resp,
                message=resp.message,
                session_id=resp.session_id,
                status=ClamdScanStatus.CLIENT_PARSE_ERROR,
                err_msg="Unable to parse clamd response",
            )

        input_file = m.group(1)
        msg = (m.group(2) or "").strip()
        status = ClamdScanStatus(m.group(3))

        # msg holds the virus name when FOUND, the error when ERROR
        virus = msg if status == ClamdScanStatus.FOUND else None
        err_msg = msg if status == ClamdScanStatus.ERROR else None

        return ClamdScanResult(
            raw_data=raw_resp,
            message=resp.message,
            session_id=resp.session_id,
            input_file=input_file,
            status=status,
            virus=virus,
            err_msg=err_msg,
        )
