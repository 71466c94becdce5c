import io
import logging
import socket
import struct
import zipfile

import pytest
from clamd_mock.clamd import ClamdClient, ClamdException, ClamdScanStatus
from clamd_mock.clamd import server as clamd_server_module
from clamd_mock.clamd.types import EICAR, MAX_SIZE

infected = EICAR


def connect(server_address):
    return socket.create_connection(server_address, timeout=5)


def recv_all(sock):
    """Read until the server closes the connection.
    """
    data = bytearray()
    buf = sock.recv(4096)
    while buf:
        data.extend(buf)
        buf = sock.recv(4096)
    return bytes(data)


def recv_reply(sock, delimiter):
    data = bytearray()
    while not data.endswith(delimiter):
        buf = sock.recv(1)
        assert buf, "connection closed before reply"
        data.extend(buf)
    return bytes(data)


def instream_chunks(*payloads):
    return b"".join(struct.pack("!L", len(p)) + p
                    for p in payloads) + struct.pack("!L", 0)


##
# Client
##


def test_cmd_ping(clamd):
    pong = clamd.ping()

    assert pong.raw_data == "PONG\x00"
    assert pong.message == "PONG"
    assert pong.session_id is None


def test_cmd_version(clamd):
    version = clamd.version()

    assert version.message == "ClamAV mock 0.0"


def test_cmd_instream(clamd):
    result = clamd.instream(io.BytesIO(b"just a text file\n"))

    assert result
    assert result.input_file == "stream"
    assert result.virus is None
    assert result.status == ClamdScanStatus.OK


def test_cmd_instream_infected(clamd):
    result = clamd.instream(io.BytesIO(infected))

    assert result.input_file == "stream"
    assert result.virus == "Win.Test.EICAR_HDB-1"
    assert result.status == ClamdScanStatus.FOUND


def test_cmd_instream_infected_padded(clamd):
    result = clamd.instream(io.BytesIO(infected + b" \t\r\n\x1a" * 12))

    assert result.virus == "Eicar-Signature"
    assert result.status == ClamdScanStatus.FOUND


def test_cmd_instream_padded_too_much(clamd):
    result = clamd.instream(io.BytesIO(infected + b" " * 61))

    assert result.status == ClamdScanStatus.OK


def test_cmd_instream_zip(clamd):
    data = io.BytesIO()
    with zipfile.ZipFile(data, "w", zipfile.ZIP_DEFLATED) as archive:
        archive.writestr("eicar.com", infected)
    data.seek(0)

    result = clamd.instream(data)

    assert result.virus == "Win.Test.EICAR_HDB-1"
    assert result.status == ClamdScanStatus.FOUND


def test_cmd_instream_large(clamd):
    result = clamd.instream(io.BytesIO(b"\x00" * (MAX_SIZE + 1)))

    assert result.status == ClamdScanStatus.ERROR
    assert result.message == "INSTREAM size limit exceeded. ERROR"
    assert result.err_msg == "INSTREAM size limit exceeded."


def test_session(server_address):
    host, port = server_address
    with ClamdClient(host, port, timeout=5) as clamd:
        clamd.idsession()
        pong = clamd.ping()
        large = clamd.instream(io.BytesIO(b"\x00" * (MAX_SIZE + 1)))
        result = clamd.instream(io.BytesIO(infected))
        version = clamd.version()
        clamd.end()

    assert pong.message == "PONG"
    assert pong.session_id is not None
    assert large.status == ClamdScanStatus.ERROR
    assert large.session_id == pong.session_id
    assert result.status == ClamdScanStatus.FOUND
    assert result.session_id == pong.session_id
    assert version.message == "ClamAV mock 0.0"


def test_session_newline_terminator(server_address):
    host, port = server_address
    with ClamdClient(host, port, timeout=5, cmd_terminator=b"\n") as clamd:
        clamd.idsession()
        pong = clamd.ping()

    assert pong.raw_data == f"{pong.session_id}: PONG\n"


##
# Raw wire
##


@pytest.mark.parametrize("request_, reply", [
    (b"zPING\x00", b"PONG\x00"),
    (b"nPING\n", b"PONG\n"),
    (b"nPING\r\n", b"PONG\n"),
    (b"PING\n", b"PONG\n"),
    (b"PING\r\n", b"PONG\n"),
    (b"zVERSION\x00", b"ClamAV mock 0.0\x00"),
    (b"VERSION\n", b"ClamAV mock 0.0\n"),
    (b"zFOO\x00", b"UNKNOWN COMMAND\x00"),
    (b"ping\n", b"UNKNOWN COMMAND\n"),
    (b"nope\n", b"UNKNOWN COMMAND\n"),
    (b"z\x00", b"UNKNOWN COMMAND\x00"),
])
def test_reply_framing(server_address, request_, reply):
    with connect(server_address) as sock:
        sock.sendall(request_)
        assert recv_reply(sock, reply[-1:]) == reply


def test_pipelined_commands(server_address):
    with connect(server_address) as sock:
        sock.sendall(b"zPING\x00nVERSION\nFOO\r\n")
        assert recv_reply(sock, b"\x00") == b"PONG\x00"
        assert recv_reply(sock, b"\n") == b"ClamAV mock 0.0\n"
        assert recv_reply(sock, b"\n") == b"UNKNOWN COMMAND\n"


@pytest.mark.parametrize("command", [b"zEND\x00", b"zQUIT\x00", b"END\n",
                                     b"nQUIT\r\n"])
def test_end_closes(server_address, command):
    with connect(server_address) as sock:
        sock.sendall(command)
        assert recv_all(sock) == b""


def test_end_in_session_closes(server_address):
    with connect(server_address) as sock:
        sock.sendall(b"zIDSESSION\x00zEND\x00")
        assert recv_all(sock) == b""


def test_instream_closes_outside_session(server_address):
    with connect(server_address) as sock:
        sock.sendall(b"zINSTREAM\x00" + instream_chunks(infected))
        assert recv_all(sock) == b"stream: Win.Test.EICAR_HDB-1 FOUND\x00"


def test_instream_newline(server_address):
    with connect(server_address) as sock:
        sock.sendall(b"nINSTREAM\n" + instream_chunks(b"hello"))
        assert recv_all(sock) == b"stream: OK\n"


def test_instream_stays_open_in_session(server_address):
    with connect(server_address) as sock:
        sock.sendall(b"zIDSESSION\x00")
        sock.sendall(b"zINSTREAM\x00" + instream_chunks(infected))
        reply = recv_reply(sock, b"\x00")
        session_id = reply.split(b": ", 1)[0]
        assert reply == session_id + b": stream: Win.Test.EICAR_HDB-1 FOUND\x00"

        sock.sendall(b"zPING\x00")
        assert recv_reply(sock, b"\x00") == session_id + b": PONG\x00"


def test_size_limit_in_session(server_address):
    with connect(server_address) as sock:
        sock.sendall(b"zIDSESSION\x00zINSTREAM\x00")
        sock.sendall(instream_chunks(b"a" * MAX_SIZE, b"b"))
        reply = recv_reply(sock, b"\x00")
        assert reply.endswith(b": INSTREAM size limit exceeded. ERROR\x00")

        sock.sendall(b"nPING\n")
        assert recv_reply(sock, b"\n").endswith(b": PONG\n")


def test_session_ids_increase_across_connections(server_address):
    with connect(server_address) as first, connect(server_address) as second:
        first.sendall(b"zIDSESSION\x00zPING\x00")
        first_id = int(recv_reply(first, b"\x00").split(b":")[0])

        second.sendall(b"zIDSESSION\x00zPING\x00")
        second_id = int(recv_reply(second, b"\x00").split(b":")[0])

    assert second_id > first_id


def test_truncated_instream_closes_silently(server_address):
    with connect(server_address) as sock:
        sock.sendall(b"zINSTREAM\x00" + struct.pack("!L", 100) + b"short")
        sock.shutdown(socket.SHUT_WR)
        assert recv_all(sock) == b""


def test_truncated_command_closes(server_address):
    with connect(server_address) as sock:
        sock.sendall(b"zPING")
        sock.shutdown(socket.SHUT_WR)
        assert recv_all(sock) == b""


def test_server_survives_truncated_stream(server_address):
    with connect(server_address) as sock:
        sock.sendall(b"zINSTREAM\x00\x00\x00")

    with connect(server_address) as sock:
        sock.sendall(b"zPING\x00")
        assert recv_reply(sock, b"\x00") == b"PONG\x00"


def test_server_survives_unexpected_error(server_address, monkeypatch, caplog):
    scan_stream = clamd_server_module.scan_stream

    def broken_scan(rfile, max_size):
        # consume the upload so the close is a clean one
        scan_stream(rfile, max_size)
        raise RuntimeError("scan engine exploded")

    monkeypatch.setattr(clamd_server_module, "scan_stream", broken_scan)

    with caplog.at_level(logging.ERROR, logger="clamd_mock.clamd.server"):
        with connect(server_address) as sock:
            sock.sendall(b"zINSTREAM\x00" + instream_chunks(infected))
            assert recv_all(sock) == b""

    errors = [r for r in caplog.records if r.levelno == logging.ERROR]
    assert errors
    assert errors[0].exc_info is not None
    assert errors[0].exc_info[0] is RuntimeError

    with connect(server_address) as sock:
        sock.sendall(b"zPING\x00")
        assert recv_reply(sock, b"\x00") == b"PONG\x00"


def test_client_unknown_terminator():
    with pytest.raises(ClamdException):
        ClamdClient("127.0.0.1", 3310, cmd_terminator=b"\r")


def test_client_logs_commands(clamd, caplog):
    with caplog.at_level(logging.DEBUG, logger="clamd_mock.clamd.client"):
        clamd.ping()

    assert any(r.name == "clamd_mock.clamd.client"
               and "zPING" in r.getMessage() for r in caplog.records)
