import threading

import pytest
from clamd_mock.clamd import ClamdClient, ClamdTCPServer


@pytest.fixture()
def clamd_server():
    server = ClamdTCPServer(("127.0.0.1", 0))
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()

    yield server

    server.shutdown()
    server.server_close()


@pytest.fixture()
def server_address(clamd_server):
    return clamd_server.server_address[:2]


@pytest.fixture()
def clamd(server_address):
    """Client connected to the mock, closed at teardown.
    """
    host, port = server_address
    with ClamdClient(host, port, timeout=5) as client:
        yield client
