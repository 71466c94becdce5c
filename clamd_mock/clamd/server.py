"""Mock clamd daemon over TCP socket.

One thread per connection, each running a read-dispatch-reply loop
until END, QUIT, end of stream or error.  The socket is closed on
every exit path by socketserver.

"""
import logging
import socketserver
import typing as t

from .instream import scan_stream
from .protocol import read_command, write_reply
from .session import Session, SessionCounter
from .types import Command, ConnectionTruncated, MAX_SIZE, VERSION

logger = logging.getLogger(__name__)


class Dispatcher:
    """Map commands to their behaviour.
    """
    def __init__(self,
                 counter: SessionCounter,
                 max_size: int = MAX_SIZE,
                 version: str = VERSION):
        self.counter = counter
        self.max_size = max_size
        self.version = version

    def dispatch(self,
                 command: Command,
                 session: Session,
                 rfile: t.BinaryIO,
                 wfile: t.BinaryIO) -> bool:
        """Execute command on a connection.

        :param command: Command read off the wire
        :param session: Session state of the connection
        :param rfile: Input stream of the connection
        :param wfile: Output stream of the connection
        :return: Whether the connection should keep going
        """
        match command.name:
            case "IDSESSION":
                session_id = session.start(self.counter)
                logger.debug("Started session %d", session_id)
                return True

            case "END" | "QUIT":
                return False

            case "PING":
                body = "PONG"

            case "VERSION":
                body = self.version

            case "INSTREAM":
                body = scan_stream(rfile, self.max_size)
                write_reply(wfile, command, body, session.id)
                # outside a session it's a single shot
                return session.active

            case _:
                logger.debug("Unknown command %r", command.name)
                body = "UNKNOWN COMMAND"

        write_reply(wfile, command, body, session.id)
        return True


class ClamdRequestHandler(socketserver.StreamRequestHandler):
    """Run the command loop of a single connection.
    """
    def handle(self):
        session = Session()
        peer = self.client_address
        logger.debug("Connection from %s", peer)
        try:
            while True:
                command = read_command(self.rfile)
                if command is None:
                    break
                if not self.server.dispatcher.dispatch(
                        command, session, self.rfile, self.wfile):
                    break
        except ConnectionTruncated as e:
            logger.debug("Connection from %s truncated: %s", peer, str(e))
        except Exception as e:
            logger.exception("Error handling connection from %s: %s",
                             peer, str(e))
        logger.debug("Closing connection from %s", peer)


class ClamdTCPServer(socketserver.ThreadingTCPServer):
    """Threaded TCP server speaking the clamd protocol.
    """
    allow_reuse_address = True
    daemon_threads = True

    def __init__(self,
                 server_address: tuple[str, int],
                 max_size: int = MAX_SIZE,
                 version: str = VERSION,
                 bind_and_activate: bool = True):
        """Create the mock clamd server.

        :param server_address: (host, port) to listen on, port 0 picks
            a free one
        :param max_size: Max aggregate size of an INSTREAM payload
        :param version: Reply to the VERSION command
        :param bind_and_activate: Bind and listen right away
        """
        self.counter = SessionCounter()
        self.dispatcher = Dispatcher(self.counter, max_size, version)
        super().__init__(server_address, ClamdRequestHandler,
                         bind_and_activate=bind_and_activate)
