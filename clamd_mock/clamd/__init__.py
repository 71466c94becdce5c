"""Mock of the clamd daemon protocol, with a client to talk to it.

For details about commands, see man clamd(8).

Usage:
.. code-block:: python

    server = ClamdTCPServer(("127.0.0.1", 3310))
    server.serve_forever()

Only PING, VERSION, IDSESSION, END, QUIT and INSTREAM are understood.
The only thing ever found is the EICAR test file, flat, zipped or
inside an OLE document.

"""

from .types import ClamdScanStatus, ClamdScanResult, ClamdException  # noqa
from .types import Command, Detection, Framing, MAX_SIZE  # noqa
from .scanbuffer import ScanBuffer  # noqa
from .server import ClamdTCPServer, Dispatcher  # noqa
from .client import ClamdClient  # noqa
