"""Python bindings for clamd daemon on Unix or TCP socket.

For details about commands, see man clamd(8).

Usage:
.. code-block:: python

    clamd = ClamdUnixSocket("/var/run/clamd.sock")
    clamd.ping()
    for line in clamd.scan("/my/file.txt"):
        print(line)

Every command opens a new connection to clamd, which is closed once
the reply has been read.  Replies are read in background: lines can
be consumed while clamd is still sending them.

NOTE: clamd sessions (IDSESSION) are not implemented.

"""

from .types import ClamdException, ConnectError, WriteError, \
    ReadError, InvalidResponseError, TransportKind, ClamdStats, EICAR  # noqa
from .conn import ClamdConnection, ReplyLines, \
    encode_command, encode_chunk, EOF_CHUNK  # noqa
from .client import Clamd, ClamdUnixSocket, ClamdTCPSocket, \
    parse_stats, CHUNK_SIZE  # noqa
