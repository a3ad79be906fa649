"""Types for clamd communication.

"""
from dataclasses import dataclass
from enum import Enum

# standard antivirus test file, every compliant scanner must detect it
# as a virus.  See https://www.eicar.org
EICAR = br"X5O!P%@AP[4\PZX54(P^)7CC)7}$EICAR-STANDARD-ANTIVIRUS-TEST-FILE!$H+H*"


class ClamdException(Exception):
    """Raised when error occurred communicating with the clamd daemon.
    """


class ConnectError(ClamdException):
    """Unable to reach clamd at the given address.

    The original transport error is available as ``__cause__``.
    """


class WriteError(ClamdException):
    """Sending a frame to clamd failed.
    """


class ReadError(ClamdException):
    """Reading clamd reply failed before the daemon closed the connection.
    """


class InvalidResponseError(ClamdException):
    """clamd replied something different from what the command expects.
    """
    def __init__(self, response: str):
        super().__init__(f"Invalid response, got {response}.")
        self.response = response


class TransportKind(Enum):
    """Kind of socket clamd is listening on.
    """
    UNIX = "unix"
    TCP = "tcp"


@dataclass
class ClamdStats():
    """Reply of clamd STATS command.

    Apart from pools, values are the whole lines sent by clamd: the
    format is subject to change between clamd releases, so we don't
    parse it any further.
    """
    pools: str = ""
    state: str = ""
    threads: str = ""
    queue: str = ""
    memstats: str = ""
