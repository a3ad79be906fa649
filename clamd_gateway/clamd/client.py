"""Client for clamd.

It comes in two shapes:
 - ClamdUnixSocket for clamav daemon running locally
 - ClamdTCPSocket for clamav daemon on the network

Once connection is established, the behaviour is the same.

Every command opens its own connection, which is closed in background
once clamd reply has been completely read.

"""
import logging
import typing as t

from .conn import ClamdConnection, ReplyLines
from .types import ClamdStats, \
    InvalidResponseError, \
    TransportKind

# size of data read from the input stream for each INSTREAM chunk
CHUNK_SIZE = 1024


class Clamd():
    """Client for clamd daemon.
    """
    def __init__(self,
                 address: str,
                 kind: TransportKind | str = TransportKind.UNIX,
                 timeout: float | None = None,
                 chunk_size: int = CHUNK_SIZE):
        """Create clamd client instance.

        :param address: Socket path for UNIX, "host:port" for TCP
        :param kind: Kind of socket clamd is listening on
        :param timeout: Timeout of the socket, None to wait forever
        :param chunk_size: Size of the chunks sent with INSTREAM
        """
        self.address = address
        self.kind = TransportKind(kind)
        self.timeout = timeout
        self.chunk_size = chunk_size

    def ping(self) -> None:
        """Execute clamd PING command.

        Check the server's state. It should reply with "PONG".

        :raises InvalidResponseError: clamd replied something else
        """
        self._expect("PING", "PONG")

    def version(self) -> ReplyLines:
        """Execute clamd VERSION command.

        Print program and database versions.
        """
        return self._simple_command("VERSION")

    def stats(self) -> ClamdStats:
        """Execute clamd STATS command.

        Replies with statistics about the scan queue, contents of scan
        queue, and memory usage.
        """
        return parse_stats(self._simple_command("STATS"))

    def reload(self) -> None:
        """Execute clamd RELOAD command.

        Reload the signature databases.

        :raises InvalidResponseError: clamd did not reply "RELOADING"
        """
        self._expect("RELOAD", "RELOADING")

    def shutdown(self) -> None:
        """Execute clamd SHUTDOWN command.

        Perform a clean exit of the daemon.  Reply is ignored.
        """
        self._simple_command("SHUTDOWN")

    def scan(self, filepath: str) -> ReplyLines:
        """Execute clamd SCAN command.

        Scan a file or a directory (recursively) with archive support
        enabled (if not disabled in clamd.conf). A full path is
        required.

        :param filepath: Path of the file to scan
        :return: Lines of clamd reply
        """
        return self._simple_command(f"SCAN {filepath}")

    def rawscan(self, filepath: str) -> ReplyLines:
        """Execute clamd RAWSCAN command.

        Scan file or directory (recursively) with archive and special
        file support disabled. A full path is required.
        """
        return self._simple_command(f"RAWSCAN {filepath}")

    def multiscan(self, filepath: str) -> ReplyLines:
        """Execute clamd MULTISCAN command.

        Scan file in a standard way or scan directory (recursively)
        using multiple threads.
        """
        return self._simple_command(f"MULTISCAN {filepath}")

    def contscan(self, filepath: str) -> ReplyLines:
        """Execute clamd CONTSCAN command.

        Like SCAN, but don't stop the scanning when a virus is found.
        """
        return self._simple_command(f"CONTSCAN {filepath}")

    def allmatchscan(self, filepath: str) -> ReplyLines:
        """Execute clamd ALLMATCHSCAN command.

        Like SCAN, but keep scanning a file after a virus is found and
        report every match.
        """
        return self._simple_command(f"ALLMATCHSCAN {filepath}")

    def instream(self, input_stream: t.IO[bytes]) -> ReplyLines:
        """Execute clamd INSTREAM command.

        Scan a stream of data. The stream is sent to clamd in chunks,
        after INSTREAM, on the same socket on which the command was
        sent.  Don't exceed StreamMaxLength as defined in clamd.conf,
        otherwise clamd replies with "INSTREAM size limit exceeded" and
        closes the connection.

        :param input_stream: Input stream to analyze
        :return: Lines of clamd reply
        """
        conn = self._open_connection()
        try:
            conn.send_command("INSTREAM")
            self._send_chunks(conn, input_stream)
            # send an empty chunk to signal that we are finished
            conn.send_eof()
        except BaseException:
            # no reader yet, the socket can go right away
            conn.close()
            raise
        return self._read_and_release(conn)

    def _open_connection(self) -> ClamdConnection:
        """Get a fresh connection to clamd.
        """
        return ClamdConnection.open(self.address,
                                    kind=self.kind,
                                    timeout=self.timeout)

    def _simple_command(self, command: str) -> ReplyLines:
        """Send simple command to clamd.

        :param command: Command to execute, possible values in man clamd(8)
        :return: Lines of clamd reply, read in background
        """
        conn = self._open_connection()
        try:
            conn.send_command(command)
        except BaseException:
            conn.close()
            raise
        return self._read_and_release(conn)

    def _read_and_release(self, conn: ClamdConnection) -> ReplyLines:
        lines, _ = conn.read_response()
        conn.close_when_drained()
        return lines

    def _expect(self, command: str, expected: str) -> None:
        """Send command and check that clamd replies with the expected
        line.
        """
        lines = self._simple_command(command)
        line = next(lines, "")
        if line != expected:
            raise InvalidResponseError(line)

    def _send_chunks(self,
                     conn: ClamdConnection,
                     input_stream: t.IO[bytes]) -> None:
        while True:
            try:
                buf = input_stream.read(self.chunk_size)
            except Exception as e:
                # the terminator we send next tells clamd the stream is
                # over, whatever the state of the input
                logging.warning("Unable to read input stream, "
                                "ending INSTREAM: %s", e)
                return
            if not buf:
                return
            conn.send_chunk(buf)


class ClamdUnixSocket(Clamd):
    """Client for clamd daemon over UNIX domain socket.

    This is the recommended option when clamd is running on the same host.

    When using this option, clamd should be running with 'LocalSocket <path>'
    configuration option in clamd.conf (see man clamd.conf(5)).
    """
    def __init__(self,
                 socket_path: str,
                 timeout: float | None = None):
        super().__init__(socket_path,
                         kind=TransportKind.UNIX,
                         timeout=timeout)
        self.socket_path = socket_path


class ClamdTCPSocket(Clamd):
    """Client for clamd daemon over TCP socket.

    When using this option, clamd should be running with 'TCPSocket <port>'
    configuration option in clamd.conf (see man clamd.conf(5)).
    """
    def __init__(self,
                 host: str,
                 port: int,
                 timeout: float | None = None):
        super().__init__(f"{host}:{port}",
                         kind=TransportKind.TCP,
                         timeout=timeout)
        self.host = host
        self.port = port


def parse_stats(lines: t.Iterable[str]) -> ClamdStats:
    """Parse clamd STATS reply.

    All lines are consumed.  Unknown lines are ignored, as the format
    of the reply may change in future clamd releases.

    :param lines: Lines of STATS reply
    :return: Structured stats
    """
    stats = ClamdStats()
    for line in lines:
        if line.startswith("POOLS"):
            # skip "POOLS" and the separator after it
            stats.pools = line[6:].strip(" ")
        elif line.startswith("STATE"):
            stats.state = line
        elif line.startswith("THREADS"):
            stats.threads = line
        elif line.startswith("QUEUE"):
            stats.queue = line
        elif line.startswith("MEMSTATS"):
            stats.memstats = line
        elif line.startswith("END"):
            continue
    return stats
