"""Connection to clamd.

A connection carries exactly one command: the command (and the chunks
of data, for INSTREAM) is written first, then clamd replies with lines
until it closes its side of the socket.

The reply is read by a background thread, so the caller can start
consuming lines while clamd is still writing.  The socket must not be
closed before that thread is done: use close_when_drained().

"""
import logging
import queue
import socket
import struct
import threading
import typing as t

from .types import ClamdException, \
    ConnectError, \
    ReadError, \
    TransportKind, \
    WriteError

# 'n' prefix asks clamd for newline terminated replies, see man clamd(8)
CMD_SPECIFIER = b'n'
CMD_TERMINATOR = b'\n'

# a zero-length chunk terminates INSTREAM data
EOF_CHUNK = struct.pack('!L', 0)

# marks the end of the reply in the lines queue
_END = object()


def encode_command(command: str) -> bytes:
    """Build the frame for a clamd command.

    :param command: Command to execute, possible values in man clamd(8)
    :return: Bytes to write on the socket
    """
    return b''.join([
        CMD_SPECIFIER,
        command.encode(),
        CMD_TERMINATOR,
    ])


def encode_chunk(data: bytes) -> bytes:
    """Build an INSTREAM chunk: length of data as 4-byte unsigned
    integer in network byte order, followed by data.

    :param data: Non empty chunk data
    :return: Bytes to write on the socket
    """
    if not data:
        raise ValueError("Empty chunk would terminate the stream, "
                         "use send_eof() instead")
    return struct.pack('!L', len(data)) + bytes(data)


class ReplyLines():
    """Lines of a clamd reply, in the order clamd sent them.

    It can be iterated only once.  Lines are published by the reader
    thread of the connection; iteration blocks until the next line is
    available or the reply is over.

    If reading failed, ReadError is raised after the last line that was
    read successfully.
    """
    def __init__(self, drained: threading.Event):
        self.drained = drained
        self.error: OSError | None = None
        self._queue: queue.Queue = queue.Queue()
        self._exhausted = False

    def __iter__(self) -> t.Iterator[str]:
        return self

    def __next__(self) -> str:
        if self._exhausted:
            raise StopIteration
        line = self._queue.get()
        if line is _END:
            self._exhausted = True
            if self.error is not None:
                raise ReadError(
                    f"Unable to read clamd reply: {self.error}"
                ) from self.error
            raise StopIteration
        return line

    def _publish(self, line: str) -> None:
        self._queue.put(line)

    def _finish(self, error: OSError | None = None) -> None:
        self.error = error
        self._queue.put(_END)


class ClamdConnection():
    """A connected socket to clamd, used for a single command.
    """
    def __init__(self, sock: socket.socket):
        self._sock = sock
        self._rfile: t.BinaryIO | None = None
        self._reader: threading.Thread | None = None
        self._drained = threading.Event()
        self._closed = False

    @classmethod
    def open(cls,
             address: str,
             kind: TransportKind | str = TransportKind.UNIX,
             timeout: float | None = None) -> "ClamdConnection":
        """Connect to clamd.

        :param address: Socket path for UNIX, "host:port" for TCP
        :param kind: Kind of socket clamd is listening on
        :param timeout: Timeout of socket operations, None blocks forever
        :return: Connection ready to send a command
        """
        kind = TransportKind(kind)
        if kind is TransportKind.UNIX:
            sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            sock.settimeout(timeout)
            try:
                sock.connect(address)
            except FileNotFoundError as e:
                sock.close()
                raise ConnectError("clamd unix socket not found at " +
                                   address +
                                   ". Is the clamd daemon running?") from e
            except OSError as e:
                sock.close()
                raise ConnectError(
                    f"Unable to connect to clamd at {address}: {e}"
                ) from e
        else:
            host, port = split_host_port(address)
            try:
                sock = socket.create_connection((host, port), timeout=timeout)
            except OSError as e:
                raise ConnectError(
                    f"Unable to connect to clamd at {address}: {e}"
                ) from e

        logging.debug("Connected to clamd at %s (%s)", address, kind.value)
        return cls(sock)

    @property
    def drained(self) -> threading.Event:
        """Set once the reader thread is done with the socket.
        """
        return self._drained

    def send_command(self, command: str) -> None:
        """Send command to clamd.

        :param command: Command to execute, possible values in man clamd(8)
        """
        full_cmd = encode_command(command)
        logging.debug("Sending command: %s", full_cmd)
        self._write(full_cmd)

    def send_chunk(self, data: bytes) -> None:
        """Send a chunk of data, after INSTREAM command.

        :param data: Non empty chunk data
        """
        self._write(encode_chunk(data))

    def send_eof(self) -> None:
        """Send the zero-length chunk: clamd starts scanning and replies.
        """
        self._write(EOF_CHUNK)

    def read_response(self) -> tuple[ReplyLines, threading.Event]:
        """Start reading clamd reply in background.

        :return: Lines of the reply and the event set when the reply is
          over (clamd closed the connection or reading failed)
        """
        if self._reader is not None:
            raise ClamdException("Reply is already being read "
                                 "on this connection")
        lines = ReplyLines(self._drained)
        self._rfile = self._sock.makefile('rb')
        self._reader = threading.Thread(target=self._read_lines,
                                        args=(lines,),
                                        name="clamd-reader",
                                        daemon=True)
        self._reader.start()
        return lines, self._drained

    def close(self) -> None:
        """Close connection to clamd.

        Must be called only once the reply has been drained.
        """
        if self._reader is not None and not self._drained.is_set():
            raise ClamdException("Cannot close connection while the reply "
                                 "is still being read")
        if self._closed:
            return
        self._closed = True
        if self._rfile is not None:
            self._rfile.close()
        self._sock.close()
        logging.debug("Connection to clamd closed")

    def close_when_drained(self) -> threading.Thread:
        """Close the connection in background, as soon as the reply has
        been drained.

        :return: The thread that will close the connection
        """
        def release():
            self._drained.wait()
            self.close()

        releaser = threading.Thread(target=release,
                                    name="clamd-release",
                                    daemon=True)
        releaser.start()
        return releaser

    def _write(self, data: bytes) -> None:
        try:
            self._sock.sendall(data)
        except OSError as e:
            raise WriteError(f"Unable to write to clamd: {e}") from e

    def _read_lines(self, lines: ReplyLines) -> None:
        error = None
        try:
            # a last line without terminator is returned as well
            for raw_line in self._rfile:
                line = raw_line.decode(errors='replace').rstrip(" \t\r\n")
                lines._publish(line)
        except OSError as e:
            logging.debug("Reading clamd reply failed: %s", e)
            error = e
        finally:
            lines._finish(error)
            self._drained.set()


def split_host_port(address: str) -> tuple[str, int]:
    """Split "host:port" address.  IPv6 hosts go in brackets.
    """
    host, sep, port = address.rpartition(':')
    if not sep or not port.isdigit():
        raise ConnectError(f"Invalid TCP address {address}, "
                           "expected host:port")
    host = host.strip('[]') or "localhost"
    return host, int(port)
