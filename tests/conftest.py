import os
import queue
import socketserver
import struct
import tempfile
import threading

import pytest
from clamd_gateway import app

VERSION_REPLY = b"ClamAV 1.4.2/27420/Mon Oct 19 08:21:43 2026\n"

STATS_REPLY = (
    b"POOLS: 1\n"
    b"\n"
    b"STATE: VALID PRIMARY\n"
    b"THREADS: live 1  idle 0 max 10 idle-timeout 30\n"
    b"QUEUE: 0 items\n"
    b"\tSTATS 0.000045 \n"
    b"\n"
    b"MEMSTATS: heap N/A mmap N/A used N/A free N/A releasable N/A "
    b"pools 1 pools_used 1280.930M pools_total 1280.977M\n"
    b"END\n"
)


class FakeClamdHandler(socketserver.StreamRequestHandler):
    """Answer one command the way clamd does, then close.
    """
    def handle(self):
        specifier = self.rfile.read(1)
        if not specifier:
            # client gave up before sending a command
            return
        command = self.rfile.readline().rstrip(b"\n").decode()
        self.server.commands.put(command)

        if specifier != b"n":
            # only newline terminated commands are expected
            self.wfile.write(b"UNKNOWN COMMAND\n")
            return

        if command == "INSTREAM":
            self.wfile.write(self._instream())
            return

        name, _, arg = command.partition(" ")
        if name in self.server.replies:
            self.wfile.write(self.server.replies[name])
        elif arg:
            self.wfile.write(f"{arg}: OK\n".encode())
        else:
            self.wfile.write(b"UNKNOWN COMMAND\n")

    def _instream(self) -> bytes:
        payload = bytearray()
        sizes = []
        while True:
            header = self.rfile.read(4)
            if len(header) < 4:
                # upload aborted, nothing to reply
                return b""
            size, = struct.unpack("!L", header)
            if size == 0:
                break
            sizes.append(size)
            payload.extend(self.rfile.read(size))
        self.server.chunk_sizes.put(sizes)
        self.server.streams.put(bytes(payload))

        if b"EICAR-STANDARD-ANTIVIRUS-TEST-FILE" in payload:
            return b"stream: Win.Test.EICAR_HDB-1 FOUND\n"
        return b"stream: OK\n"


class FakeClamdMixin():
    daemon_threads = True

    def init_fake(self):
        self.commands = queue.Queue()
        self.streams = queue.Queue()
        self.chunk_sizes = queue.Queue()
        self.replies = {
            "PING": b"PONG\n",
            "VERSION": VERSION_REPLY,
            "STATS": STATS_REPLY,
            "RELOAD": b"RELOADING\n",
            "SHUTDOWN": b"",
        }


class FakeClamdTCPServer(FakeClamdMixin, socketserver.ThreadingTCPServer):
    allow_reuse_address = True

    @property
    def address(self):
        host, port = self.server_address
        return f"{host}:{port}"


class FakeClamdUnixServer(FakeClamdMixin, socketserver.ThreadingUnixStreamServer):

    @property
    def address(self):
        return self.server_address


def _serve(server):
    server.init_fake()
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return thread


@pytest.fixture()
def fake_clamd():
    server = FakeClamdTCPServer(("127.0.0.1", 0), FakeClamdHandler)
    _serve(server)

    yield server

    server.shutdown()
    server.server_close()


@pytest.fixture()
def fake_clamd_unix():
    # keep the path short, unix socket paths are limited to ~100 chars
    tmpdir = tempfile.mkdtemp(prefix="clamd")
    socket_path = os.path.join(tmpdir, "clamd.sock")
    server = FakeClamdUnixServer(socket_path, FakeClamdHandler)
    _serve(server)

    yield server

    server.shutdown()
    server.server_close()
    os.unlink(socket_path)
    os.rmdir(tmpdir)


@pytest.fixture()
def test_app(fake_clamd):
    host, port = fake_clamd.server_address
    app.config.update({
        "TESTING": True,
        "CLAMD_HOST": host,
        "CLAMD_PORT": port,
    })

    yield app

    for key in ("CLAMD_HOST", "CLAMD_PORT", "CLAMD_SOCKET_PATH"):
        app.config.pop(key, None)


@pytest.fixture()
def client(test_app):
    return test_app.test_client()
