"""HTTP gateway in front of a clamd daemon.

Every request opens its own connection(s) to clamd through the client
in clamd_gateway.clamd, so the gateway keeps no state between requests.

Settings come from the environment, under the "CLAMAV_" prefix (Flask
strips the prefix and parses JSON values, so numbers stay numbers):

 - CLAMAV_CLAMD_HOST, CLAMAV_CLAMD_PORT : both set, talk TCP to clamd
 - CLAMAV_CLAMD_SOCKET_PATH : otherwise, Unix socket of clamd
    (/tmp/clamd.sock when unset)
 - CLAMAV_CLAMD_TIMEOUT : seconds before a clamd socket operation
    fails; unset means wait as long as clamd takes

Requests are not authenticated.  Run it with a WSGI server, e.g.
``gunicorn clamd_gateway:app``, or ``flask --app clamd_gateway run``
while developing.

"""
import dataclasses
import io
import logging

from flask import Flask, jsonify, request
from flask_swagger import swagger
from werkzeug.exceptions import HTTPException

from .clamd import Clamd, ClamdTCPSocket, ClamdUnixSocket, \
    ConnectError, InvalidResponseError, EICAR

DEFAULT_SOCKET_PATH = "/tmp/clamd.sock"

SCAN_STATUSES = ("OK", "FOUND", "ERROR")

# statuses a client gets wrong on its own, not worth a stack trace
QUIET_HTTP_CODES = (400, 404, 405, 415)


def _share_gunicorn_logging(flask_app: Flask) -> None:
    """Send app logs through gunicorn error log, when served by it.
    """
    gunicorn_logger = logging.getLogger("gunicorn.error")
    if not gunicorn_logger.handlers:
        return
    flask_app.logger.handlers = list(gunicorn_logger.handlers)
    flask_app.logger.setLevel(gunicorn_logger.level)
    flask_app.logger.propagate = False


app = Flask(__name__)
app.config.from_prefixed_env("CLAMAV")
_share_gunicorn_logging(app)


@app.get("/api/v1/doc")
def api_doc():
    """OpenAPI document of the gateway.
    """
    doc = swagger(app)
    doc["info"].update({
        "title": "clamd gateway",
        "version": "1.0",
        "description": "REST access to a ClamAV daemon",
    })
    return jsonify(doc)


@app.get("/health")
@app.get("/api/v1/clamav/ping")
def ping():
    """Check that clamd answers PONG.
    ---
    tags:
      - status
    responses:
      200:
        description: clamd is alive
      503:
        description: clamd answered something else than PONG
    """
    try:
        clamd_instance().ping()
    except InvalidResponseError as e:
        app.logger.error("clamd answered %r to PING", e.response)
        return {"status": "KO", "message": e.response}, 503
    return {"status": "OK", "message": "PONG"}


@app.get("/api/v1/clamav/version")
def clamav_version():
    """Versions of clamd and of its signature database.
    ---
    tags:
      - status
    responses:
      200:
        description: First VERSION line as message, other lines as details
    """
    lines = list(clamd_instance().version())
    return {
        "message": lines[0] if lines else "",
        "details": lines[1:],
    }


@app.get("/api/v1/clamav/stats")
def stats():
    """Pools, state, threads, queue and memory of clamd.
    ---
    tags:
      - status
    responses:
      200:
        description: STATS reply, one field per section
    """
    clamd_stats = clamd_instance().stats()
    app.logger.debug("clamd stats: %s", clamd_stats)
    return dataclasses.asdict(clamd_stats)


@app.post("/api/v1/clamav/reload")
def reload():
    """Ask clamd to reload its signature databases.
    ---
    tags:
      - status
    responses:
      200:
        description: clamd is reloading
      503:
        description: clamd answered something else than RELOADING
    """
    try:
        clamd_instance().reload()
    except InvalidResponseError as e:
        app.logger.error("clamd answered %r to RELOAD", e.response)
        return {"status": "KO", "message": e.response}, 503
    app.logger.info("clamd is reloading its databases")
    return {"status": "OK", "message": "RELOADING"}


@app.post("/api/v1/clamav/scan")
def scan_file():
    """Stream the uploaded file to clamd.
    ---
    tags:
      - scan
    parameters:
      - in: formData
        name: file
        type: file
        required: true
    responses:
      200:
        description: status (OK, FOUND, ERROR or UNKNOWN), clamd lines, size
      400:
        description: no file in the request
    """
    upload = request.files.get("file")
    if upload is None:
        return {"error": "No file attached"}, 400
    # keep CR/LF of client supplied names out of the logs
    log_name = upload.filename.replace("\r", "").replace("\n", "")

    lines = list(clamd_instance().instream(upload.stream))
    # instream read the upload to its end
    file_size = upload.stream.tell()
    status = scan_status(lines)
    app.logger.info("%s (%d bytes): %s", log_name, file_size, status)

    return {
        "status": status,
        # clamd names every INSTREAM input "stream"
        "input_file": upload.filename,
        "result": lines,
        "file_size": file_size,
    }


@app.get("/api/v1/clamav/selftest")
def selftest():
    """Scan the EICAR test file, clamd must detect it.
    ---
    tags:
      - status
    responses:
      200:
        description: detected flag and clamd lines
    """
    lines = list(clamd_instance().instream(io.BytesIO(EICAR)))
    detected = any("EICAR" in line for line in lines)
    if not detected:
        app.logger.error("EICAR test file not detected, clamd said %s", lines)
    return {"detected": detected, "result": lines}


@app.errorhandler(ConnectError)
def clamd_unreachable(e):
    app.logger.error("%s", e)
    return {"error": str(e)}, 503


@app.errorhandler(HTTPException)
def http_error(e):
    if e.code not in QUIET_HTTP_CODES:
        app.logger.warning("%s %s: %s", request.method, request.path, e)
    return {"error": str(e)}, e.code


@app.errorhandler(Exception)
def unexpected_error(e):
    app.logger.exception("%s %s failed", request.method, request.path)
    return {"error": str(e)}, 500


def clamd_instance() -> Clamd:
    """Client for the clamd configured in the environment.
    """
    timeout = app.config.get("CLAMD_TIMEOUT")
    host = app.config.get("CLAMD_HOST")
    port = app.config.get("CLAMD_PORT")
    if host is not None and port is not None:
        return ClamdTCPSocket(host=host, port=port, timeout=timeout)
    return ClamdUnixSocket(
        app.config.get("CLAMD_SOCKET_PATH") or DEFAULT_SOCKET_PATH,
        timeout=timeout)


def scan_status(lines: list[str]) -> str:
    """Last word of the first reply line, as in
    "stream: Win.Test.EICAR_HDB-1 FOUND"; UNKNOWN when it is not a
    clamd status.
    """
    status = lines[0].rsplit(" ", 1)[-1] if lines else ""
    return status if status in SCAN_STATUSES else "UNKNOWN"
