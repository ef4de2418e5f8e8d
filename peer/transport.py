# peer/transport.py
#
# One file per TCP connection:
#   downloader -> publisher : ControlRecord('D', content name)
#   publisher  -> downloader: content frames of up to CHUNK_SIZE bytes,
#                             then a zero-length frame, then close.
# A publisher that rejects the request closes without sending anything.

import logging
import os
import socket

from config import CHUNK_SIZE, CONTENT_HOST, TRANSFER_TIMEOUT
from protocol.errors import ConnectionClosed, DecodeError, TransportError
from protocol.pdu import (
    CONTROL_RECORD_SIZE, FRAME_HEADER_SIZE, ControlRecord, PduType,
    decode_frame_header, encode_frame, end_frame,
)

logger = logging.getLogger(__name__)


def recv_exact(sock, size):
    """Read exactly `size` bytes or raise ConnectionClosed."""
    buf = bytearray()
    while len(buf) < size:
        chunk = sock.recv(size - len(buf))
        if not chunk:
            raise ConnectionClosed(f"Connection closed after {len(buf)}/{size} bytes")
        buf += chunk
    return bytes(buf)


def open_listener(host=CONTENT_HOST, backlog=5):
    """Bind a listening TCP socket on an ephemeral port; returns (sock, (ip, port))."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.bind((host, 0))
        sock.listen(backlog)
    except OSError:
        sock.close()
        raise
    return sock, sock.getsockname()


def serve_download(conn, content_dir, timeout=TRANSFER_TIMEOUT):
    """
    Publisher side of one transfer. Always closes `conn`.

    Returns the number of payload bytes sent, or None if the request was
    rejected (bad record, wrong kind, unreadable file) or the send failed.
    """
    try:
        conn.settimeout(timeout)
        try:
            request = ControlRecord.from_bytes(recv_exact(conn, CONTROL_RECORD_SIZE))
        except (TransportError, DecodeError, OSError) as e:
            logger.debug(f"Bad download request: {e}")
            return None
        if request.kind != PduType.DOWNLOAD:
            logger.debug(f"Rejected request of type {request.kind!r}")
            return None

        # Content names are bare file names; never leave content_dir.
        filename = os.path.basename(request.content_name)
        path = os.path.join(content_dir, filename)
        try:
            f = open(path, "rb")
        except OSError as e:
            logger.warning(f"Cannot open '{filename}' for download: {e}")
            return None

        sent = 0
        with f:
            try:
                while True:
                    chunk = f.read(CHUNK_SIZE)
                    if not chunk:
                        conn.sendall(end_frame())
                        break
                    conn.sendall(encode_frame(chunk))
                    sent += len(chunk)
            except OSError as e:
                logger.error(f"Sending '{filename}' failed after {sent} bytes: {e}")
                return None
        logger.info(f"File {filename} sent: {sent} bytes")
        return sent
    finally:
        conn.close()


def fetch_content(address, content_name, content_dir, timeout=TRANSFER_TIMEOUT):
    """
    Downloader side: fetch `content_name` from the publisher at `address`
    into `content_dir`. Returns the number of bytes written.

    Any failure raises TransportError; whatever was written so far stays
    on disk.
    """
    try:
        sock = socket.create_connection(address, timeout=timeout)
    except OSError as e:
        raise TransportError(f"Cannot connect to {address[0]}:{address[1]}: {e}") from e

    path = os.path.join(content_dir, os.path.basename(content_name))
    received = 0
    with sock:
        try:
            sock.sendall(ControlRecord(PduType.DOWNLOAD, content_name=content_name).to_bytes())
            with open(path, "wb") as out:
                while True:
                    length = decode_frame_header(recv_exact(sock, FRAME_HEADER_SIZE))
                    if length == 0:
                        break
                    out.write(recv_exact(sock, length))
                    received += length
        except DecodeError as e:
            raise TransportError(f"Bad frame after {received} bytes: {e}") from e
        except TransportError:
            raise
        except OSError as e:
            raise TransportError(f"Download of '{content_name}' failed after {received} bytes: {e}") from e

    logger.info(f"Received '{content_name}' from {address[0]}:{address[1]}: {received} bytes")
    return received
