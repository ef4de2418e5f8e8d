# registry/server.py

import logging
import socket

from config import INDEX_PORT, MAX_ENTRIES
from protocol.errors import CapacityExceeded, DecodeError
from protocol.pdu import ControlRecord, PduType, SimpleRecord
from registry.catalog import Catalog, CatalogEntry

logger = logging.getLogger(__name__)

NO_CONTENT = "No content registered"


class IndexServer:
    """
    UDP index server. Every datagram is one request and gets exactly one
    reply, sent straight back to its source. The receive loop is the only
    writer of the catalog, so no locking is needed.
    """

    def __init__(self, host="0.0.0.0", port=INDEX_PORT, max_entries=MAX_ENTRIES):
        self.host = host
        self.port = port
        self.catalog = Catalog(max_entries)
        self.sock = None
        self._running = False
        self._handlers = {
            PduType.REGISTER: self.handle_register,
            PduType.SEARCH: self.handle_search,
            PduType.DEREGISTER: self.handle_deregister,
            PduType.QUIT: self.handle_quit,
            PduType.ONLINE: self.handle_online,
        }

    def bind(self):
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.sock.bind((self.host, self.port))
        self.port = self.sock.getsockname()[1]
        logger.info(f"Index server listening on port {self.port}")
        return self.port

    def handle_datagram(self, data: bytes, addr):
        """Return the encoded reply for one datagram, or None to drop it."""
        try:
            request = ControlRecord.from_bytes(data)
        except DecodeError as e:
            logger.debug(f"Dropped datagram from {addr}: {e}")
            return None

        handler = self._handlers.get(request.kind)
        if handler is None:
            logger.info(f"UNKNOWN: type {request.kind!r} from {addr}")
            return SimpleRecord(PduType.ERROR, "Unknown request").to_bytes()
        return handler(request).to_bytes()

    def handle_register(self, request):
        if self.catalog.find_exact(request.peer_name, request.content_name) is not None:
            return SimpleRecord(PduType.ERROR, "Duplicate registration")
        if request.address is None:
            return SimpleRecord(PduType.ERROR, "Missing content address")
        try:
            self.catalog.insert(CatalogEntry(request.peer_name, request.content_name, request.address))
        except CapacityExceeded:
            return SimpleRecord(PduType.ERROR, "Server storage full")
        host, port = request.address
        logger.info(f"REGISTER: {request.peer_name} -> {request.content_name} ({host}:{port})")
        return SimpleRecord(PduType.ACKNOWLEDGEMENT, "Registered")

    def handle_search(self, request):
        idx = self.catalog.find_least_used(request.content_name)
        if idx is None:
            logger.info(f"SEARCH: not found {request.content_name}")
            return SimpleRecord(PduType.ERROR, "Content not found")

        entry = self.catalog[idx]
        used = self.catalog.record_hit(idx)
        host, port = entry.address
        logger.info(f"SEARCH: {request.content_name} -> {host}:{port} ({entry.peer_name}), used={used}")
        return ControlRecord(PduType.SEARCH, entry.peer_name, entry.content_name, entry.address)

    def handle_deregister(self, request):
        idx = self.catalog.find_exact(request.peer_name, request.content_name)
        if idx is None:
            return SimpleRecord(PduType.ERROR, "No such registration")
        self.catalog.deactivate(idx)
        logger.info(f"DEREGISTER: {request.peer_name} -> {request.content_name}")
        return SimpleRecord(PduType.ACKNOWLEDGEMENT, "Deregistered")

    def handle_quit(self, request):
        removed = self.catalog.deactivate_publisher(request.peer_name)
        logger.info(f"QUIT: {request.peer_name} removed {removed} entries")
        return SimpleRecord(PduType.ACKNOWLEDGEMENT, "Quit")

    def handle_online(self, request):
        listing = "".join(
            f"{e.content_name} (by {e.peer_name})\n" for e in self.catalog.active_entries()
        )
        return SimpleRecord(PduType.ONLINE, listing or NO_CONTENT)

    def serve_forever(self):
        if self.sock is None:
            self.bind()
        self._running = True
        try:
            while self._running:
                try:
                    # Oversized datagrams must be seen whole to be rejected.
                    data, addr = self.sock.recvfrom(65535)
                except OSError as e:
                    logger.error(f"recvfrom failed: {e}")
                    continue
                if not self._running:
                    break

                reply = self.handle_datagram(data, addr)
                if reply is None:
                    continue
                try:
                    self.sock.sendto(reply, addr)
                except OSError as e:
                    logger.error(f"sendto {addr} failed: {e}")
        finally:
            self.close()

    def stop(self):
        """Ask a running loop to exit; wakes it with an empty datagram."""
        was_running, self._running = self._running, False
        if not was_running:
            self.close()
            return
        wake_host = "127.0.0.1" if self.host in ("", "0.0.0.0") else self.host
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.sendto(b"", (wake_host, self.port))

    def close(self):
        if self.sock is not None:
            self.sock.close()
            self.sock = None


def start_index_server(port=INDEX_PORT):
    server = IndexServer(port=port)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down index server")
    finally:
        server.close()
