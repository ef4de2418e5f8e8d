# peer/index_client.py

import logging
import select
import socket

from config import INDEX_HOST, INDEX_PORT, REPLY_TIMEOUT, SEARCH_TIMEOUT
from protocol.errors import DecodeError, RegistryError, RegistryTimeout
from protocol.pdu import (
    CONTROL_RECORD_SIZE, SIMPLE_RECORD_SIZE, ControlRecord, PduType,
    SimpleRecord, peek_kind,
)

logger = logging.getLogger(__name__)

_RECV_SIZE = max(CONTROL_RECORD_SIZE, SIMPLE_RECORD_SIZE)


class IndexClient:
    """
    Control-plane channel to the index server: one UDP socket connected to
    it, one request in flight at a time.

    Every call returns the decoded reply record. Error replies from the
    server raise RegistryError, a missing reply raises RegistryTimeout.
    """

    def __init__(self, host=INDEX_HOST, port=INDEX_PORT,
                 search_timeout=SEARCH_TIMEOUT, reply_timeout=REPLY_TIMEOUT):
        self.address = (host, port)
        self.search_timeout = search_timeout
        self.reply_timeout = reply_timeout
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.sock.connect(self.address)

    def fileno(self):
        return self.sock.fileno()

    def close(self):
        self.sock.close()

    def _drain(self):
        # A reply to an earlier, timed-out request must not be taken as the
        # answer to the next one.
        while True:
            ready, _, _ = select.select([self.sock], [], [], 0)
            if not ready:
                return
            try:
                stale = self.sock.recv(_RECV_SIZE)
            except OSError:
                return
            logger.debug(f"Discarded late reply of {len(stale)} bytes")

    def _request(self, record, timeout):
        self._drain()
        self.sock.send(record.to_bytes())
        ready, _, _ = select.select([self.sock], [], [], timeout)
        if not ready:
            raise RegistryTimeout(f"No response from index server within {timeout}s")
        try:
            data = self.sock.recv(_RECV_SIZE)
        except ConnectionRefusedError as e:
            # ICMP port unreachable surfaces here on a connected UDP socket.
            raise RegistryTimeout(f"Index server unreachable: {e}") from e
        return data

    def _simple(self, record, expect=PduType.ACKNOWLEDGEMENT):
        data = self._request(record, self.reply_timeout)
        reply = SimpleRecord.from_bytes(data)
        if reply.kind == PduType.ERROR:
            raise RegistryError(reply.text)
        if reply.kind != expect:
            raise DecodeError(f"Unexpected reply type {reply.kind!r}")
        return reply

    def register(self, peer_name, content_name, address):
        return self._simple(ControlRecord(PduType.REGISTER, peer_name, content_name, address))

    def deregister(self, peer_name, content_name):
        return self._simple(ControlRecord(PduType.DEREGISTER, peer_name, content_name))

    def online(self):
        return self._simple(ControlRecord(PduType.ONLINE), expect=PduType.ONLINE)

    def quit(self, peer_name):
        return self._simple(ControlRecord(PduType.QUIT, peer_name))

    def search(self, peer_name, content_name):
        """
        Ask for the least-used publisher of `content_name`. Waits at most
        `search_timeout` seconds; returns the Search reply record whose
        `peer_name` and `address` identify the publisher.
        """
        data = self._request(ControlRecord(PduType.SEARCH, peer_name, content_name),
                             self.search_timeout)
        kind = peek_kind(data)
        if kind == PduType.SEARCH:
            reply = ControlRecord.from_bytes(data)
            if reply.address is None:
                raise DecodeError("Search reply without an address")
            return reply
        if kind == PduType.ERROR:
            raise RegistryError(SimpleRecord.from_bytes(data).text)
        raise DecodeError(f"Unexpected reply type {kind!r}")
