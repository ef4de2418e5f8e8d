import socket
import threading

import pytest

from peer.index_client import IndexClient
from registry.server import IndexServer


@pytest.fixture
def index_server():
    """A live index server on an ephemeral loopback port."""
    server = IndexServer(host="127.0.0.1", port=0)
    server.bind()
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.stop()
    thread.join(timeout=2)


@pytest.fixture
def index_client(index_server):
    client = IndexClient("127.0.0.1", index_server.port, search_timeout=2, reply_timeout=2)
    yield client
    client.close()


@pytest.fixture
def silent_server():
    """A UDP socket that receives requests but never answers on its own."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    yield sock
    sock.close()
