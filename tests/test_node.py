import os
import socket
import threading
import time

import pytest

from peer.index_client import IndexClient
from peer.node import PeerLocalItem, PeerNode
from peer.transport import fetch_content, open_listener


@pytest.fixture
def make_node(index_server, tmp_path):
    nodes = []

    def make(name):
        content_dir = tmp_path / name
        content_dir.mkdir()
        client = IndexClient("127.0.0.1", index_server.port, search_timeout=2, reply_timeout=2)
        node = PeerNode(name, client, content_dir=str(content_dir))
        nodes.append(node)
        return node

    yield make
    for node in nodes:
        for item in node.items.values():
            item.close()
        node.index.close()


def test_publish_registers_listener_address(make_node, index_server, tmp_path):
    node = make_node("alice")
    (tmp_path / "alice" / "song").write_bytes(b"")

    assert node.publish("song") is True
    item = node.items["song"]
    entry = index_server.catalog[index_server.catalog.find_exact("alice", "song")]
    assert entry.address == item.address
    assert item.address[0] == "127.0.0.1"


def test_publish_requires_local_file(make_node, index_server, capsys):
    node = make_node("alice")
    assert node.publish("ghost") is False
    assert node.items == {}
    assert len(index_server.catalog) == 0
    assert "No such file" in capsys.readouterr().out


def test_publish_twice(make_node, tmp_path):
    node = make_node("alice")
    (tmp_path / "alice" / "song").write_bytes(b"x")
    assert node.publish("song") is True
    assert node.publish("song") is False
    assert list(node.items) == ["song"]


def test_publish_rejects_long_names(make_node, tmp_path):
    node = make_node("alice")
    (tmp_path / "alice" / "longername").write_bytes(b"x")
    assert node.publish("longername") is False


def test_duplicate_registration_closes_listener(make_node, tmp_path, capsys):
    node = make_node("alice")
    (tmp_path / "alice" / "song").write_bytes(b"x")
    node.index.register("alice", "song", ("127.0.0.1", 9))

    assert node.publish("song") is False
    assert node.items == {}
    assert "Duplicate registration" in capsys.readouterr().out


def test_download_fetches_and_republishes(make_node, index_server, tmp_path):
    alice, bob = make_node("alice"), make_node("bob")
    payload = os.urandom(3000)
    (tmp_path / "alice" / "song").write_bytes(payload)
    alice.publish("song")

    server = threading.Thread(target=alice._on_connection, args=(alice.items["song"],), daemon=True)
    server.start()
    assert bob.download("song") is True
    server.join(timeout=2)

    assert (tmp_path / "bob" / "song").read_bytes() == payload
    assert "song" in bob.items
    assert index_server.catalog.find_exact("bob", "song") is not None
    assert index_server.catalog[index_server.catalog.find_exact("alice", "song")].used_count == 1


def test_download_not_found(make_node, tmp_path, capsys):
    bob = make_node("bob")
    assert bob.download("song") is False
    assert not (tmp_path / "bob" / "song").exists()
    assert "Content not found" in capsys.readouterr().out


def test_download_timeout_leaves_state_alone(silent_server, tmp_path, capsys):
    client = IndexClient(*silent_server.getsockname(), search_timeout=0.2)
    node = PeerNode("bob", client, content_dir=str(tmp_path))
    try:
        assert node.download("song") is False
        assert node.items == {}
        assert not (tmp_path / "song").exists()
        assert "No response from index server" in capsys.readouterr().out
    finally:
        client.close()


def test_unpublish(make_node, index_server, tmp_path):
    node = make_node("alice")
    (tmp_path / "alice" / "song").write_bytes(b"x")
    node.publish("song")
    item = node.items["song"]

    assert node.unpublish("song") is True
    assert node.items == {}
    assert item.sock.fileno() == -1
    assert index_server.catalog.active_count() == 0

    assert node.unpublish("song") is False


def test_leave_deregisters_everything(make_node, index_server, tmp_path):
    node = make_node("alice")
    for name in ("a", "b"):
        (tmp_path / "alice" / name).write_bytes(b"x")
        node.publish(name)

    assert node.leave() == 0
    assert node.exit_code == 0
    assert node.items == {}
    assert index_server.catalog.active_count() == 0


def test_handle_command_prompts_for_name(make_node, index_server, tmp_path):
    node = make_node("alice")
    (tmp_path / "alice" / "song").write_bytes(b"x")

    node.handle_command("2")
    assert node.items == {}
    node.handle_command("song")
    assert "song" in node.items

    node.handle_command("unpublish song")
    assert node.items == {}


def test_run_loop_reads_commands(make_node, index_server, tmp_path, capsys):
    node = make_node("alice")
    (tmp_path / "alice" / "song").write_bytes(b"x")
    r, w = os.pipe()
    with os.fdopen(r, "rb", buffering=0) as stdin:
        node.stdin = stdin
        os.write(w, b"2\nsong\n1\n5\n")
        assert node.run() == 0
    os.close(w)

    out = capsys.readouterr().out
    assert "Registered and listening" in out
    assert "song (by alice)" in out
    assert "Quit acknowledged" in out
    assert index_server.catalog.active_count() == 0


def test_run_loop_leaves_on_end_of_input(make_node, index_server, tmp_path):
    node = make_node("alice")
    (tmp_path / "alice" / "song").write_bytes(b"x")
    node.publish("song")
    r, w = os.pipe()
    os.close(w)
    with os.fdopen(r, "rb", buffering=0) as stdin:
        node.stdin = stdin
        assert node.run() == 0
    assert index_server.catalog.active_count() == 0


def wait_for(condition, timeout=5):
    deadline = time.monotonic() + timeout
    while not condition():
        assert time.monotonic() < deadline, "condition not met in time"
        time.sleep(0.01)


def test_run_loop_serves_download_and_unregisters_on_unpublish(make_node, tmp_path):
    node = make_node("alice")
    payload = os.urandom(2500)
    (tmp_path / "alice" / "song").write_bytes(payload)
    (tmp_path / "bob").mkdir()

    r, w = os.pipe()
    result = []
    with os.fdopen(r, "rb", buffering=0) as stdin:
        node.stdin = stdin
        loop = threading.Thread(target=lambda: result.append(node.run()), daemon=True)
        loop.start()

        os.write(w, b"publish song\n")
        wait_for(lambda: "song" in node.items)
        item = node.items["song"]
        selector = node.selector

        # Served by the loop itself, through the listener's selector key.
        assert fetch_content(item.address, "song", str(tmp_path / "bob"), timeout=5) == len(payload)
        assert (tmp_path / "bob" / "song").read_bytes() == payload

        os.write(w, b"unpublish song\n")
        wait_for(lambda: item.sock.fileno() == -1)
        assert "song" not in node.items
        assert all(key.data is not item for key in selector.get_map().values())

        os.write(w, b"5\n")
        loop.join(timeout=5)
    os.close(w)

    assert not loop.is_alive()
    assert result == [0]


def test_connection_on_unpublished_item_is_left_alone(make_node):
    node = make_node("alice")
    sock, address = open_listener()
    stale = PeerLocalItem("song", sock, address)
    client = socket.create_connection(address, timeout=2)
    try:
        node._on_connection(stale)
        # Still queued: the node did not accept it.
        sock.settimeout(2)
        conn, _ = sock.accept()
        conn.close()
    finally:
        client.close()
        stale.close()


def test_run_handles_input_read_before_the_loop(make_node, index_server, tmp_path, capsys):
    node = make_node("alice")
    (tmp_path / "alice" / "song").write_bytes(b"x")
    node._buffer = b"2\nsong\n1\n5\n"
    r, w = os.pipe()
    with os.fdopen(r, "rb", buffering=0) as stdin:
        node.stdin = stdin
        assert node.run() == 0
    os.close(w)

    out = capsys.readouterr().out
    assert "Registered and listening" in out
    assert "song (by alice)" in out
    assert index_server.catalog.active_count() == 0
