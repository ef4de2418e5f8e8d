import os
import sys

from config import INDEX_HOST, INDEX_PORT, NAME_LEN, setup_logging
from peer.index_client import IndexClient
from peer.node import PeerNode


def read_line(fd):
    """
    Read one line straight from `fd`. Returns (line, rest): whatever came in
    after the newline belongs to the event loop and must not be lost in a
    buffered reader.
    """
    data = b""
    while b"\n" not in data:
        chunk = os.read(fd, 4096)
        if not chunk:
            return data.decode("utf-8", errors="replace"), b""
        data += chunk
    line, rest = data.split(b"\n", 1)
    return line.decode("utf-8", errors="replace"), rest


def main():
    # 1) Where is the index server?
    host = sys.argv[1] if len(sys.argv) >= 2 else INDEX_HOST
    try:
        port = int(sys.argv[2]) if len(sys.argv) >= 3 else INDEX_PORT
    except ValueError:
        print(f"Error: invalid port '{sys.argv[2]}'")
        sys.exit(1)

    setup_logging()

    # 2) Choose your peer name
    print("Enter your peer name: ", end="", flush=True)
    peer_name, pending = read_line(sys.stdin.fileno())
    peer_name = peer_name.strip()
    if not peer_name:
        print("No name")
        sys.exit(1)
    peer_name = peer_name.encode("utf-8")[:NAME_LEN - 1].decode("utf-8", errors="ignore")

    # 3) Control-plane socket to the index server
    try:
        index = IndexClient(host, port)
    except OSError as e:
        print(f"[!] Cannot reach index server at {host}:{port}: {e}")
        sys.exit(1)
    print(f"[*] Using index server at {host}:{port} as '{peer_name}'")

    # 4) Enter the event loop
    node = PeerNode(peer_name, index, content_dir=os.getcwd(), pending_input=pending)
    try:
        code = node.run()
    except KeyboardInterrupt:
        print()
        code = node.leave()
    sys.exit(code)


if __name__ == "__main__":
    main()
