# peer/node.py

import logging
import os
import selectors
import sys

from config import CONTENT_DIR, CONTENT_HOST, MAX_LOCAL_ITEMS, NAME_LEN
from peer.transport import fetch_content, open_listener, serve_download
from protocol.errors import ProtocolError, RegistryError, RegistryTimeout, TransportError

logger = logging.getLogger(__name__)

MENU = (
    "[1] Content Listing\n"
    "[2] Content Registration\n"
    "[3] Content Download\n"
    "[4] Content De-Registration\n"
    "[5] Quit"
)

COMMANDS = {
    "1": "list", "list": "list",
    "2": "publish", "publish": "publish",
    "3": "download", "download": "download",
    "4": "unpublish", "unpublish": "unpublish",
    "5": "leave", "leave": "leave", "quit": "leave",
}

PROMPTS = {
    "publish": "Enter file name to register: ",
    "download": "Enter file to download: ",
    "unpublish": "Enter content to deregister: ",
}


class PeerLocalItem:
    """A published file and the listening socket that serves it."""

    def __init__(self, content_name, sock, address):
        self.content_name = content_name
        self.sock = sock
        self.address = address

    def close(self):
        self.sock.close()

    def __repr__(self):
        return f"PeerLocalItem({self.content_name} @ {self.address[0]}:{self.address[1]})"


class PeerNode:
    """
    A peer: publishes local files, downloads from other peers and keeps the
    index server informed.

    Everything happens on one thread. `run()` waits on stdin and on every
    published item's listening socket. An accepted download is served to
    completion before the loop looks at anything else, so a slow
    downloader holds up both other downloaders and the command line.
    """

    def __init__(self, peer_name, index_client, content_dir=None,
                 host=CONTENT_HOST, stdin=None, pending_input=b""):
        self.peer_name = peer_name
        self.index = index_client
        self.content_dir = content_dir or CONTENT_DIR
        self.host = host
        self.stdin = stdin if stdin is not None else sys.stdin
        self.items = {}          # content name -> PeerLocalItem, in publish order
        self.selector = None
        self.exit_code = None
        self._pending = None     # command waiting for its name on the next line
        self._buffer = pending_input   # bytes read from stdin before the loop started

    # -------------------------------------------------------------------------
    # Event loop
    # -------------------------------------------------------------------------
    def run(self):
        """Serve until Leave (or end of input); returns the exit code."""
        self.selector = selectors.DefaultSelector()
        self.selector.register(self.stdin, selectors.EVENT_READ, data=None)
        for item in self.items.values():
            self.selector.register(item.sock, selectors.EVENT_READ, data=item)
        print(MENU)

        try:
            self._process_buffer()
            while self.exit_code is None:
                for key, _ in self.selector.select():
                    if key.data is None:
                        self._on_input()
                    else:
                        self._on_connection(key.data)
                    if self.exit_code is not None:
                        break
        finally:
            self.selector.close()
            self.selector = None
        return self.exit_code

    def _on_connection(self, item):
        if self.items.get(item.content_name) is not item:
            return  # unpublished earlier in this round
        try:
            conn, addr = item.sock.accept()
        except OSError as e:
            logger.error(f"accept on {item.content_name} failed: {e}")
            return
        logger.info(f"Download request from {addr[0]}:{addr[1]} on {item.content_name}")
        serve_download(conn, self.content_dir)

    def _on_input(self):
        data = os.read(self.stdin.fileno(), 4096)
        if not data:
            logger.info("Input closed, leaving")
            self.leave()
            return
        self._buffer += data
        self._process_buffer()

    def _process_buffer(self):
        while b"\n" in self._buffer and self.exit_code is None:
            line, self._buffer = self._buffer.split(b"\n", 1)
            self.handle_command(line.decode("utf-8", errors="replace"))

    def _register_listener(self, item):
        if self.selector is not None:
            self.selector.register(item.sock, selectors.EVENT_READ, data=item)

    def _drop_item(self, content_name):
        item = self.items.pop(content_name, None)
        if item is None:
            return
        if self.selector is not None:
            self.selector.unregister(item.sock)
        item.close()

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------
    def handle_command(self, line):
        """Dispatch one line of input. Bare menu numbers ask for the name next."""
        if self._pending is not None:
            action, self._pending = self._pending, None
            name = line.strip()
            if name:
                self._dispatch(action, name)
            return

        parts = line.split(maxsplit=1)
        if not parts:
            return
        action = COMMANDS.get(parts[0].lower())
        if action is None:
            print(MENU)
            return
        name = parts[1].strip() if len(parts) > 1 else None
        if action in PROMPTS and not name:
            self._pending = action
            print(PROMPTS[action], end="", flush=True)
            return
        self._dispatch(action, name)

    def _dispatch(self, action, name=None):
        try:
            if action == "list":
                self.list_content()
            elif action == "publish":
                self.publish(name)
            elif action == "download":
                self.download(name)
            elif action == "unpublish":
                self.unpublish(name)
            elif action == "leave":
                self.leave()
        except (ProtocolError, OSError) as e:
            logger.error(f"{action} failed: {e}")
            print(f"[-] {action} failed: {e}")

    def list_content(self):
        try:
            reply = self.index.online()
        except RegistryTimeout as e:
            print(f"[-] {e}")
            return None
        print(f"Online list:\n{reply.text}")
        if self.items:
            print(f"[*] Publishing locally: {', '.join(self.items)}")
        return reply.text

    def _check_name(self, name):
        if not name:
            print("[!] A content name is required")
            return False
        if not name.isprintable() or "/" in name or "\\" in name:
            print("[!] Invalid content name")
            return False
        if len(name.encode("utf-8")) > NAME_LEN - 1:
            print(f"[!] Content names are limited to {NAME_LEN - 1} bytes")
            return False
        return True

    def publish(self, name):
        """Register a local file with the index server and start serving it."""
        if not self._check_name(name):
            return False
        if name in self.items:
            print(f"[!] {name} is already published")
            return False
        if len(self.items) >= MAX_LOCAL_ITEMS:
            print(f"[!] Cannot publish more than {MAX_LOCAL_ITEMS} items")
            return False
        if not os.path.isfile(os.path.join(self.content_dir, name)):
            print(f"[!] No such file: {name}")
            return False

        sock, address = open_listener(self.host)
        try:
            reply = self.index.register(self.peer_name, name, address)
        except RegistryError as e:
            sock.close()
            print(f"[-] Server error: {e.reason}")
            return False
        except (ProtocolError, OSError) as e:
            sock.close()
            logger.error(f"Register {name} failed: {e}")
            print(f"[-] Register failed: {e}")
            return False

        item = PeerLocalItem(name, sock, address)
        self.items[name] = item
        self._register_listener(item)
        print(f"[+] Server ack: {reply.text}")
        print(f"[+] Registered and listening on {address[0]}:{address[1]} for {name}")
        return True

    def download(self, name):
        """Find a publisher through the index server, fetch the file, then publish it."""
        if not self._check_name(name):
            return False
        if name in self.items:
            print(f"[!] {name} is already published by this peer")
            return False

        try:
            hit = self.index.search(self.peer_name, name)
        except RegistryTimeout:
            print("[-] No response from index server")
            return False
        except RegistryError as e:
            print(f"[-] Index server: {e.reason}")
            return False

        host, port = hit.address
        print(f"[*] Connecting to content server {host}:{port} (peer: {hit.peer_name})")
        try:
            size = fetch_content(hit.address, name, self.content_dir)
        except TransportError as e:
            logger.error(f"Download of {name} failed: {e}")
            print("[-] Download failed")
            return False
        print(f"[+] Downloaded {name} successfully ({size} bytes)")

        if self.publish(name):
            print(f"[+] Auto-registered downloaded content {name}")
        return True

    def unpublish(self, name):
        if not self._check_name(name):
            return False
        try:
            reply = self.index.deregister(self.peer_name, name)
        except RegistryError as e:
            print(f"[-] Deregister error: {e.reason}")
            return False
        except RegistryTimeout as e:
            print(f"[-] {e}")
            return False
        self._drop_item(name)
        print(f"[+] Deregistered: {reply.text}")
        return True

    def leave(self):
        """Deregister and close every item, send Quit, and mark the loop done."""
        for name in list(self.items):
            try:
                self.index.deregister(self.peer_name, name)
            except (ProtocolError, OSError) as e:
                logger.warning(f"Deregister {name} on leave failed: {e}")
            self._drop_item(name)

        try:
            self.index.quit(self.peer_name)
            print("[+] Quit acknowledged")
        except (ProtocolError, OSError) as e:
            logger.warning(f"Quit failed: {e}")
            print(f"[-] Quit error: {e}")
        self.index.close()
        print("Exiting.")
        self.exit_code = 0
        return self.exit_code
