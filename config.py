import logging
import os

# Content
CONTENT_DIR = os.getcwd()   # peers serve and store content in their working directory

# Index server
INDEX_HOST = "localhost"
INDEX_PORT = 3000        # UDP port for the index server
MAX_ENTRIES = 200        # active catalog entries the index server will hold
MAX_HISTORY = 10 * MAX_ENTRIES   # slots ever used, active or not

# Peer
CONTENT_HOST = "127.0.0.1"   # content sockets bind here on an ephemeral port
MAX_LOCAL_ITEMS = 100

# Wire format
NAME_LEN = 10            # peer/content name fields, including the terminator
TEXT_LEN = 100           # text field of a simple reply
CHUNK_SIZE = 1024        # max payload of a content frame

# Timeouts (seconds)
SEARCH_TIMEOUT = 5
REPLY_TIMEOUT = 10
TRANSFER_TIMEOUT = 30

# Logging
LOG_LEVEL = logging.INFO
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(level=LOG_LEVEL):
    """Attach a stream handler to the root logger once."""
    root = logging.getLogger()
    root.setLevel(level)
    if not root.hasHandlers():
        ch = logging.StreamHandler()
        ch.setLevel(level)
        ch.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(ch)
