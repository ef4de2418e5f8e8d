# registry_server.py

import sys

from config import INDEX_PORT, setup_logging
from registry.server import start_index_server


def main():
    if len(sys.argv) > 2:
        print("Usage: python registry_server.py [PORT]")
        sys.exit(1)
    try:
        port = int(sys.argv[1]) if len(sys.argv) == 2 else INDEX_PORT
    except ValueError:
        print(f"Error: invalid port '{sys.argv[1]}'")
        sys.exit(1)

    setup_logging()
    start_index_server(port)


if __name__ == "__main__":
    main()
