"""Entry point for `python -m acp_chat_sync`."""

import sys

from acp_chat_sync import main

if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
