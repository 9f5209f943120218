"""Entry-point module, in case you use `python -m influx_relay`."""

import sys

from influx_relay.cli import main

if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
