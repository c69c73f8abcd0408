"""``python -m beam_spy`` → :func:`beam_spy.main.main`."""

import sys

from beam_spy.main import main

if __name__ == "__main__":
    sys.exit(main())
