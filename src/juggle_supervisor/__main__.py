"""juggle-supervisor 入口点。

支持: python -m juggle_supervisor <session_id>
"""

import sys

from .app import main

if __name__ == "__main__":
    sys.exit(main())
