#!/usr/bin/env python3
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

print(
    f"[contentgate] endpoint={os.environ.get('CONTENTGATE_ENDPOINT', 'default')} | "
    f"state={os.environ.get('CONTENTGATE_STATE_PATH', '~/.contentgate/state.json')} | "
    f"binary={os.environ.get('CONTENTGATE_BROWSER_BINARY', 'auto')} | "
    f"port={os.environ.get('CONTENTGATE_CDP_PORT', '9333')}",
    file=sys.stderr,
)

from contentgate.main import main  # noqa: E402

if __name__ == "__main__":
    sys.exit(main())
