"""Allow ``python -m proxy_sync`` invocation."""
from __future__ import annotations

from .agent_runner import main

if __name__ == "__main__":
    raise SystemExit(main())
