#!/usr/bin/env python3
"""InfraGuard SessionEnd Hook.

Discards the session context so it can never be reused by a later session.
"""

import sys
from pathlib import Path

# Add hooks directory to path
sys.path.insert(0, str(Path(__file__).parent))

try:
    from _infra_utils import log_infraguard
    from _lifecycle import HookInputError, read_hook_input, run_session_end_hook
except ImportError:
    sys.exit(0)


if __name__ == "__main__":
    try:
        run_session_end_hook(read_hook_input())
    except HookInputError as e:
        log_infraguard("WARN", f"Session end without valid input: {e}")
    except Exception as e:
        log_infraguard("ERROR", f"Session end error: {type(e).__name__}: {e}")
    sys.exit(0)
