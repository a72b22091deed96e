#!/usr/bin/env python3
"""InfraGuard SessionStart Hook.

Detects the infrastructure stack of the project once per session, stores
the session context for the guard and the auditor, and injects a short
summary (stacks, state backend, tooling, recommended plugins) into the
assistant's context.

Fail-open: a detection failure is logged and the session proceeds without
context.
"""

import sys
from pathlib import Path

# Add hooks directory to path
sys.path.insert(0, str(Path(__file__).parent))

try:
    from _infra_utils import log_infraguard
    from _lifecycle import HookInputError, emit, read_hook_input, run_session_start_hook
except ImportError:
    sys.exit(0)


def main() -> None:
    """Main hook entry point."""
    try:
        input_data = read_hook_input()
    except HookInputError as e:
        log_infraguard("WARN", f"Session start without valid input: {e}")
        input_data = {}
    emit(run_session_start_hook(input_data))


if __name__ == "__main__":
    try:
        main()
    except Exception as e:
        log_infraguard("ERROR", f"Session start error: {type(e).__name__}: {e}")
    sys.exit(0)
