#!/usr/bin/env python3
"""InfraGuard PostToolUse Hook.

Audits the file a Write/Edit/MultiEdit/NotebookEdit just changed and
surfaces findings to the user. Block findings (hardcoded secrets) also
ask the assistant to fix the file before continuing.

Design Principles:
- Fail-Open: the change already happened; an auditor failure is logged
  and reported, never turned into a block
- Thin wrapper: All logic in _lifecycle.run_post_tool_hook()
"""

import json
import sys
from pathlib import Path

# Add hooks directory to path
sys.path.insert(0, str(Path(__file__).parent))

try:
    from _infra_utils import get_hook_behavior, log_infraguard, with_timeout
    from _lifecycle import HookInputError, emit, read_hook_input, run_post_tool_hook
except ImportError as e:
    print(json.dumps({"systemMessage": f"[InfraGuard] auditor unavailable: {e}"}))
    sys.exit(0)


def main() -> None:
    """Main hook entry point."""
    try:
        input_data = read_hook_input()
    except HookInputError as e:
        log_infraguard("ERROR", f"Malformed hook input: {e}")
        return
    timeout_seconds = get_hook_behavior().get("timeoutSeconds")
    emit(with_timeout(lambda: run_post_tool_hook(input_data), timeout_seconds))


if __name__ == "__main__":
    try:
        main()
    except Exception as e:
        log_infraguard("ERROR", f"Post-tool audit error: {type(e).__name__}: {e}")
        emit({"systemMessage": f"[InfraGuard] audit failed: {type(e).__name__}"})
    sys.exit(0)
