#!/usr/bin/env python3
"""InfraGuard PreToolUse Hook.

Evaluates a proposed Write/Edit/MultiEdit/NotebookEdit against the
sensitivity rules before the host tool performs it:
- Block -> permissionDecision "deny" (logged only in dry-run mode)
- Warn  -> systemMessage, normal permission flow continues
- Allow -> no output

Design Principles:
- Fail-Close: If InfraGuard itself fails, deny the operation
  (hookBehavior.onError / onTimeout, default "deny")
- Thin wrapper: All logic in _lifecycle.run_pre_tool_hook()
"""

import json
import sys
from pathlib import Path

# Add hooks directory to path
sys.path.insert(0, str(Path(__file__).parent))

try:
    from _infra_utils import (
        HookTimeoutError,
        deny_response,
        get_hook_behavior,
        log_infraguard,
        make_hook_behavior_response,
        with_timeout,
    )
    from _lifecycle import HookInputError, emit, read_hook_input, run_pre_tool_hook
except ImportError as e:
    # Fail-close: guard unavailable = block all
    print(
        json.dumps(
            {
                "hookSpecificOutput": {
                    "hookEventName": "PreToolUse",
                    "permissionDecision": "deny",
                    "permissionDecisionReason": f"InfraGuard unavailable: {e}",
                }
            }
        )
    )
    sys.exit(0)


def main() -> None:
    """Main hook entry point."""
    try:
        input_data = read_hook_input()
    except HookInputError as e:
        log_infraguard("ERROR", f"Malformed hook input: {e}")
        emit(deny_response("Invalid hook input (malformed JSON)"))
        return
    timeout_seconds = get_hook_behavior().get("timeoutSeconds")
    emit(with_timeout(lambda: run_pre_tool_hook(input_data), timeout_seconds))


if __name__ == "__main__":
    try:
        main()
    except HookTimeoutError as e:
        log_infraguard("ERROR", f"Pre-tool guard timeout: {e}")
        timeout_action = get_hook_behavior().get("onTimeout", "deny")
        emit(make_hook_behavior_response(timeout_action, f"InfraGuard timed out: {e}"))
    except Exception as e:
        # Use hookBehavior.onError from config (default: "deny" = fail-closed)
        log_infraguard("ERROR", f"Pre-tool guard error: {type(e).__name__}: {e}")
        try:
            error_action = get_hook_behavior().get("onError", "deny")
            response = make_hook_behavior_response(
                error_action,
                f"InfraGuard error: {type(e).__name__}",
            )
        except Exception:
            # If hookBehavior lookup itself fails, fall back to deny (fail-closed)
            response = deny_response(f"InfraGuard error: {type(e).__name__}")
        emit(response)
    sys.exit(0)
