# safety.py
# Pre-execution safety gate for proposed tool calls.
#
# Pure functions over (tool name, serialized input, policy). No shared state,
# so concurrent threads may call these freely.

import logging
from collections.abc import Iterable

from react_harness.models import SafetyCheckResult, SafetyPolicy

logger = logging.getLogger(__name__)


def check_input_length(input_text: str, max_length: int) -> SafetyCheckResult:
    if not input_text:
        return SafetyCheckResult(passed=False, reason="Input is empty", warnings=["Input is empty"])
    if len(input_text) > max_length:
        reason = f"Input length ({len(input_text)}) exceeds maximum length ({max_length})"
        return SafetyCheckResult(passed=False, reason=reason, warnings=[reason])
    return SafetyCheckResult(passed=True)


def check_dangerous_patterns(
    tool_name: str, input_text: str, patterns: Iterable[str]
) -> SafetyCheckResult:
    """
    Case-insensitive substring scan of ``"<tool_name> <input>"``.

    Every matching pattern is reported, in sorted order so the reason is
    stable for a given pattern set.
    """
    combined = f"{tool_name} {input_text}".lower()
    found = sorted(pattern for pattern in set(patterns) if pattern and pattern.lower() in combined)
    if not found:
        return SafetyCheckResult(passed=True)
    return SafetyCheckResult(
        passed=False,
        reason=f"Input contains dangerous patterns: {', '.join(found)}",
        warnings=[f"Dangerous pattern detected: {pattern}" for pattern in found],
    )


def run_safety_checks(tool_name: str, serialized_input: str, policy: SafetyPolicy) -> SafetyCheckResult:
    """
    Run every check and combine the results, fail-closed.

    Both checks always run, even when the first fails, so the caller sees
    every problem at once. The combined reason names each failed check.
    """
    if not tool_name:
        return SafetyCheckResult(
            passed=False, reason="Tool name is required", warnings=["Tool name is required"]
        )

    checks = {
        "check_input_length": check_input_length(serialized_input, policy.max_input_length),
        "check_dangerous_patterns": check_dangerous_patterns(
            tool_name, serialized_input, policy.dangerous_patterns
        ),
    }

    failed = {name: result for name, result in checks.items() if not result.passed}
    if not failed:
        return SafetyCheckResult(passed=True)

    warnings = [warning for result in failed.values() for warning in result.warnings]
    reason = "; ".join(f"{name}: {result.reason}" for name, result in failed.items())
    logger.warning("Safety checks failed for tool %s: %s", tool_name, reason)
    return SafetyCheckResult(passed=False, reason=reason, warnings=warnings)
