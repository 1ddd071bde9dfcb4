"""
Plain-text rendering of command results.

Builds the condensed one-line label (first line of every enabled command's
output, joined by a separator) and the detailed per-command breakdown.
Both are derived on demand from the coordinator's read-only views.
"""

from dataclasses import dataclass
from typing import List, Tuple

DEFAULT_LABEL = "ShellGlance"
ELLIPSIS = "…"
MAX_DETAIL_LINES = 10


@dataclass
class DetailEntry:
    """One command's block in the detailed breakdown."""
    name: str
    success: bool
    text: str


def truncate(text: str, max_length: int) -> str:
    """Cut text to max_length characters, marking the cut with an ellipsis."""
    if len(text) <= max_length:
        return text
    return text[:max(max_length - 1, 0)] + ELLIPSIS


def render_label(coordinator, separator: str = " | ", max_length: int = 30) -> Tuple[str, bool]:
    """
    Build the condensed label.

    Args:
        coordinator: ScheduleCoordinator to read from
        separator: Text placed between commands
        max_length: Maximum characters per command output

    Returns:
        Tuple of (label text, whether any command is in error)
    """
    has_error = False
    outputs = []

    for spec in coordinator.get_enabled_commands():
        result = coordinator.get_result(spec.id)
        if not result.success:
            has_error = True

        display = result.output if result.success else "Error"
        if display == "":
            display = "..."

        first_line = truncate(display.split("\n")[0], max_length)
        prefix = f"{spec.name}: " if spec.name else ""
        outputs.append(f"{prefix}{first_line}")

    if not outputs:
        return DEFAULT_LABEL, has_error
    return separator.join(outputs), has_error


def render_details(coordinator) -> List[DetailEntry]:
    """
    Build the detailed breakdown, one entry per enabled command.

    Output is limited to MAX_DETAIL_LINES lines per command.
    """
    enabled = coordinator.get_enabled_commands()
    if not enabled:
        return [DetailEntry(name="", success=True, text="No commands configured")]

    entries = []
    for spec in enabled:
        result = coordinator.get_result(spec.id)
        name = spec.name or "Unnamed"

        text = result.output if result.success else f"Error: {result.error}"
        if text == "":
            text = "(empty output)"

        lines = text.split("\n")
        shown = lines[:MAX_DETAIL_LINES]
        if len(lines) > MAX_DETAIL_LINES:
            shown.append(f"... ({len(lines) - MAX_DETAIL_LINES} more lines)")

        shown[0] = f"{name}: {shown[0]}"
        entries.append(DetailEntry(name=name, success=result.success, text="\n".join(shown)))

    return entries


def format_details(entries: List[DetailEntry], color: bool = False) -> str:
    """Format detail entries as text blocks separated by rules."""
    blocks = []
    for entry in entries:
        text = entry.text
        if color:
            code = "92" if entry.success else "91"
            text = f"\033[{code}m{text}\033[0m"
        blocks.append(text)
    return ("\n" + "─" * 40 + "\n").join(blocks)
