"""Input validation — rejects bad user input before any state changes."""

from m2c.errors import UserInputError
from m2c.state import EXECUTOR_MODES


def validate_meeting_name(meeting_name: str) -> str:
    """Validate that the meeting name is a non-empty string.

    Returns the stripped input on success.
    Raises UserInputError if input is empty or whitespace-only.
    """
    if not isinstance(meeting_name, str) or not meeting_name.strip():
        raise UserInputError("Meeting name must be a non-empty string.")
    return meeting_name.strip()


def validate_executor(mode: str | None, default: str) -> str:
    """Return ``mode`` lowercased, or ``default`` when unset."""
    if not mode:
        return default
    normalized = mode.strip().lower()
    if normalized not in EXECUTOR_MODES:
        raise UserInputError(f"Invalid executor '{mode}'. Must be one of: {', '.join(EXECUTOR_MODES)}")
    return normalized
