"""
Automation errors — configuration and lifecycle failures raised synchronously
to the caller. Decision and dispatch failures never surface here: the
navigator recovers from the former and fails the session on the latter.
"""
from __future__ import annotations


class AutomationError(Exception):
    """Base exception for all automation operations."""

    code = "automation_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__doc__ or self.code)


class ProfileNotFoundError(AutomationError):
    """Automation profile not found."""
    code = "profile_not_found"


class ProfileInactiveError(AutomationError):
    """Automation profile is inactive."""
    code = "profile_inactive"


class DuplicateProfileError(AutomationError):
    """An automation profile already exists for this contact."""
    code = "duplicate_profile"


class FieldNotFoundError(AutomationError):
    """Field not found."""
    code = "field_not_found"


class DuplicateFieldError(AutomationError):
    """Field already exists in this profile."""
    code = "duplicate_field"


class MenuOptionNotFoundError(AutomationError):
    """Menu option not found."""
    code = "menu_option_not_found"


class DuplicateMenuOptionError(AutomationError):
    """Menu option already exists in this profile."""
    code = "duplicate_menu_option"


class SessionNotFoundError(AutomationError):
    """Session not found."""
    code = "session_not_found"


class SessionAlreadyActiveError(AutomationError):
    """An active session already exists for this profile."""
    code = "session_already_active"


class SessionAlreadyTerminalError(AutomationError):
    """Session has already finished."""
    code = "session_already_terminal"
