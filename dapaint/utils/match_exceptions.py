"""
Custom exceptions for the match engine with user-friendly error messages.
"""

class MatchException(Exception):
    """Base exception for match-related errors."""
    def __init__(self, message: str, user_message: str = None):
        super().__init__(message)
        self.user_message = user_message or message

class NotAuthenticatedError(MatchException):
    """Raised when no current user id is available."""
    def __init__(self):
        super().__init__(
            "Not authenticated",
            "Please sign in to continue."
        )

class MatchNotFoundError(MatchException):
    """Raised when a match id does not exist."""
    def __init__(self, match_id: int):
        self.match_id = match_id
        super().__init__(
            f"Match {match_id} not found",
            "This DaPaint no longer exists."
        )

class MatchValidationError(MatchException):
    """Raised when creation/edit params or a proof reference are invalid."""
    def __init__(self, field: str, reason: str):
        self.field = field
        super().__init__(
            f"Invalid {field}: {reason}",
            reason
        )

class ExclusivityConflictError(MatchException):
    """Raised when a user who is already in an active match tries to create another."""
    def __init__(self, user_id: str, active_match_id: int):
        self.active_match_id = active_match_id
        super().__init__(
            f"User {user_id} already in active match {active_match_id}",
            "You're already in an active DaPaint. Complete or leave it first."
        )

class NotAParticipantError(MatchException):
    """Raised when the acting user is not a party to the match."""
    def __init__(self, user_id: str, match_id: int):
        super().__init__(
            f"User {user_id} is not in match {match_id}",
            "You are not in this DaPaint."
        )

class MatchStateError(MatchException):
    """Raised when the match is in the wrong state for an operation."""
    def __init__(self, match_id: int, reason: str):
        self.match_id = match_id
        super().__init__(
            f"Match {match_id}: {reason}",
            reason
        )

class ScoreUpdateError(MatchException):
    """Raised when score updates keep failing after the match state committed."""
    def __init__(self, match_id: int, attempts: int):
        self.match_id = match_id
        super().__init__(
            f"Score update for match {match_id} failed after {attempts} attempts",
            "Your result was saved but scores are still updating. Please check back shortly."
        )
