"""Exceptions raised by the inheritance engine."""


class InheritanceEngineError(Exception):
    """Base class for engine failures."""


class VaultEnumerationError(InheritanceEngineError):
    """The dispatcher could not list a user's vaults at all."""

    def __init__(self, user_id: str, cause: Exception):
        super().__init__(f"Could not enumerate vaults for user {user_id}: {cause}")
        self.user_id = user_id
        self.cause = cause


class UserProcessingTimeout(InheritanceEngineError):
    """A user's processing exceeded its time budget."""

    def __init__(self, user_id: str, budget_seconds: float, stage: str):
        super().__init__(
            f"User {user_id} exceeded {budget_seconds:.0f}s budget during {stage}"
        )
        self.user_id = user_id
        self.stage = stage


class VerificationError(InheritanceEngineError):
    """Verification or cancellation requested in a state that forbids it."""

    def __init__(self, message: str, not_found: bool = False):
        super().__init__(message)
        self.not_found = not_found


class SignoffTaskError(InheritanceEngineError):
    """Sign-off task missing or not in a completable state."""

    def __init__(self, message: str, not_found: bool = False):
        super().__init__(message)
        self.not_found = not_found


class UserNotFoundError(InheritanceEngineError):
    """No user with the given id."""

    def __init__(self, user_id: str):
        super().__init__(f"User {user_id} not found")
        self.user_id = user_id
