"""
Wizard error taxonomy.

Every error carries a stable `code` so the API layer can branch on it
without string matching. Outcomes that are not failures (no candidates,
stale data at completion) are modelled as result types in
`flyer_wizard.models`, not here.
"""

from typing import Any, Optional


class WizardError(Exception):
    """Base class for all migration-wizard errors."""

    code = "INTERNAL_ERROR"
    retryable = False

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(WizardError):
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str = ""):
        super().__init__(message, {"field": field} if field else None)
        self.field = field


class NoProductMaster(WizardError):
    """Item has no canonical product link; manual search is required."""

    code = "NO_PRODUCT_MASTER"

    def __init__(self, item_id: int):
        super().__init__(
            f"item {item_id} has no product master; manual search required",
            {"item_id": item_id},
        )
        self.item_id = item_id


class SearchUnavailable(WizardError):
    """The similarity search capability failed; callers retry with backoff."""

    code = "SEARCH_UNAVAILABLE"
    retryable = True


class InvalidDecision(WizardError):
    code = "INVALID_DECISION"


class SessionNotFound(WizardError):
    code = "NOT_FOUND"

    def __init__(self, session_id: str):
        super().__init__(f"wizard session not found: {session_id}", {"session_id": session_id})


class SessionExpired(WizardError):
    code = "SESSION_EXPIRED"

    def __init__(self, session_id: str):
        super().__init__(f"wizard session has expired: {session_id}", {"session_id": session_id})


class SessionTerminal(WizardError):
    code = "SESSION_TERMINAL"

    def __init__(self, session_id: str, state: str):
        super().__init__(
            f"wizard session {session_id} is {state} and can no longer be changed",
            {"session_id": session_id, "state": state},
        )


class SessionBusy(WizardError):
    """Another mutating call holds the session."""

    code = "SESSION_BUSY"
    retryable = True

    def __init__(self, session_id: str):
        super().__init__(
            f"wizard session {session_id} is busy with another operation",
            {"session_id": session_id},
        )


class ListLocked(WizardError):
    code = "LIST_LOCKED"

    def __init__(self, list_id: int, session_id: str):
        super().__init__(
            f"shopping list {list_id} is already being migrated by session {session_id}",
            {"list_id": list_id, "session_id": session_id},
        )


class NoMigratableItems(WizardError):
    code = "NO_EXPIRED_ITEMS"

    def __init__(self, list_id: int):
        super().__init__(
            f"shopping list {list_id} has no items that need migration",
            {"list_id": list_id},
        )


class CommitFailed(WizardError):
    """The atomic shopping-list update was rolled back."""

    code = "COMMIT_FAILED"
    retryable = True


class ListItemNotFound(WizardError):
    code = "NOT_FOUND"

    def __init__(self, item_id: int):
        super().__init__(f"shopping list item not found: {item_id}", {"item_id": item_id})


class SessionStoreUnavailable(WizardError):
    """The session-state store could not be reached."""

    code = "SESSION_STORE_UNAVAILABLE"
    retryable = True
