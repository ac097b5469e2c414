# This project was developed with assistance from AI tools.
"""Exceptions for conditions that are genuinely exceptional.

Services return ordinary denials and validation failures as data
(``AccessDecision`` / ``ValidationResult``). Routes raise
``ApprovalValidationError`` to turn a failed ``ValidationResult`` into a 422.
"""


class AuthzError(Exception):
    """Base class for authorization subsystem errors."""


class ConfigurationError(AuthzError):
    """A workflow definition or policy table is malformed or missing."""


class StoreUnavailableError(AuthzError):
    """A collaborator store (identity, region, token) could not be reached."""


class ApprovalValidationError(AuthzError):
    """An approval request body failed validation; ``errors`` itemizes each failure."""

    def __init__(self, errors: list[str]):
        super().__init__("; ".join(errors))
        self.errors = list(errors)
