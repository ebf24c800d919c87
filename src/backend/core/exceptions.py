"""
EvalShield exception hierarchy.

Every error raised by the privacy pipeline derives from EvalShieldError and
carries a stable machine-readable code. The API layer maps codes to HTTP
statuses; messages on DecryptionError never say which check failed.
"""


class EvalShieldError(Exception):
    """Base exception for all EvalShield errors."""

    def __init__(self, message: str = "", code: str = "EVALSHIELD_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class ConfigurationError(EvalShieldError):
    """Raised when the master key is missing or malformed."""

    def __init__(self, message: str = "Encryption master key is not configured"):
        super().__init__(message, code="CONFIGURATION_ERROR")


class DecryptionError(EvalShieldError):
    """Raised when an encrypted value cannot be authenticated or decrypted."""

    def __init__(self, message: str = "Unable to decrypt value"):
        super().__init__(message, code="DECRYPTION_ERROR")


class InputError(EvalShieldError):
    """Raised for invalid or forbidden submission content."""

    def __init__(self, message: str = "Invalid input"):
        super().__init__(message, code="INPUT_ERROR")


class BudgetExhaustedError(EvalShieldError):
    """Raised when the differential privacy tracker refuses a query."""

    def __init__(self, message: str = "Privacy budget exhausted. Please try again later."):
        super().__init__(message, code="BUDGET_EXHAUSTED")


class StoreError(EvalShieldError):
    """Raised when the document store rejects an operation."""

    def __init__(self, message: str = "Document store operation failed"):
        super().__init__(message, code="STORE_ERROR")
