from typing import Optional


class InvalidInputError(ValueError):
    """Raised when untrusted input fails sanitization or validation"""

    def __init__(self, message: str, field_name: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.field_name = field_name
