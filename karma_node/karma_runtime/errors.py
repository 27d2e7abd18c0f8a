from __future__ import annotations

"""
Error taxonomy for the karma runtime.

Every error carries a short machine-readable ``code`` so the API layer can
return it verbatim. Runtime modules raise these; only the API layer turns
them into HTTP responses.

Rejected mutations never leave partial state behind: all validation runs
before the first write.
"""

from typing import Any, Dict, Optional


class KarmaError(Exception):
    code = "karma_error"

    def __init__(self, message: str, *, code: Optional[str] = None) -> None:
        super().__init__(message)
        if code:
            self.code = code

    @property
    def message(self) -> str:
        return str(self.args[0]) if self.args else self.code

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": False, "error": self.code, "detail": self.message}


class ValidationError(KarmaError):
    """Out-of-range score, malformed rule, duplicate registration, ..."""

    code = "validation_error"


class UnauthorizedError(KarmaError):
    """Privileged operation attempted by someone other than the owner."""

    code = "unauthorized"


class NotFoundError(KarmaError):
    """Unknown user, rule or DAO."""

    code = "not_found"
