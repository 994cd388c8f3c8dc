from __future__ import annotations

from typing import Any, Optional

from fastapi import HTTPException


def bad_request(code: str, message: str):
    raise HTTPException(status_code=400, detail={"code": code, "message": message})


def service_unavailable(code: str, message: str):
    raise HTTPException(status_code=503, detail={"code": code, "message": message})


class InvalidQueryError(ValueError):
    """A discovery query with no safe interpretation (e.g. non-finite centre)."""


class SourceUnavailableError(RuntimeError):
    """A third-party source failed; callers degrade instead of failing."""


class SupaError(RuntimeError):
    """
    PostgREST error payload: {code, message, details, hint} + HTTP status.
    """

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        details: Optional[str] = None,
        hint: Optional[str] = None,
        status: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details
        self.hint = hint
        self.status = status

    @classmethod
    def from_payload(cls, payload: Any, *, status: Optional[int] = None) -> "SupaError":
        if not isinstance(payload, dict):
            return cls(str(payload or "supa_request_failed"), status=status)
        return cls(
            str(payload.get("message") or "supa_request_failed"),
            code=payload.get("code"),
            details=payload.get("details"),
            hint=payload.get("hint"),
            status=status,
        )

    def haystack(self) -> str:
        return " ".join(str(p) for p in (self.message, self.details, self.hint) if p).lower()

    def __repr__(self) -> str:
        return f"SupaError(code={self.code!r}, status={self.status!r}, message={self.message!r})"
