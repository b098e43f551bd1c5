from pydantic import BaseModel, Field
from typing import Any
from datetime import datetime

from services.errors import InvalidSubject


class Subject(BaseModel):
    """The entity being split: a user id, or a session id for anonymous traffic."""
    user_id: str | None = None
    session_id: str | None = None

    @property
    def kind(self) -> str:
        return "user" if self.user_id else "session"

    @property
    def identifier(self) -> str:
        return self.user_id or self.session_id

    @classmethod
    def resolve(cls, user_id: str | None = None, session_id: str | None = None) -> "Subject":
        """User id wins when both are given; InvalidSubject when neither is."""
        user_id = (user_id or "").strip() or None
        session_id = (session_id or "").strip() or None
        if not user_id and not session_id:
            raise InvalidSubject()
        if user_id:
            return cls(user_id=user_id)
        return cls(session_id=session_id)


class AssignmentResult(BaseModel):
    """
    What the caller renders: the variant and its configuration, or an exclusion.

    excluded=True always means "render the default experience"; variant_name is
    then None. That includes a fallback_control result when no test definition
    was cached to take the control from.
    """
    test_id: int | None = None
    test_name: str
    variant_id: int | None = None
    variant_name: str | None = None
    is_control: bool = False
    configuration: dict[str, Any] = Field(default_factory=dict)
    excluded: bool = False
    reason: str | None = None


class SubjectAssignment(BaseModel):
    """One row of GET /assignments."""
    test_name: str
    test_display_name: str
    variant_name: str
    variant_display_name: str
    is_control: bool
    configuration: dict[str, Any]
    assigned_at: datetime
