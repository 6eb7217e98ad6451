"""
Subscriber email addresses as read from the delivery queue.
"""
from dataclasses import dataclass

from pydantic import BaseModel, EmailStr
from pydantic import ValidationError as PydanticValidationError

from newsletter.core.exceptions import InvalidSubscriberEmail


class _EmailSchema(BaseModel):
    email: EmailStr


@dataclass(frozen=True)
class SubscriberEmail:
    """A syntactically valid email address, kept exactly as stored."""

    value: str

    @classmethod
    def parse(cls, raw: str) -> "SubscriberEmail":
        try:
            _EmailSchema(email=raw)
        except PydanticValidationError as e:
            raise InvalidSubscriberEmail(f"{raw!r} is not a valid subscriber email") from e
        return cls(raw)

    def __str__(self) -> str:
        return self.value
