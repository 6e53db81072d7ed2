from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple, Union

from pydantic import BaseModel, field_validator, model_validator


class LinkPrecedence(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"


@dataclass(frozen=True)
class Primary:
    """The canonical record of its cluster."""


@dataclass(frozen=True)
class Secondary:
    """A record folded into the cluster owned by ``primary_id``."""

    primary_id: int


Link = Union[Primary, Secondary]


@dataclass
class Contact:
    """One stored contact fragment.

    The primary/secondary role lives in ``link``; ``link_precedence`` and
    ``linked_id`` are derived from it, so a secondary without a primary
    cannot be constructed.
    """

    email: Optional[str] = None
    phone_number: Optional[str] = None
    link: Link = field(default_factory=Primary)
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    @property
    def is_primary(self) -> bool:
        return isinstance(self.link, Primary)

    @property
    def link_precedence(self) -> LinkPrecedence:
        return LinkPrecedence.PRIMARY if self.is_primary else LinkPrecedence.SECONDARY

    @property
    def linked_id(self) -> Optional[int]:
        return self.link.primary_id if isinstance(self.link, Secondary) else None

    @property
    def sort_key(self) -> Tuple[datetime, int]:
        return (self.created_at, self.id)


def _clean_detail(value):
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError("must be a string")
    if isinstance(value, int):
        value = str(value)
    if not isinstance(value, str):
        raise ValueError("must be a string")
    return value if value.strip() else None


class IdentifyRequest(BaseModel):
    email: Optional[str] = None
    phoneNumber: Optional[str] = None

    @field_validator("email", "phoneNumber", mode="before")
    @classmethod
    def clean_detail(cls, value):
        return _clean_detail(value)


class ContactResponse(BaseModel):
    primaryContactId: int
    emails: List[str]
    phoneNumbers: List[str]
    secondaryContactIds: List[int]


class FinalResponse(BaseModel):
    contact: ContactResponse


class AddContactRequest(BaseModel):
    id: Optional[int] = None
    email: Optional[str] = None
    phoneNumber: Optional[str] = None
    linkedId: Optional[int] = None
    linkPrecedence: LinkPrecedence = LinkPrecedence.PRIMARY
    createdAt: Optional[datetime] = None

    @field_validator("email", "phoneNumber", mode="before")
    @classmethod
    def clean_detail(cls, value):
        return _clean_detail(value)

    @field_validator("createdAt")
    @classmethod
    def naive_local_time(cls, value):
        # stored timestamps are naive local time
        if value is not None and value.tzinfo is not None:
            value = value.astimezone().replace(tzinfo=None)
        # never ahead of the store clock
        if value is not None and value > datetime.now():
            raise ValueError("createdAt cannot be in the future")
        return value

    @model_validator(mode="after")
    def check_contact(self):
        if self.email is None and self.phoneNumber is None:
            raise ValueError("Either email or phoneNumber must be provided")
        if self.linkPrecedence is LinkPrecedence.SECONDARY and self.linkedId is None:
            raise ValueError("A secondary contact needs a linkedId")
        if self.linkPrecedence is LinkPrecedence.PRIMARY and self.linkedId is not None:
            raise ValueError("A primary contact cannot have a linkedId")
        return self

    def to_contact(self) -> Contact:
        if self.linkPrecedence is LinkPrecedence.SECONDARY:
            link = Secondary(self.linkedId)
        else:
            link = Primary()
        return Contact(
            id=self.id,
            email=self.email,
            phone_number=self.phoneNumber,
            link=link,
            created_at=self.createdAt,
        )
