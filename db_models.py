from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, field_validator, model_validator, validate_email
from pydantic_core import PydanticCustomError


class LinkPrecedence(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"


class ContactRecord(BaseModel):
    """One row of the Contact table."""

    id: Optional[int] = None
    email: Optional[str] = None
    phoneNumber: Optional[str] = None
    linkedId: Optional[int] = None
    linkPrecedence: LinkPrecedence = LinkPrecedence.PRIMARY
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None
    deletedAt: Optional[datetime] = None

    @property
    def is_primary(self) -> bool:
        return self.linkPrecedence == LinkPrecedence.PRIMARY

    @property
    def age_key(self):
        # oldest first; id breaks createdAt ties
        return (self.createdAt, self.id)


class IdentifyRequest(BaseModel):
    email: Optional[str] = None
    phoneNumber: Optional[str] = None

    @field_validator("email", "phoneNumber", mode="before")
    @classmethod
    def blank_as_missing(cls, value):
        # clients often send phoneNumber as a JSON number
        if isinstance(value, int) and not isinstance(value, bool):
            value = str(value)
        if isinstance(value, str):
            value = value.strip()
            return value or None
        return value

    @field_validator("email")
    @classmethod
    def email_well_formed(cls, value):
        if value is None:
            return value
        try:
            _, address = validate_email(value)
        except PydanticCustomError:
            raise ValueError("Invalid email format") from None
        # "Name <addr>" parses, but only a bare address is accepted
        if address.casefold() != value.casefold():
            raise ValueError("Invalid email format")
        # stored as given, matching is by exact equality
        return value

    @model_validator(mode="after")
    def require_contact_method(self):
        if not self.email and not self.phoneNumber:
            raise ValueError("Either email or phoneNumber must be provided")
        return self


class ContactResponse(BaseModel):
    primaryContactId: int
    emails: List[str]
    phoneNumbers: List[str]
    secondaryContactIds: List[int]


class FinalResponse(BaseModel):
    contact: ContactResponse


class HealthResponse(BaseModel):
    status: str
    service: str
    timestamp: str
