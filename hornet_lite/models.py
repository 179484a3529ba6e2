"""
Data Models for Case Documentation
==================================

Records persisted in local storage:
- Case (คดี) owning its people and uploaded documents
- Person (บุคคลที่เกี่ยวข้อง)
- UploadedDocument (เอกสารที่อัปโหลด) with OCR text and chunks
- Chunk (derived, regenerable from raw_text)

Records are frozen: every change produces a new record (model_copy),
the previous collection is never mutated in place.
JSON form uses camelCase keys; Python attributes are snake_case.
"""

import random
import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .schemas import CaseStatus, Gender, PersonType


CASE_NUMBER_PATTERN = re.compile(r"^[0-9]{1,4}/[0-9]{4}$")
BUDDHIST_ERA_OFFSET = 543


# =============================================================================
# HELPERS
# =============================================================================

def generate_id() -> str:
    """Opaque stable identifier (UUID v4)"""
    return str(uuid.uuid4())


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def next_timestamp(previous: Optional[datetime] = None) -> datetime:
    """
    Current time, but strictly after `previous`.

    Two mutations within the same clock tick must still move updated_at forward.
    """
    current = now_utc()
    if previous is not None and current <= previous:
        return previous + timedelta(microseconds=1)
    return current


def buddhist_year(moment: Optional[datetime] = None) -> int:
    """Gregorian year + 543"""
    return (moment or now_utc()).year + BUDDHIST_ERA_OFFSET


def generate_case_number(moment: Optional[datetime] = None, rng: Optional[random.Random] = None) -> str:
    """
    Generate a human-readable case number.

    Format: NNNN/YYYY (Buddhist Era)
    """
    rng = rng or random
    sequence = rng.randint(1000, 9999)
    return f"{sequence}/{buddhist_year(moment)}"


class _Record(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
        extra="ignore",
    )

    def to_json_dict(self) -> Dict[str, Any]:
        """JSON-compatible dict with camelCase keys"""
        return self.model_dump(mode="json", by_alias=True)


# =============================================================================
# RECORDS
# =============================================================================

class Chunk(_Record):
    """Half-open slice [start_index, end_index) of a document's raw text"""
    text: str
    start_index: int = Field(ge=0)
    end_index: int = Field(ge=0)
    index: int = Field(ge=0)


class Address(_Record):
    house_no: Optional[str] = None
    moo: Optional[str] = None
    street: Optional[str] = None
    subdistrict: Optional[str] = None
    district: Optional[str] = None
    province: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None

    def format(self) -> str:
        parts = []
        if self.house_no:
            parts.append(f"เลขที่ {self.house_no}")
        if self.moo:
            parts.append(f"หมู่ {self.moo}")
        if self.street:
            parts.append(f"ถนน{self.street}")
        if self.subdistrict:
            parts.append(f"ตำบล{self.subdistrict}")
        if self.district:
            parts.append(f"อำเภอ{self.district}")
        if self.province:
            parts.append(f"จังหวัด{self.province}")
        if self.postal_code:
            parts.append(self.postal_code)
        if self.country:
            parts.append(self.country)
        return " ".join(parts)


class Person(_Record):
    id: str = Field(default_factory=generate_id)
    type: PersonType = PersonType.RELATED
    prefix: str = ""
    first_name: str = ""
    last_name: str = ""
    gender: Optional[Gender] = None
    phone: str = ""
    address: Union[Address, str, None] = None
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=now_utc)
    updated_at: Optional[datetime] = None

    @field_validator("gender", mode="before")
    @classmethod
    def _blank_gender(cls, value):
        # Older records store an unset gender as ""
        return value or None

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.prefix, self.first_name, self.last_name) if p).strip()


class UploadedDocument(_Record):
    id: str = Field(default_factory=generate_id)
    filename: str
    raw_text: str = ""
    chunks: List[Chunk] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0, le=100)
    added_at: datetime = Field(default_factory=now_utc)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Case(_Record):
    id: str = Field(default_factory=generate_id)
    case_number: str = Field(default_factory=generate_case_number)
    title: str = ""
    description: str = ""
    status: CaseStatus = CaseStatus.DRAFT
    created_at: datetime = Field(default_factory=now_utc)
    updated_at: datetime = Field(default_factory=now_utc)
    people: List[Person] = Field(default_factory=list)
    documents: Dict[str, Any] = Field(default_factory=dict)
    uploaded_documents: List[UploadedDocument] = Field(default_factory=list)

    @field_validator("case_number")
    @classmethod
    def _check_case_number(cls, value: str) -> str:
        value = value.strip()
        if not CASE_NUMBER_PATTERN.match(value):
            raise ValueError(f"case number must look like NNNN/YYYY, got {value!r}")
        return value

    @field_validator("updated_at")
    @classmethod
    def _not_before_created(cls, value: datetime, info) -> datetime:
        created = info.data.get("created_at")
        if created is not None and value < created:
            raise ValueError("updated_at must not be earlier than created_at")
        return value

    def find_person(self, person_id: str) -> Optional[Person]:
        return next((p for p in self.people if p.id == person_id), None)

    def find_document(self, document_id: str) -> Optional[UploadedDocument]:
        return next((d for d in self.uploaded_documents if d.id == document_id), None)
