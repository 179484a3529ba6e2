"""
Shared Enums and Progress Schemas
=================================

Status enums, Thai display labels, the case status transition table,
and the progress payloads reported by OCR and AI operations.
"""

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


# =============================================================================
# CASE STATUS
# =============================================================================

class CaseStatus(str, Enum):
    """Case workflow status"""
    DRAFT = "draft"              # ร่าง
    IN_REVIEW = "in_review"      # รอตรวจสอบ
    APPROVED = "approved"        # อนุมัติ
    REJECTED = "rejected"        # ปฏิเสธ
    ARCHIVED = "archived"        # เก็บถาวร


CASE_STATUS_LABELS: Dict[CaseStatus, str] = {
    CaseStatus.DRAFT: "ร่าง",
    CaseStatus.IN_REVIEW: "รอตรวจสอบ",
    CaseStatus.APPROVED: "อนุมัติ",
    CaseStatus.REJECTED: "ปฏิเสธ",
    CaseStatus.ARCHIVED: "เก็บถาวร",
}

# Legal transitions. ARCHIVED is terminal.
CASE_STATUS_TRANSITIONS: Dict[CaseStatus, List[CaseStatus]] = {
    CaseStatus.DRAFT: [CaseStatus.IN_REVIEW],
    CaseStatus.IN_REVIEW: [CaseStatus.APPROVED, CaseStatus.REJECTED],
    CaseStatus.APPROVED: [CaseStatus.ARCHIVED],
    CaseStatus.REJECTED: [CaseStatus.DRAFT],
    CaseStatus.ARCHIVED: [],
}


# =============================================================================
# PEOPLE
# =============================================================================

class PersonType(str, Enum):
    """Role of a person in the case"""
    ACCUSER = "accuser"          # ผู้กล่าวหา
    DEFENDANT = "defendant"      # ผู้ต้องหา
    WITNESS = "witness"          # พยาน
    RELATED = "related"          # ผู้เกี่ยวข้อง


PERSON_TYPE_LABELS: Dict[PersonType, str] = {
    PersonType.ACCUSER: "ผู้กล่าวหา",
    PersonType.DEFENDANT: "ผู้ต้องหา",
    PersonType.WITNESS: "พยาน",
    PersonType.RELATED: "ผู้เกี่ยวข้อง",
}


class Gender(str, Enum):
    MALE = "male"
    FEMALE = "female"
    OTHER = "other"


GENDER_LABELS: Dict[Gender, str] = {
    Gender.MALE: "ชาย",
    Gender.FEMALE: "หญิง",
    Gender.OTHER: "อื่นๆ",
}


# =============================================================================
# OPERATION STATUS / PROGRESS
# =============================================================================

class OCRStatus(str, Enum):
    IDLE = "idle"
    UPLOADING = "uploading"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class AIStatus(str, Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ProgressUpdate(BaseModel):
    """
    Engine-neutral progress payload.

    progress is always on a single 0-100 scale so callers can render
    a progress bar without knowing which engine produced it.
    """
    status: str
    progress: int = Field(ge=0, le=100)
    message: str = ""


class FileProgress(BaseModel):
    """Per-file progress inside a batch"""
    file_index: int
    filename: str
    update: ProgressUpdate


class BatchProgress(BaseModel):
    """Aggregate batch progress (reported before each file starts)"""
    current: int
    total: int
    progress: int = Field(ge=0, le=100)
    current_file: Optional[str] = None
