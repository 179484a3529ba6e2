"""
Case Store
==========

Authoritative in-memory collection of cases, bound to local storage.

- Case / person / document CRUD, all case-scoped
- Status state machine (draft -> in_review -> approved/rejected -> ...)
- Search, status filter and derived statistics

Every mutation builds a new list of new (frozen) records and replaces the
collection; nothing is mutated in place. The store is constructed
explicitly and passed to whoever needs it.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Type, Union

from pydantic import BaseModel, TypeAdapter, ValidationError

from .errors import CaseErrorCode, CaseStoreError
from .models import (
    Case,
    Person,
    UploadedDocument,
    generate_case_number,
    generate_id,
    next_timestamp,
    now_utc,
)
from .schemas import CASE_STATUS_TRANSITIONS, CaseStatus, PersonType
from .storage import STORAGE_KEYS, LocalStorage, StorageBinding, bind

logger = logging.getLogger(__name__)


DEFAULT_CASE_TITLE = "คดีใหม่ (ยังไม่ตั้งชื่อ)"
IN_REVIEW_REQUIRES_PERSON = "ต้องมีบุคคลที่เกี่ยวข้องอย่างน้อย 1 คน"

# Set by the store only
_CASE_PROTECTED = {"id", "status", "created_at", "updated_at"}
_PERSON_PROTECTED = {"id", "created_at", "updated_at"}
_DOCUMENT_PROTECTED = {"id", "added_at"}

_CASE_NUMBER_ATTEMPTS = 50

_CASES_ADAPTER = TypeAdapter(List[Case])


def _serialize_cases(cases: List[Case]) -> str:
    return _CASES_ADAPTER.dump_json(cases, by_alias=True).decode("utf-8")


def _deserialize_cases(raw: str) -> List[Case]:
    return _CASES_ADAPTER.validate_json(raw)


def _normalize_fields(
    model: Type[BaseModel],
    fields: Dict[str, Any],
    protected: set
) -> Dict[str, Any]:
    """
    Map camelCase aliases to attribute names and reject unknown or
    store-managed fields.
    """
    by_alias = {(info.alias or name): name for name, info in model.model_fields.items()}
    normalized = {}
    for key, value in fields.items():
        name = key if key in model.model_fields else by_alias.get(key)
        if name is None:
            raise ValueError(f"Unknown {model.__name__} field: {key}")
        if name in protected:
            raise ValueError(f"{model.__name__}.{name} is managed by the store and cannot be set")
        normalized[name] = value
    return normalized


def _build_record(model: Type[BaseModel], payload: Dict[str, Any]) -> Any:
    """Validate a record, reporting bad field values as CaseStoreError(INVALID_FIELD)"""
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        fields = [".".join(str(part) for part in err["loc"]) for err in e.errors()]
        raise CaseStoreError(
            f"ข้อมูลไม่ถูกต้อง: {', '.join(fields)}",
            CaseErrorCode.INVALID_FIELD,
            metadata={
                "model": model.__name__,
                "errors": e.errors(include_url=False, include_context=False, include_input=False),
            },
        ) from e


# =============================================================================
# Results
# =============================================================================

@dataclass
class TransitionResult:
    """Outcome of a status transition; refused transitions do not mutate"""
    success: bool
    error: Optional[str] = None
    code: Optional[str] = None
    case: Optional[Case] = None


@dataclass
class CaseStatistics:
    total_cases: int = 0
    by_status: Dict[str, int] = field(default_factory=dict)
    total_people: int = 0
    total_documents: int = 0


def can_transition(current: Union[CaseStatus, str], target: Union[CaseStatus, str]) -> bool:
    """Is current -> target an edge of the status graph?"""
    try:
        current, target = CaseStatus(current), CaseStatus(target)
    except ValueError:
        return False
    return target in CASE_STATUS_TRANSITIONS.get(current, [])


# =============================================================================
# Store
# =============================================================================

class CaseStore:
    """
    Case collection persisted under one storage key.

    Usage:
        store = CaseStore(LocalStorage("./.hornet_storage"))
        case = store.create(title="ฉ้อโกง")
        store.add_person(case.id, type="defendant", first_name="สมชาย")
        store.transition_status(case.id, CaseStatus.IN_REVIEW)
    """

    def __init__(
        self,
        storage: LocalStorage,
        key: str = STORAGE_KEYS["cases"],
        initial_cases: Optional[List[Case]] = None,
        enforce_unique_case_numbers: bool = True,
        sync_tabs: bool = True
    ):
        self.enforce_unique_case_numbers = enforce_unique_case_numbers
        self._binding: StorageBinding[List[Case]] = bind(
            storage,
            key,
            list(initial_cases or []),
            serialize=_serialize_cases,
            deserialize=_deserialize_cases,
            sync_tabs=sync_tabs,
        )
        if self._binding.error:
            logger.error(f"Storage error in CaseStore: code={self._binding.error.code}")

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def cases(self) -> List[Case]:
        return list(self._binding.value)

    @property
    def storage_error(self):
        """Last non-fatal persistence error (None when the last write succeeded)"""
        return self._binding.error

    def subscribe(self, callback: Callable[[List[Case]], None]) -> Callable[[], None]:
        return self._binding.subscribe(callback)

    def reset(self, cases: List[Case]):
        """Replace the whole collection (e.g. demo seeding)"""
        self._binding.set(list(cases))
        logger.info(f"Case collection replaced: count={len(cases)}")

    def close(self):
        self._binding.close()

    def _commit(self, cases: List[Case]):
        self._binding.set(cases)
        if self._binding.error:
            logger.warning(f"Case change kept in memory only: code={self._binding.error.code}")

    def _replace_case(self, case_id: str, change: Callable[[Case], Optional[Case]]) -> Optional[Case]:
        """
        Apply `change` to the matching case and commit the new collection.

        `change` may return None to abort without mutation.
        """
        current = self._binding.value
        for position, case in enumerate(current):
            if case.id != case_id:
                continue
            updated = change(case)
            if updated is None:
                return None
            self._commit(current[:position] + [updated] + current[position + 1:])
            return updated
        return None

    # -------------------------------------------------------------------------
    # Case operations
    # -------------------------------------------------------------------------

    def get(self, case_id: str) -> Optional[Case]:
        return next((c for c in self._binding.value if c.id == case_id), None)

    def get_by_case_number(self, case_number: str) -> Optional[Case]:
        return next((c for c in self._binding.value if c.case_number == case_number), None)

    def _case_number_taken(self, case_number: str, exclude_id: Optional[str] = None) -> bool:
        return any(
            c.case_number == case_number and c.id != exclude_id
            for c in self._binding.value
        )

    def _new_case_number(self) -> str:
        number = generate_case_number()
        if not self.enforce_unique_case_numbers:
            return number
        for _ in range(_CASE_NUMBER_ATTEMPTS):
            if not self._case_number_taken(number):
                return number
            number = generate_case_number()
        raise CaseStoreError(
            "ไม่สามารถสร้างเลขคดีใหม่ได้ กรุณาระบุเลขคดีเอง",
            CaseErrorCode.CASE_NUMBER_EXISTS,
        )

    def _check_case_number(self, case_number: str, exclude_id: Optional[str] = None):
        if self.enforce_unique_case_numbers and self._case_number_taken(case_number, exclude_id):
            raise CaseStoreError(
                f"เลขคดี {case_number} มีอยู่แล้ว",
                CaseErrorCode.CASE_NUMBER_EXISTS,
                metadata={"case_number": case_number},
            )

    def create(self, data: Optional[Dict[str, Any]] = None, **fields) -> Case:
        """
        Create a draft case.

        Args:
            data / fields: Initial fields (title, description, case_number,
                documents, people, ...). id, status and timestamps are assigned.

        Returns:
            The created Case

        Raises:
            CaseStoreError: CASE_NUMBER_EXISTS for a duplicate explicit case number,
                INVALID_FIELD for a value the Case record rejects
        """
        values = _normalize_fields(Case, {**(data or {}), **fields}, _CASE_PROTECTED)

        if values.get("case_number"):
            self._check_case_number(str(values["case_number"]).strip())
        else:
            values["case_number"] = self._new_case_number()

        timestamp = now_utc()
        case = _build_record(Case, {
            "title": DEFAULT_CASE_TITLE,
            "description": "",
            "people": [],
            "documents": {},
            "uploaded_documents": [],
            **values,
            "id": generate_id(),
            "status": CaseStatus.DRAFT,
            "created_at": timestamp,
            "updated_at": timestamp,
        })

        self._commit(self._binding.value + [case])
        logger.info(f"Case created: case_id={case.id} case_number={case.case_number}")
        return case

    def update(self, case_id: str, data: Optional[Dict[str, Any]] = None, **fields) -> Optional[Case]:
        """
        Merge fields into a case and refresh updated_at.

        Returns:
            The updated Case, or None when the id is unknown (nothing changes)
        """
        values = _normalize_fields(Case, {**(data or {}), **fields}, _CASE_PROTECTED)

        if self.get(case_id) is None:
            logger.warning(f"Attempted to update non-existent case: case_id={case_id}")
            return None

        if "case_number" in values:
            self._check_case_number(str(values["case_number"]).strip(), exclude_id=case_id)

        def change(case: Case) -> Case:
            return _build_record(Case, {
                **case.model_dump(),
                **values,
                "updated_at": next_timestamp(case.updated_at),
            })

        updated = self._replace_case(case_id, change)
        logger.debug(f"Case updated: case_id={case_id} fields={sorted(values)}")
        return updated

    def delete(self, case_id: str) -> bool:
        """Remove a case together with its people and documents"""
        current = self._binding.value
        case = self.get(case_id)
        if case is None:
            logger.warning(f"Attempted to delete non-existent case: case_id={case_id}")
            return False

        self._commit([c for c in current if c.id != case_id])
        logger.info(f"Case deleted: case_id={case_id} case_number={case.case_number}")
        return True

    # -------------------------------------------------------------------------
    # Status transitions
    # -------------------------------------------------------------------------

    def transition_status(self, case_id: str, new_status: Union[CaseStatus, str]) -> TransitionResult:
        """
        Move a case along the status graph.

        Refused transitions return success=False and leave the case untouched.
        Entering in_review requires at least one person on the case.
        """
        case = self.get(case_id)
        if case is None:
            logger.error(f"Cannot transition status: case not found: case_id={case_id}")
            return TransitionResult(
                success=False,
                error="Case not found",
                code=CaseErrorCode.CASE_NOT_FOUND.value,
            )

        target = new_status.value if isinstance(new_status, CaseStatus) else str(new_status)
        if not can_transition(case.status, target):
            allowed = [s.value for s in CASE_STATUS_TRANSITIONS[case.status]]
            logger.warning(
                f"Invalid status transition: case_id={case_id} from={case.status.value} "
                f"to={target} allowed={allowed}"
            )
            return TransitionResult(
                success=False,
                error=f"Cannot transition from {case.status.value} to {target}",
                code=CaseErrorCode.INVALID_TRANSITION.value,
                case=case,
            )

        target_status = CaseStatus(target)
        if target_status == CaseStatus.IN_REVIEW and not case.people:
            return TransitionResult(
                success=False,
                error=IN_REVIEW_REQUIRES_PERSON,
                code=CaseErrorCode.TRANSITION_PRECONDITION.value,
                case=case,
            )

        updated = self._replace_case(case_id, lambda c: c.model_copy(update={
            "status": target_status,
            "updated_at": next_timestamp(c.updated_at),
        }))

        logger.info(
            f"Case status transitioned: case_id={case_id} "
            f"from={case.status.value} to={target_status.value}"
        )
        return TransitionResult(success=True, case=updated)

    # -------------------------------------------------------------------------
    # Person operations
    # -------------------------------------------------------------------------

    def add_person(self, case_id: str, data: Optional[Dict[str, Any]] = None, **fields) -> Optional[Person]:
        """
        Add a person to a case.

        Returns:
            The new Person, or None if the case does not exist
        """
        values = _normalize_fields(Person, {**(data or {}), **fields}, _PERSON_PROTECTED)
        person = _build_record(Person, {
            "type": PersonType.RELATED,
            **values,
            "id": generate_id(),
            "created_at": now_utc(),
        })

        updated = self._replace_case(case_id, lambda c: c.model_copy(update={
            "people": c.people + [person],
            "updated_at": next_timestamp(c.updated_at),
        }))
        if updated is None:
            logger.warning(f"Cannot add person: case not found: case_id={case_id}")
            return None

        logger.debug(f"Person added to case: case_id={case_id} person_id={person.id}")
        return person

    def update_person(
        self,
        case_id: str,
        person_id: str,
        data: Optional[Dict[str, Any]] = None,
        **fields
    ) -> Optional[Person]:
        values = _normalize_fields(Person, {**(data or {}), **fields}, _PERSON_PROTECTED)
        result: Dict[str, Person] = {}

        def change(case: Case) -> Optional[Case]:
            person = case.find_person(person_id)
            if person is None:
                return None
            timestamp = next_timestamp(case.updated_at)
            updated_person = _build_record(Person, {
                **person.model_dump(),
                **values,
                "updated_at": timestamp,
            })
            result["person"] = updated_person
            return case.model_copy(update={
                "people": [updated_person if p.id == person_id else p for p in case.people],
                "updated_at": timestamp,
            })

        if self._replace_case(case_id, change) is None:
            logger.warning(f"Cannot update person: case_id={case_id} person_id={person_id} not found")
            return None

        logger.debug(f"Person updated: case_id={case_id} person_id={person_id}")
        return result["person"]

    def delete_person(self, case_id: str, person_id: str) -> bool:
        def change(case: Case) -> Optional[Case]:
            if case.find_person(person_id) is None:
                return None
            return case.model_copy(update={
                "people": [p for p in case.people if p.id != person_id],
                "updated_at": next_timestamp(case.updated_at),
            })

        if self._replace_case(case_id, change) is None:
            logger.warning(f"Cannot delete person: case_id={case_id} person_id={person_id} not found")
            return False

        logger.debug(f"Person deleted from case: case_id={case_id} person_id={person_id}")
        return True

    # -------------------------------------------------------------------------
    # Document operations
    # -------------------------------------------------------------------------

    def add_document(
        self,
        case_id: str,
        document: Union[UploadedDocument, Dict[str, Any], None] = None,
        **fields
    ) -> Optional[UploadedDocument]:
        """
        Attach an uploaded document (OCR text + chunks) to a case.

        Returns:
            The stored UploadedDocument (fresh id/added_at), or None if the case does not exist
        """
        if isinstance(document, UploadedDocument):
            base = document.model_dump(exclude=_DOCUMENT_PROTECTED)
        else:
            base = dict(document or {})
        values = _normalize_fields(UploadedDocument, {**base, **fields}, _DOCUMENT_PROTECTED)
        new_doc = _build_record(UploadedDocument, {
            **values,
            "id": generate_id(),
            "added_at": now_utc(),
        })

        updated = self._replace_case(case_id, lambda c: c.model_copy(update={
            "uploaded_documents": c.uploaded_documents + [new_doc],
            "updated_at": next_timestamp(c.updated_at),
        }))
        if updated is None:
            logger.warning(f"Cannot add document: case not found: case_id={case_id}")
            return None

        logger.debug(
            f"Document added to case: case_id={case_id} document_id={new_doc.id} "
            f"chars={len(new_doc.raw_text)} chunks={len(new_doc.chunks)}"
        )
        return new_doc

    def delete_document(self, case_id: str, document_id: str) -> bool:
        def change(case: Case) -> Optional[Case]:
            if case.find_document(document_id) is None:
                return None
            return case.model_copy(update={
                "uploaded_documents": [d for d in case.uploaded_documents if d.id != document_id],
                "updated_at": next_timestamp(case.updated_at),
            })

        if self._replace_case(case_id, change) is None:
            logger.warning(f"Cannot delete document: case_id={case_id} document_id={document_id} not found")
            return False

        logger.debug(f"Document deleted from case: case_id={case_id} document_id={document_id}")
        return True

    # -------------------------------------------------------------------------
    # Search & filter
    # -------------------------------------------------------------------------

    def search(self, query: Optional[str]) -> List[Case]:
        """Case-insensitive substring search over number, title, description and people names"""
        if not query or not query.strip():
            return self.cases

        needle = query.strip().casefold()

        def matches(case: Case) -> bool:
            fields = [case.case_number, case.title, case.description]
            for person in case.people:
                fields.extend([person.first_name, person.last_name, person.full_name])
            return any(needle in (value or "").casefold() for value in fields)

        return [c for c in self._binding.value if matches(c)]

    def filter_by_status(self, status: Union[CaseStatus, str, None]) -> List[Case]:
        if not status or status == "all":
            return self.cases
        wanted = status.value if isinstance(status, CaseStatus) else str(status)
        return [c for c in self._binding.value if c.status.value == wanted]

    def statistics(self) -> CaseStatistics:
        cases = self._binding.value
        return CaseStatistics(
            total_cases=len(cases),
            by_status={
                status.value: sum(1 for c in cases if c.status == status)
                for status in CaseStatus
            },
            total_people=sum(len(c.people) for c in cases),
            total_documents=sum(len(c.uploaded_documents) for c in cases),
        )


# =============================================================================
# Demo data
# =============================================================================

def demo_cases() -> List[Case]:
    """Two demonstration cases (one with three people)"""
    return [
        Case.model_validate({
            "caseNumber": "7070/2568",
            "title": "เคสซื้อของไม่ได้ของ",
            "description": "นายพายุ ร่ำลึกคุณปฐพี",
            "createdAt": datetime.fromisoformat("2024-10-09T10:00:00+00:00"),
            "updatedAt": datetime.fromisoformat("2024-10-09T11:00:00+00:00"),
            "status": CaseStatus.DRAFT,
            "people": [
                {
                    "type": PersonType.ACCUSER,
                    "prefix": "นางสาว",
                    "firstName": "จิรัชญาณิช",
                    "lastName": "กัดดีเดโช",
                    "gender": "female",
                    "phone": "0942293565",
                    "address": {
                        "houseNo": "688",
                        "moo": "4",
                        "district": "แม่สาย",
                        "province": "เชียงราย",
                        "country": "ไทย",
                    },
                },
                {
                    "type": PersonType.DEFENDANT,
                    "prefix": "นาย",
                    "firstName": "ทรงวุฒิ",
                    "lastName": "โชมมัย",
                    "gender": "male",
                },
                {
                    "type": PersonType.DEFENDANT,
                    "prefix": "นาย",
                    "firstName": "ทวีศักดิ์",
                    "lastName": "ลุงงางหว้า",
                    "gender": "male",
                },
            ],
            "documents": {
                "submissionDate": "2024-10-10",
                "reportDate": "2024-09-24",
                "outcome": "สั่งฟ้อง",
            },
        }),
        Case.model_validate({
            "caseNumber": "406/2568",
            "title": "ซื้อของไม่ได้ของ",
            "description": "นายพายุ ร่ำลึกคุณปฐพี",
            "createdAt": datetime.fromisoformat("2024-10-07T08:00:00+00:00"),
            "updatedAt": datetime.fromisoformat("2024-10-07T12:00:00+00:00"),
            "status": CaseStatus.DRAFT,
        }),
    ]
