"""
OCR Text Cleanup and Pattern Extraction
=======================================

- clean_ocr_text: remove OCR artifacts, normalize whitespace
- extract_patterns: Thai national IDs, phones, dates, case numbers, e-mails
- validate_national_id / validate_phone: Thai format checks
"""

import re
from dataclasses import dataclass, field
from typing import List


_ZERO_WIDTH = re.compile(r"[\u200b\ufeff]")
_ARTIFACTS = re.compile(r"[|\\]")
_INLINE_WS = re.compile(r"[^\S\n]+")
_MANY_NEWLINES = re.compile(r"\n{3,}")

NATIONAL_ID_PATTERN = re.compile(r"[0-9]-[0-9]{4}-[0-9]{5}-[0-9]{2}-[0-9]")
PHONE_PATTERN = re.compile(r"0[0-9]{1,2}[-\s]?[0-9]{3}[-\s]?[0-9]{4}")
THAI_DATE_PATTERN = re.compile(r"[0-9]{1,2}[\s/\-.][ก-ฮ][ก-๙.]*[\s/\-.][0-9]{4}")
CASE_NUMBER_PATTERN = re.compile(r"[0-9]{1,4}/[0-9]{4}")
EMAIL_PATTERN = re.compile(r"[^\s@]+@[^\s@]+\.[^\s@]+")


@dataclass
class ExtractedPatterns:
    """Structured values found in OCR text"""
    national_ids: List[str] = field(default_factory=list)
    phones: List[str] = field(default_factory=list)
    dates: List[str] = field(default_factory=list)
    case_numbers: List[str] = field(default_factory=list)
    emails: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not any((self.national_ids, self.phones, self.dates, self.case_numbers, self.emails))


def clean_ocr_text(text: str) -> str:
    """
    Clean OCR text.

    - Zero-width characters removed, NBSP -> space
    - Pipe/backslash artifacts removed
    - Runs of spaces/tabs collapsed, 3+ newlines collapsed to 2
    """
    if not text:
        return ""

    text = _ZERO_WIDTH.sub("", text)
    text = text.replace("\u00a0", " ")
    text = _ARTIFACTS.sub("", text)
    text = _INLINE_WS.sub(" ", text)
    text = _MANY_NEWLINES.sub("\n\n", text)
    return text.strip()


def extract_patterns(text: str) -> ExtractedPatterns:
    """Find structured values (IDs, phones, dates...) in text"""
    if not text:
        return ExtractedPatterns()

    return ExtractedPatterns(
        national_ids=NATIONAL_ID_PATTERN.findall(text),
        phones=PHONE_PATTERN.findall(text),
        dates=THAI_DATE_PATTERN.findall(text),
        case_numbers=CASE_NUMBER_PATTERN.findall(text),
        emails=EMAIL_PATTERN.findall(text),
    )


def normalize_phone(phone: str) -> str:
    if not phone:
        return ""
    return re.sub(r"[^0-9]", "", phone)


def validate_phone(phone: str) -> bool:
    """Thai phone: 0 followed by 8-9 digits"""
    return bool(re.fullmatch(r"0[0-9]{8,9}", normalize_phone(phone)))


def validate_national_id(national_id: str) -> bool:
    """Thai 13-digit national ID with mod-11 check digit"""
    digits = normalize_phone(national_id)
    if not re.fullmatch(r"[0-9]{13}", digits or ""):
        return False

    total = sum(int(digits[i]) * (13 - i) for i in range(12))
    check_digit = (11 - (total % 11)) % 10
    return check_digit == int(digits[12])
