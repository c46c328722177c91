"""File type/size validation and filename based categorization."""

import re
from datetime import datetime
from typing import List, Optional

from docvault.core.exceptions import ValidationError
from docvault.schemas.documents import DocumentCategory, UploadFile

ALLOWED_EXTENSIONS = frozenset(
    ["pdf", "doc", "docx", "xls", "xlsx", "csv", "txt", "jpg", "jpeg", "png"]
)

ALLOWED_MIME_TYPES = frozenset([
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "text/csv",
    "text/plain",
    "image/jpeg",
    "image/png",
    "application/octet-stream",
])

MIME_BY_EXTENSION = {
    "pdf": "application/pdf",
    "doc": "application/msword",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "xls": "application/vnd.ms-excel",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "csv": "text/csv",
    "txt": "text/plain",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
}

MB = 1024 * 1024

# Upload size limits per role, in MB
ROLE_SIZE_LIMITS_MB = {
    "lender": 100,
    "broker": 50,
    "borrower": 25,
    "vendor": 25,
    "admin": 100,
}
DEFAULT_SIZE_LIMIT_MB = 10

# Ordered: first matching rule wins
CATEGORY_KEYWORDS = [
    (DocumentCategory.LOAN, ("loan", "application")),
    (DocumentCategory.FINANCIAL, ("financial", "statement")),
    (DocumentCategory.TAX, ("tax", "return")),
    (DocumentCategory.LEGAL, ("legal", "agreement")),
    (DocumentCategory.COMPLIANCE, ("kyc", "compliance")),
    (DocumentCategory.COLLATERAL, ("collateral", "title", "appraisal")),
]

TAG_KEYWORDS = {
    "agreement": "agreement",
    "contract": "agreement",
    "financial": "financial",
    "statement": "financial",
    "tax": "tax",
    "signed": "signed",
    "executed": "signed",
    "draft": "draft",
    "invoice": "invoice",
    "application": "application",
    "appraisal": "appraisal",
    "title": "title",
    "kyc": "kyc",
}

YEAR_PATTERN = re.compile(r"(?<!\d)(19|20)\d{2}(?!\d)")


def size_limit_bytes(role: str) -> int:
    return ROLE_SIZE_LIMITS_MB.get(role.lower(), DEFAULT_SIZE_LIMIT_MB) * MB


def resolve_mime_type(file: UploadFile) -> str:
    if file.mime_type:
        return file.mime_type
    return MIME_BY_EXTENSION.get(file.extension, "application/octet-stream")


class FileValidator:
    """Checks uploads against the allowed types and the role's size limit."""

    def is_allowed_type(self, file: UploadFile) -> bool:
        if file.extension not in ALLOWED_EXTENSIONS:
            return False
        if file.mime_type and file.mime_type.lower() not in ALLOWED_MIME_TYPES:
            return False
        return True

    def is_allowed_size(self, file: UploadFile, role: str) -> bool:
        return 0 < file.byte_size <= size_limit_bytes(role)

    def validate(self, file: UploadFile, role: str) -> None:
        """Validate a file for upload.

        Raises:
            ValidationError: If the type or size is not allowed
        """
        if not self.is_allowed_type(file):
            raise ValidationError(
                f"File type not allowed: {file.name}"
                f" (allowed: {', '.join(sorted(ALLOWED_EXTENSIONS))})"
            )
        if file.byte_size == 0:
            raise ValidationError(f"File is empty: {file.name}")
        if not self.is_allowed_size(file, role):
            limit_mb = size_limit_bytes(role) // MB
            raise ValidationError(
                f"File {file.name} exceeds the {limit_mb}MB limit for role '{role}'"
            )


def categorize(file_name: str) -> DocumentCategory:
    """Guess a document category from its file name."""
    lowered = file_name.lower()
    for category, keywords in CATEGORY_KEYWORDS:
        if any(k in lowered for k in keywords):
            return category
    return DocumentCategory.OTHER


def suggest_tags(file_name: str, now: Optional[datetime] = None) -> List[str]:
    """Suggest tags from keywords, a year in the name and the extension."""
    lowered = file_name.lower()
    tags = []
    for keyword, tag in TAG_KEYWORDS.items():
        if keyword in lowered and tag not in tags:
            tags.append(tag)

    year = YEAR_PATTERN.search(lowered)
    if year:
        tags.append(year.group(0))
    elif now is not None:
        tags.append(str(now.year))

    if "." in lowered:
        tags.append(lowered.rsplit(".", 1)[-1])
    return tags
