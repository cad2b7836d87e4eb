"""
Admission checks for submitted items.

Validation looks only at the declared content type (or file name) and the
byte size, so the same submission always gets the same verdict.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from ..config import MIB, PipelineConfig
from .models import ItemRequest, format_file_size

REASON_UNSUPPORTED_TYPE = "unsupported type"
REASON_TOO_LARGE = "too large"


@dataclass(frozen=True)
class FileType:
    """One accepted file type and its size ceiling."""
    mime_types: Tuple[str, ...]
    extensions: Tuple[str, ...]
    max_size: int
    description: str = ""

    def matches(self, content_type: str, name: str) -> bool:
        lowered = name.lower()
        return content_type in self.mime_types or any(lowered.endswith(ext) for ext in self.extensions)


@dataclass(frozen=True)
class ContentClass:
    """A named allow-list of file types."""
    name: str
    file_types: Tuple[FileType, ...]

    def find_type(self, content_type: str, name: str) -> Optional[FileType]:
        for file_type in self.file_types:
            if file_type.matches(content_type, name):
                return file_type
        return None

    def with_ceiling(self, max_size: int) -> 'ContentClass':
        """Copy of this class with every ceiling replaced."""
        return ContentClass(
            name=self.name,
            file_types=tuple(
                FileType(t.mime_types, t.extensions, max_size, t.description) for t in self.file_types
            )
        )


# Script files dropped into a batch
BATCH_SCRIPT = ContentClass("batch_script", (
    FileType(("text/plain",), (".txt",), 10 * MIB, "Plain text files"),
    FileType(("application/json",), (".json",), 10 * MIB, "JSON files"),
    FileType(("text/csv",), (".csv",), 10 * MIB, "CSV files"),
))

# Documents accepted by the script upload form
DOCUMENT = ContentClass("document", (
    FileType(("text/plain",), (".txt",), 10 * MIB, "Plain text files"),
    FileType(("application/pdf",), (".pdf",), 20 * MIB, "PDF documents"),
    FileType(
        ("application/vnd.openxmlformats-officedocument.wordprocessingml.document",),
        (".docx",), 15 * MIB, "Microsoft Word documents (newer format)"
    ),
    FileType(("application/msword",), (".doc",), 15 * MIB, "Microsoft Word documents (legacy format)"),
))

# Voice samples uploaded for cloning
AUDIO_SAMPLE = ContentClass("audio_sample", (
    FileType(("audio/wav", "audio/x-wav"), (".wav",), 50 * MIB, "WAV audio"),
    FileType(("audio/mp3", "audio/mpeg"), (".mp3",), 50 * MIB, "MP3 audio"),
    FileType(("audio/m4a", "audio/mp4"), (".m4a",), 50 * MIB, "M4A audio"),
))


@dataclass(frozen=True)
class ValidationResult:
    """Verdict for one item: ok, or rejected with a reason."""
    reason: Optional[str] = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.reason is None

    @classmethod
    def accepted(cls) -> 'ValidationResult':
        return cls()

    @classmethod
    def rejected(cls, reason: str, detail: str) -> 'ValidationResult':
        return cls(reason=reason, detail=detail)


@dataclass(frozen=True)
class Rejection:
    """A rejected item of a multi-item submission."""
    index: int
    name: str
    reason: str
    detail: str = ""


def validate(item: ItemRequest, content_class: ContentClass = BATCH_SCRIPT) -> ValidationResult:
    """
    Check one submitted item against the allow-list and size ceiling.

    Args:
        item: Submitted item
        content_class: Allow-list to check against

    Returns:
        ValidationResult, rejected with 'unsupported type' or 'too large'
    """
    file_type = content_class.find_type(item.content_type or "", item.name or "")
    if file_type is None:
        supported = ', '.join(ext for t in content_class.file_types for ext in t.extensions)
        return ValidationResult.rejected(
            REASON_UNSUPPORTED_TYPE,
            f"File type not supported. Supported types: {supported}"
        )

    if item.size_bytes is not None and item.size_bytes > file_type.max_size:
        return ValidationResult.rejected(
            REASON_TOO_LARGE,
            f"File size ({format_file_size(item.size_bytes)}) exceeds maximum allowed size "
            f"({format_file_size(file_type.max_size)})"
        )

    return ValidationResult.accepted()


class ItemValidator:
    """
    Validator bound to configured ceilings.

    Script and audio sample ceilings come from PipelineConfig; document
    ceilings are per file type.
    """

    def __init__(self, config: Optional[PipelineConfig] = None):
        config = config or PipelineConfig()
        self.content_classes: Dict[str, ContentClass] = {
            BATCH_SCRIPT.name: BATCH_SCRIPT.with_ceiling(config.script_max_bytes),
            DOCUMENT.name: DOCUMENT,
            AUDIO_SAMPLE.name: AUDIO_SAMPLE.with_ceiling(config.audio_sample_max_bytes),
        }

    def validate(self, item: ItemRequest, content_class: str = BATCH_SCRIPT.name) -> ValidationResult:
        return validate(item, self.content_classes[content_class])

    def validate_all(
        self,
        items: Sequence[ItemRequest],
        content_class: str = BATCH_SCRIPT.name
    ) -> Tuple[List[Tuple[int, ItemRequest]], List[Rejection]]:
        """
        Evaluate every item independently.

        Returns:
            (admitted (index, item) pairs, rejections)
        """
        admitted = []
        rejected = []
        for index, item in enumerate(items):
            result = self.validate(item, content_class)
            if result.ok:
                admitted.append((index, item))
            else:
                rejected.append(Rejection(index=index, name=item.name, reason=result.reason, detail=result.detail))
        return admitted, rejected
