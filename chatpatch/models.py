"""Data structures passed between parsing, review, apply and checkpoints."""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union


class EditFormat(str, Enum):
    WHOLE = "whole"
    TRUNCATED = "truncated"
    DIFF = "diff"
    BEFORE_AFTER = "before_after"


@dataclass(frozen=True)
class WholePayload:
    content: str


@dataclass(frozen=True)
class TruncatedPayload:
    content: str


@dataclass(frozen=True)
class DiffPayload:
    patch: str


@dataclass(frozen=True)
class SearchReplaceBlock:
    search: str
    replace: str


@dataclass(frozen=True)
class BeforeAfterPayload:
    blocks: tuple[SearchReplaceBlock, ...]


Payload = Union[WholePayload, TruncatedPayload, DiffPayload, BeforeAfterPayload]

PAYLOAD_TYPES = {
    EditFormat.WHOLE: WholePayload,
    EditFormat.TRUNCATED: TruncatedPayload,
    EditFormat.DIFF: DiffPayload,
    EditFormat.BEFORE_AFTER: BeforeAfterPayload,
}


@dataclass(frozen=True)
class ParsedEdit:
    """One file-level instruction extracted from a response."""
    file_path: str
    edit_format: EditFormat
    payload: Payload
    workspace_name: str | None = None
    is_new: bool = False
    is_deleted: bool = False
    is_renamed: bool = False
    old_path: str | None = None

    def __post_init__(self):
        expected = PAYLOAD_TYPES[self.edit_format]
        if not isinstance(self.payload, expected):
            raise TypeError(
                f"{self.edit_format.value} edit needs {expected.__name__}, got {type(self.payload).__name__}"
            )
        if self.is_renamed and not self.old_path:
            raise ValueError("Renamed edit requires old_path")

    @property
    def key(self) -> tuple[str, str]:
        return (self.file_path, self.workspace_name or "")


@dataclass(frozen=True)
class RelevantFilesItem:
    file_paths: tuple[str, ...]


@dataclass(frozen=True)
class TextSegment:
    content: str


@dataclass(frozen=True)
class RelevantSegment:
    item: RelevantFilesItem


@dataclass(frozen=True)
class EditSegment:
    edit: ParsedEdit


Segment = Union[TextSegment, RelevantSegment, EditSegment]


@dataclass(frozen=True)
class WorkspaceRoot:
    name: str
    absolute_path: str


class ReviewStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    FALLBACK_APPLIED = "fallback_applied"


@dataclass
class FileInPreview:
    """A parsed edit bound to disk, with its proposed content and review state."""
    edit: ParsedEdit
    absolute_path: str
    original_content: str = ""
    proposed_content: str = ""
    is_checked: bool = True
    lines_added: int = 0
    lines_removed: int = 0
    is_new: bool = False
    is_fallback: bool = False
    diff_fallback_method: str | None = None
    is_replaced: bool = False
    old_absolute_path: str | None = None
    edit_count: int = 1
    status: ReviewStatus = ReviewStatus.PENDING
    error: str | None = None

    @property
    def file_path(self) -> str:
        return self.edit.file_path

    @property
    def workspace_name(self) -> str | None:
        return self.edit.workspace_name

    @property
    def is_deleted(self) -> bool:
        return self.edit.is_deleted

    def to_summary(self) -> dict:
        return {
            "file_path": self.file_path,
            "workspace_name": self.workspace_name,
            "edit_format": self.edit.edit_format.value,
            "is_new": self.is_new,
            "is_deleted": self.is_deleted,
            "is_renamed": self.edit.is_renamed,
            "lines_added": self.lines_added,
            "lines_removed": self.lines_removed,
            "is_fallback": self.is_fallback,
            "diff_fallback_method": self.diff_fallback_method,
            "is_replaced": self.is_replaced,
            "edit_count": self.edit_count,
            "status": self.status.value,
        }


@dataclass
class Checkpoint:
    timestamp: int
    title: str
    description: str | None = None
    is_temporary: bool = False
    is_starred: bool = False
    git_data: dict[str, dict[str, str]] = field(default_factory=dict)
    uses_git: bool = False
    response_history: list[dict[str, Any]] = field(default_factory=list)
    checked_files: list[str] = field(default_factory=list)
    checked_websites: list[str] = field(default_factory=list)
    active_tabs: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "title": self.title,
            "description": self.description,
            "is_temporary": self.is_temporary,
            "is_starred": self.is_starred,
            "git_data": self.git_data,
            "uses_git": self.uses_git,
            "response_history": self.response_history,
            "checked_files": self.checked_files,
            "checked_websites": self.checked_websites,
            "active_tabs": self.active_tabs,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Checkpoint":
        return cls(
            timestamp=int(data["timestamp"]),
            title=data.get("title", ""),
            description=data.get("description"),
            is_temporary=bool(data.get("is_temporary", False)),
            is_starred=bool(data.get("is_starred", False)),
            git_data=dict(data.get("git_data") or {}),
            uses_git=bool(data.get("uses_git", False)),
            response_history=list(data.get("response_history") or []),
            checked_files=list(data.get("checked_files") or []),
            checked_websites=list(data.get("checked_websites") or []),
            active_tabs=list(data.get("active_tabs") or []),
        )
