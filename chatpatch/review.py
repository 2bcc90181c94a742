"""Per-file review states for one apply turn."""
import logging
import time

from .errors import ReviewStateError
from .models import FileInPreview, ReviewStatus

logger = logging.getLogger(__name__)


class ReviewSession:
    """Owns the previews of one response between preview and accept/reject.

    Pending and Accepted toggle to Rejected, Rejected toggles back to
    Accepted. Accepted becomes FallbackApplied once a fallback preview is
    written. A closed session refuses every further action.
    """

    def __init__(self, previews: list[FileInPreview], created_at: float | None = None):
        self.previews = list(previews)
        self.created_at = created_at if created_at is not None else time.time()
        self.closed = False

    def _check_open(self) -> None:
        if self.closed:
            raise ReviewStateError("Review session is closed")

    def get(self, file_path: str, workspace_name: str | None = None) -> FileInPreview:
        for preview in self.previews:
            if preview.file_path != file_path:
                continue
            if workspace_name is None or preview.workspace_name == workspace_name:
                return preview
        raise ReviewStateError("File is not part of this review", file_path=file_path,
                               workspace_name=workspace_name)

    def _set(self, preview: FileInPreview, status: ReviewStatus) -> None:
        if status == ReviewStatus.ACCEPTED and preview.error:
            raise ReviewStateError(f"Cannot accept a failed edit: {preview.error}",
                                   file_path=preview.file_path, workspace_name=preview.workspace_name)
        preview.status = status
        preview.is_checked = status == ReviewStatus.ACCEPTED
        logger.debug(f"{preview.file_path} -> {status.value}")

    def accept(self, file_path: str, workspace_name: str | None = None) -> FileInPreview:
        self._check_open()
        preview = self.get(file_path, workspace_name)
        if preview.status == ReviewStatus.FALLBACK_APPLIED:
            raise ReviewStateError("Edit was already written", file_path=file_path)
        self._set(preview, ReviewStatus.ACCEPTED)
        return preview

    def reject(self, file_path: str, workspace_name: str | None = None) -> FileInPreview:
        self._check_open()
        preview = self.get(file_path, workspace_name)
        if preview.status == ReviewStatus.FALLBACK_APPLIED:
            raise ReviewStateError("Edit was already written", file_path=file_path)
        self._set(preview, ReviewStatus.REJECTED)
        return preview

    def toggle(self, file_path: str, workspace_name: str | None = None) -> ReviewStatus:
        self._check_open()
        preview = self.get(file_path, workspace_name)
        if preview.status in (ReviewStatus.PENDING, ReviewStatus.ACCEPTED):
            self._set(preview, ReviewStatus.REJECTED)
        elif preview.status == ReviewStatus.REJECTED:
            self._set(preview, ReviewStatus.ACCEPTED)
        else:
            raise ReviewStateError(f"Cannot toggle a {preview.status.value} edit", file_path=file_path)
        return preview.status

    def accept_all(self) -> int:
        """Accept every edit that can be written; failed edits stay as they are."""
        self._check_open()
        count = 0
        for preview in self.previews:
            if preview.error or preview.status == ReviewStatus.FALLBACK_APPLIED:
                continue
            self._set(preview, ReviewStatus.ACCEPTED)
            count += 1
        return count

    def reject_all(self) -> int:
        self._check_open()
        count = 0
        for preview in self.previews:
            if preview.status == ReviewStatus.FALLBACK_APPLIED:
                continue
            self._set(preview, ReviewStatus.REJECTED)
            count += 1
        return count

    def mark_fallback_applied(self, preview: FileInPreview) -> None:
        self._check_open()
        if preview.status != ReviewStatus.ACCEPTED or not preview.is_fallback:
            raise ReviewStateError("Only accepted fallback edits can be marked as applied",
                                   file_path=preview.file_path)
        preview.status = ReviewStatus.FALLBACK_APPLIED

    def accepted(self) -> list[FileInPreview]:
        return [p for p in self.previews if p.status == ReviewStatus.ACCEPTED]

    @property
    def is_complete(self) -> bool:
        return all(p.status != ReviewStatus.PENDING for p in self.previews)

    def close(self) -> list[dict]:
        """Close the session and return the summaries kept in the response history."""
        self._check_open()
        self.closed = True
        return [p.to_summary() for p in self.previews]
