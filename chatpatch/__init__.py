"""Facade for chatpatch: ingest chat responses, apply their file edits, undo them."""

from .errors import (
    ChatPatchError, ParseAmbiguous, PathUnresolvable, PatchApplyFailed, ReconcileFailed,
    GitOperationFailed, CheckpointNotFound, CheckpointBusy, ReviewStateError, CancelledError
)

from .models import (
    EditFormat, WholePayload, TruncatedPayload, DiffPayload, BeforeAfterPayload, SearchReplaceBlock,
    ParsedEdit, RelevantFilesItem, TextSegment, RelevantSegment, EditSegment, WorkspaceRoot,
    ReviewStatus, FileInPreview, Checkpoint
)

from .cleaner import clean
from .parsing import parse
from .pipeline import parse_response, split_segments
from .paths import resolve, resolve_edit, resolve_context_paths, expand_context_paths
from .diffing import DiffStats, diff_stats, apply_patch, apply_search_replace
from .reconcile import merge_truncated
from .review import ReviewSession

from .patching import (
    OperationHandle, OperationRegistry, operation_registry, ApplyResult,
    prepare_previews, write_previews
)

from .checkpoints import CheckpointManager, get_incremented_description
