"""Exception taxonomy shared by every stage of the apply pipeline."""


class ChatPatchError(Exception):
    """Base error. Context fields are optional and rendered into the message."""

    def __init__(self, message: str, file_path: str | None = None,
                 workspace_name: str | None = None, edit_format: str | None = None):
        super().__init__(message)
        self.message = message
        self.file_path = file_path
        self.workspace_name = workspace_name
        self.edit_format = edit_format

    def __str__(self) -> str:
        context = []
        if self.workspace_name:
            context.append(f"workspace={self.workspace_name}")
        if self.file_path:
            context.append(f"file={self.file_path}")
        if self.edit_format:
            context.append(f"format={self.edit_format}")
        if context:
            return f"{self.message} ({', '.join(context)})"
        return self.message


class ParseAmbiguous(ChatPatchError):
    """A block was found but its target path could not be determined."""


class PathUnresolvable(ChatPatchError):
    """No workspace root can own the path."""


class PatchApplyFailed(ChatPatchError):
    """Edit could not be placed in the current file content."""


class ReconcileFailed(ChatPatchError):
    """The truncated-content reconciler failed."""


class GitOperationFailed(ChatPatchError):
    def __init__(self, message: str, args: list[str] | None = None, returncode: int | None = None,
                 stderr: str = "", cwd: str | None = None):
        super().__init__(message)
        self.git_args = args or []
        self.returncode = returncode
        self.stderr = stderr
        self.cwd = cwd

    def __str__(self) -> str:
        msg = self.message
        if self.git_args:
            msg += f" [git {' '.join(self.git_args)}]"
        if self.returncode is not None:
            msg += f" (exit {self.returncode})"
        if self.stderr:
            msg += f": {self.stderr.strip()}"
        return msg


class CheckpointNotFound(ChatPatchError):
    pass


class ReviewStateError(ChatPatchError):
    pass


class CancelledError(ChatPatchError):
    """A newer operation for the same file superseded this one."""


class CheckpointBusy(ChatPatchError):
    """Another checkpoint operation on the same log is still running."""
