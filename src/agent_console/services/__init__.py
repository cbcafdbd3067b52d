"""Supporting services."""

from .workspace import LocalWorkspaceFiles, WorkspaceEntry, WorkspaceError, WorkspaceFiles

__all__ = ["LocalWorkspaceFiles", "WorkspaceEntry", "WorkspaceError", "WorkspaceFiles"]
