from hivectl.workspaces.base import WorkspaceBackend
from hivectl.workspaces.git import GitWorktreeBackend

__all__ = ["GitWorktreeBackend", "WorkspaceBackend"]
