"""allowsync hook collaborator: runs after_update_hook after a change."""
from allowsync.hook.runner import run_hook

__all__ = ["run_hook"]
