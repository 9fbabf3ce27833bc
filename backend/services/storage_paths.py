"""Storage path ownership.

Uploaded objects live under `uploads/users/{user_id}/`. A request may only
reference objects inside the caller's own namespace.
"""
from typing import Optional

USER_UPLOAD_PREFIX = "uploads/users/"


def user_namespace(user_id: str) -> str:
    return f"{USER_UPLOAD_PREFIX}{user_id}/"


def owns_path(user_id: Optional[str], path: Optional[str]) -> bool:
    """True if `path` is an object key inside the user's upload namespace."""
    if not user_id or not path or "/" in user_id:
        return False
    if "\\" in path or "\x00" in path:
        return False
    prefix = user_namespace(user_id)
    if not path.startswith(prefix):
        return False
    remainder = path[len(prefix):]
    if not remainder:
        return False
    return all(segment not in ("", ".", "..") for segment in remainder.split("/"))
