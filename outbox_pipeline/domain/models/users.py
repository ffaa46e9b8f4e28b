from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class UserPreferences:
    email_notifications: bool = True
    push_notifications: bool = False


@dataclass(frozen=True)
class User:
    id: str
    username: str
    email: str
    preferences: UserPreferences = field(default_factory=UserPreferences)
    created_at: Optional[datetime] = None


USER_FIELDS = ("username", "email")
PREFERENCE_FIELDS = ("email_notifications", "push_notifications")


def flatten_changes(changes: Dict[str, Any]) -> Dict[str, Any]:
    """Turn an update request into column-level changes, accepting nested ``preferences``."""
    flat: Dict[str, Any] = {}
    for key, value in changes.items():
        if key == "preferences":
            for pref, enabled in (value or {}).items():
                if pref not in PREFERENCE_FIELDS:
                    raise ValueError(f"unknown preference: {pref}")
                flat[pref] = bool(enabled)
        elif key in USER_FIELDS or key in PREFERENCE_FIELDS:
            flat[key] = value
        else:
            raise ValueError(f"unknown user field: {key}")
    return flat
