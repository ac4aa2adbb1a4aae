from typing import Any, Dict, Optional

from pydantic import BaseModel


class Viewer(BaseModel):
    """The signed-in user a synchronizer acts for."""

    id: str
    full_name: Optional[str] = None
    email: Optional[str] = None
    is_admin: bool = False

    @property
    def display_name(self) -> Optional[str]:
        return self.full_name or self.email

    @classmethod
    def from_user(cls, user: Dict[str, Any]) -> "Viewer":
        return cls(
            id=str(user["_id"]),
            full_name=user.get("full_name"),
            email=user.get("email"),
            is_admin=user.get("role") == "admin",
        )

