"""User profile returned by the Mirim authorization server."""

from dataclasses import dataclass
from typing import Any


def _as_str(value: Any) -> str | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    if isinstance(value, bool):
        return str(value).lower()
    return str(value)


def _as_int(value: Any) -> int | None:
    # bool is an int subclass but never a valid generation
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def _as_bool(value: Any) -> bool | None:
    return value if isinstance(value, bool) else None


@dataclass(frozen=True)
class UserProfile:
    """Profile of the signed-in user.

    Fields absent from the source data, or of the wrong shape, are
    normalized to None; id and email fall back to an empty string.
    """

    id: str
    email: str
    nickname: str | None = None
    major: str | None = None
    admission: str | None = None
    role: str | None = None
    generation: int | None = None
    is_graduated: bool | None = None

    @classmethod
    def from_response(cls, data: Any) -> "UserProfile":
        """Normalize a profile payload from the server.

        The server sends camelCase keys (``isGraduated``); snake_case is
        accepted as well.
        """
        if not isinstance(data, dict):
            data = {}

        graduated = data.get("isGraduated", data.get("is_graduated"))

        return cls(
            id=_as_str(data.get("id")) or "",
            email=_as_str(data.get("email")) or "",
            nickname=_as_str(data.get("nickname")),
            major=_as_str(data.get("major")),
            admission=_as_str(data.get("admission")),
            role=_as_str(data.get("role")),
            generation=_as_int(data.get("generation")),
            is_graduated=_as_bool(graduated),
        )

    @classmethod
    def from_persisted(cls, data: dict[str, Any]) -> "UserProfile":
        """Deserialize from the persisted record shape."""
        return cls.from_response(data)

    def to_persisted(self) -> dict[str, Any]:
        """Serialize to the persisted record shape, omitting unset fields."""
        record: dict[str, Any] = {"id": self.id, "email": self.email}
        optional = {
            "nickname": self.nickname,
            "major": self.major,
            "admission": self.admission,
            "role": self.role,
            "generation": self.generation,
            "is_graduated": self.is_graduated,
        }
        record.update({key: value for key, value in optional.items() if value is not None})
        return record
