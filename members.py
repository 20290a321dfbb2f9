import random
from dataclasses import dataclass, asdict, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

MEMBER_ID_MIN = 100000
MEMBER_ID_MAX = 999999


class ErrorKind(str, Enum):
    VALIDATION = "VALIDATION"
    NOT_FOUND = "NOT_FOUND"
    AUTHORIZATION = "AUTHORIZATION"
    RENDER = "RENDER"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"
    ID_SPACE_EXHAUSTED = "ID_SPACE_EXHAUSTED"
    INTERNAL = "INTERNAL"


class MembershipError(Exception):
    kind = ErrorKind.INTERNAL


class ValidationError(MembershipError):
    kind = ErrorKind.VALIDATION


class AuthorizationError(MembershipError):
    kind = ErrorKind.AUTHORIZATION


class RenderError(MembershipError):
    kind = ErrorKind.RENDER


class StoreUnavailableError(MembershipError):
    kind = ErrorKind.STORE_UNAVAILABLE


class IdSpaceExhaustedError(MembershipError):
    kind = ErrorKind.ID_SPACE_EXHAUSTED


class DuplicateOwnerError(MembershipError):
    kind = ErrorKind.VALIDATION


class MemberStatus(str, Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    REVOKED = "REVOKED"

    @classmethod
    def parse(cls, value: Any) -> "MemberStatus":
        """Case-insensitive lookup; raises ValidationError for unknown values."""
        if isinstance(value, cls):
            return value
        text = "" if value is None else str(value).strip().upper()
        try:
            return cls(text)
        except ValueError:
            allowed = " / ".join(s.value for s in cls)
            raise ValidationError(f"Status must be one of {allowed}, got {value!r}.") from None


def generate_member_id() -> str:
    return str(random.randint(MEMBER_ID_MIN, MEMBER_ID_MAX))


def format_issued_on(moment: datetime) -> str:
    return moment.strftime("%Y-%m-%d")


def make_internal_id(moment: datetime, prefix: str = "UOI") -> str:
    return f"{prefix}-{int(moment.timestamp() * 1000)}"


def require_text(value: Any, field: str) -> str:
    text = "" if value is None else str(value).strip()
    if not text:
        raise ValidationError(f"{field} must not be empty.")
    return text


@dataclass(frozen=True)
class MembershipRecord:
    id: str
    name: str
    role: str
    status: MemberStatus
    issued_on: str
    internal_id: str
    owner_ref: Optional[str] = None

    def with_changes(self, **changes) -> "MembershipRecord":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MembershipRecord":
        owner_ref = data.get("owner_ref")
        return cls(
            id=str(data["id"]),
            name=data["name"],
            role=data["role"],
            status=MemberStatus.parse(data["status"]),
            issued_on=data["issued_on"],
            internal_id=data["internal_id"],
            owner_ref=str(owner_ref) if owner_ref is not None else None,
        )
