"""Tool-approval request and decision models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
import uuid


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PermissionPolicy(Enum):
    """Auto-response policy applied before a request reaches the user."""
    ASK = "ask"
    AUTO_ACCEPT_ONCE = "auto_accept_once"
    ALLOW_EVERYTHING = "allow_everything"

    @classmethod
    def parse(cls, value: str | PermissionPolicy | None) -> PermissionPolicy:
        if isinstance(value, PermissionPolicy):
            return value
        if not value:
            return cls.ASK
        normalized = value.strip().lower().replace("-", "_")
        aliases = {
            "auto_accept": cls.AUTO_ACCEPT_ONCE,
            "allow_all": cls.ALLOW_EVERYTHING,
        }
        if normalized in aliases:
            return aliases[normalized]
        return cls(normalized)


class OptionKind(Enum):
    ALLOW_ONCE = "allow_once"
    ALLOW_ALWAYS = "allow_always"
    REJECT_ONCE = "reject_once"
    REJECT_ALWAYS = "reject_always"


class DecisionOrigin(Enum):
    USER = "user"
    POLICY = "policy"
    SESSION_RULE = "session_rule"
    FORCED = "forced"


@dataclass
class PermissionOption:
    option_id: str
    kind: OptionKind
    name: str = ""

    @property
    def allows(self) -> bool:
        return self.kind in (OptionKind.ALLOW_ONCE, OptionKind.ALLOW_ALWAYS)


@dataclass
class PermissionRequest:
    """One outstanding tool-approval ask surfaced by an engine adapter."""
    session_id: str
    tool_name: str
    tool_input: dict[str, Any] = field(default_factory=dict)
    tool_use_id: str = ""
    options: list[PermissionOption] = field(default_factory=list)
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=_utcnow)

    def find_option(self, kind: OptionKind) -> PermissionOption | None:
        for option in self.options:
            if option.kind == kind:
                return option
        return None

    def option_by_id(self, option_id: str) -> PermissionOption | None:
        for option in self.options:
            if option.option_id == option_id:
                return option
        return None


@dataclass
class PermissionDecision:
    behavior: str  # "allow" or "deny"
    option_id: str | None = None
    message: str | None = None
    for_session: bool = False
    updated_input: dict[str, Any] | None = None
    origin: DecisionOrigin = DecisionOrigin.USER

    @property
    def allowed(self) -> bool:
        return self.behavior == "allow"

    @classmethod
    def deny(
        cls,
        message: str = "Denied by user",
        origin: DecisionOrigin = DecisionOrigin.USER,
        option_id: str | None = None,
    ) -> PermissionDecision:
        return cls(
            behavior="deny", message=message, origin=origin, option_id=option_id,
        )
