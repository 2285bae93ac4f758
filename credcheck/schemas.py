from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum


class Outcome(StrEnum):
    VALID = "Valid"
    INVALID = "Invalid"
    LOCKED = "Locked"
    PASSWORD_EXPIRED = "Password Expired"
    IDENTIFIER_MISSING = "Pin Missing"
    SECRET_MISSING = "Password Missing"
    BOTH_MISSING = "Pin and Password Missing"
    ERROR = "Error"


@dataclass(frozen=True)
class CredentialData:
    id: int
    organization_name: str
    identifier: str | None
    secret: str | None
    last_status: str | None = None
    last_checked_at: datetime | None = None

    @property
    def has_identifier(self) -> bool:
        return bool((self.identifier or "").strip())

    @property
    def has_secret(self) -> bool:
        return bool((self.secret or "").strip())


@dataclass(frozen=True)
class RawPageState:
    url: str
    text: str
    has_post_login_marker: bool
    timed_out: bool = False


@dataclass(frozen=True)
class ExportRow:
    organization_name: str
    identifier: str | None
    secret: str | None
    outcome: Outcome


@dataclass(frozen=True)
class RunOptions:
    selected_ids: list[int] | None = None
    only_unchecked: bool = False
    trigger_source: str = "manual"


@dataclass(frozen=True)
class ProgressEntry:
    credential_id: int
    organization_name: str
    identifier: str | None
    outcome: Outcome
    timestamp: datetime


@dataclass(frozen=True)
class Progress:
    processed_count: int
    total_count: int
    is_running: bool
    current_record_id: int | None = None
    entries: tuple[ProgressEntry, ...] = ()


@dataclass(frozen=True)
class BatchResult:
    batch_run_id: int
    status: str
    total_records: int
    processed_records: int
    export_path: str | None
    outcomes: list[tuple[int, Outcome]] = field(default_factory=list)
