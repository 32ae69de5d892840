from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Optional


@dataclass
class BatchSummary:
    processed: int = 0
    sent: int = 0
    skipped: int = 0
    failed: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class SyncSummary:
    processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class ConfirmationResult:
    appointment_id: int
    title: str
    start_time: datetime
    already_confirmed: bool

    @property
    def message(self) -> str:
        if self.already_confirmed:
            return 'Attendance already confirmed. Thank you!'
        return 'Thank you for confirming your attendance! We look forward to meeting with you.'


@dataclass
class CancellationResult:
    appointment_id: int
    reason: Optional[str]
