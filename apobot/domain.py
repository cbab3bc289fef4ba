from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Literal

Operation = Literal["create", "update", "cancel", "delete"]
ResultStatus = Literal["success", "failed", "conflict"]
StaffPreferenceKind = Literal["any", "specific"]


@dataclass(frozen=True)
class Credentials:
    login_key: str
    login_password: str

    def __repr__(self) -> str:
        # Never leak the password into logs.
        return f"Credentials(login_key={self.login_key!r})"


class SessionState(str, enum.Enum):
    NOT_INITIALIZED = "not_initialized"
    STARTING = "starting"
    READY = "ready"
    BUSY = "busy"
    RECOVERING = "recovering"
    CLOSED = "closed"
    ERROR = "error"


@dataclass(frozen=True)
class ColumnRow:
    """A bookable staff/chair column of the schedule."""

    id: int
    name: str

    @classmethod
    def from_remote(cls, raw: dict[str, Any]) -> ColumnRow:
        return cls(id=int(raw["id"]), name=str(raw.get("name") or ""))


@dataclass(frozen=True)
class TimeRow:
    """One 15-minute cell of the operating day."""

    hour: str
    minute: str
    time_text: str  # HH:MM
    time_num: str  # HHMM
    is_break_time: bool = False
    is_night_break_time: bool = False

    @classmethod
    def from_remote(cls, raw: dict[str, Any]) -> TimeRow:
        hour = str(raw["hour"]).zfill(2)
        minute = str(raw["minute"]).zfill(2)
        return cls(
            hour=hour,
            minute=minute,
            time_text=str(raw.get("time_text") or f"{hour}:{minute}"),
            time_num=str(raw.get("time_num") or f"{hour}{minute}"),
            is_break_time=bool(raw.get("is_break_time")),
            is_night_break_time=bool(raw.get("is_night_break_time")),
        )


@dataclass(frozen=True)
class ReserveRow:
    """An existing booking on one column over [time_from_num, time_to_num)."""

    id: int
    column_no: int
    reservation_date: str
    time_from: str
    time_to: str
    time_from_num: str
    time_to_num: str
    patient_name: str = ""
    patient_number: str = ""
    patient_id: int | None = None
    cancel: int = 0
    memos: tuple[str, ...] = ()

    @property
    def is_active(self) -> bool:
        return self.cancel != 1

    @property
    def memo_text(self) -> str:
        return " ".join(self.memos)

    @classmethod
    def from_remote(cls, raw: dict[str, Any]) -> ReserveRow:
        time_from = str(raw.get("time_from") or "")
        time_to = str(raw.get("time_to") or "")
        memos = tuple(str(m.get("memo") or "") for m in (raw.get("memo") or []) if isinstance(m, dict))
        patient_id = raw.get("patient_id")
        return cls(
            id=int(raw["id"]),
            column_no=int(raw.get("column_no") or 0),
            reservation_date=str(raw.get("reservation_date") or ""),
            time_from=time_from,
            time_to=time_to,
            time_from_num=str(raw.get("time_from_num") or time_from.replace(":", "")),
            time_to_num=str(raw.get("time_to_num") or time_to.replace(":", "")),
            patient_name=str(raw.get("patient_name") or ""),
            patient_number=str(raw.get("patient_number") or ""),
            patient_id=int(patient_id) if patient_id is not None else None,
            cancel=int(raw.get("cancel") or 0),
            memos=memos,
        )


@dataclass(frozen=True)
class ReserveDay:
    """Snapshot of the schedule grid for the currently loaded day."""

    reserve_rows: tuple[ReserveRow, ...]
    column_rows: tuple[ColumnRow, ...]
    time_rows: tuple[TimeRow, ...]
    start_hour: int
    start_minute: int
    end_hour: int
    end_minute: int
    is_closed: bool = False

    @property
    def start_time_num(self) -> str:
        return f"{self.start_hour:02d}{self.start_minute:02d}"

    @property
    def end_time_num(self) -> str:
        return f"{self.end_hour:02d}{self.end_minute:02d}"

    @classmethod
    def from_remote(cls, raw: dict[str, Any]) -> ReserveDay:
        return cls(
            reserve_rows=tuple(ReserveRow.from_remote(r) for r in raw.get("reserve_rows") or []),
            column_rows=tuple(ColumnRow.from_remote(c) for c in raw.get("column_rows") or []),
            time_rows=tuple(TimeRow.from_remote(t) for t in raw.get("time_rows") or []),
            start_hour=int(raw.get("start_hour") or 0),
            start_minute=int(raw.get("start_minute") or 0),
            end_hour=int(raw.get("end_hour") or 0),
            end_minute=int(raw.get("end_minute") or 0),
            is_closed=bool(raw.get("is_closed")),
        )


@dataclass(frozen=True)
class TreatmentItem:
    """A menu definition: default duration and eligible columns."""

    id: int
    title: str
    treatment_time: int
    use_column: tuple[int, ...] = ()
    color: str = ""
    # use_column translated to column names
    resources: tuple[str, ...] = ()

    def to_menu_dict(self) -> dict[str, Any]:
        return {
            "external_menu_id": str(self.id) if self.id else None,
            "menu_name": self.title,
            "duration_min": self.treatment_time,
            "resources": list(self.resources),
            "resource_ids": list(self.use_column),
        }


@dataclass(frozen=True)
class MenuInfo:
    external_menu_id: str = ""
    menu_name: str = ""

    @property
    def is_empty(self) -> bool:
        return not self.external_menu_id and not self.menu_name


@dataclass(frozen=True, order=True)
class SlotInfo:
    date: str  # YYYY-MM-DD
    time: str  # HH:MM
    duration_min: int
    stock: int
    resource_name: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.date,
            "time": self.time,
            "duration_min": self.duration_min,
            "stock": self.stock,
            "resource_name": self.resource_name,
        }


@dataclass(frozen=True)
class ReservationSearchResult:
    appoint_id: str
    date: str
    time: str
    customer_name: str
    customer_phone: str
    staff_id: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "appointId": self.appoint_id,
            "date": self.date,
            "time": self.time,
            "customerName": self.customer_name,
            "customerPhone": self.customer_phone,
            "staffId": self.staff_id,
        }


@dataclass(frozen=True)
class DesiredSlot:
    date: str | None = None
    time: str | None = None

    @property
    def requested(self) -> bool:
        return bool(self.date or self.time)


@dataclass(frozen=True)
class SlotRequest:
    date: str
    start_at: str
    end_at: str | None = None
    duration_min: int | None = None
    desired: DesiredSlot | None = None


@dataclass(frozen=True)
class Customer:
    name: str
    phone: str
    customer_id: str | None = None


@dataclass(frozen=True)
class StaffPreference:
    staff_id: str | None = None
    preference: StaffPreferenceKind = "any"


@dataclass(frozen=True)
class ReservationRequest:
    reservation_id: str
    operation: Operation
    slot: SlotRequest
    customer: Customer
    menu: MenuInfo | None = None
    staff: StaffPreference | None = None


@dataclass(frozen=True)
class ReservationResultDetail:
    status: ResultStatus
    external_reservation_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class ReservationResult:
    reservation_id: str
    operation: Operation
    result: ReservationResultDetail

    @property
    def succeeded(self) -> bool:
        return self.result.status == "success"

    @classmethod
    def success(cls, request: ReservationRequest, external_id: str) -> ReservationResult:
        return cls(
            reservation_id=request.reservation_id,
            operation=request.operation,
            result=ReservationResultDetail(status="success", external_reservation_id=external_id),
        )

    @classmethod
    def failure(
        cls,
        request: ReservationRequest,
        message: str,
        *,
        code: str | None = None,
        status: ResultStatus = "failed",
    ) -> ReservationResult:
        return cls(
            reservation_id=request.reservation_id,
            operation=request.operation,
            result=ReservationResultDetail(status=status, error_code=code, error_message=message),
        )


class AuthError(RuntimeError):
    """The remote application rejected the login."""

    code = "AUTH_FAILED"


class SessionNotReadyError(RuntimeError):
    """No usable session: not created yet, or mid (re)initialisation."""


class LeaseTimeoutError(TimeoutError):
    """A leased page operation did not settle in time.

    The lease is released; the remote operation itself may still be running.
    """


class ComponentNotFoundError(RuntimeError):
    """A named UI component of the remote application is not mounted."""


class ScheduleConflictError(RuntimeError):
    """The remote application refused an update because of another booking."""
