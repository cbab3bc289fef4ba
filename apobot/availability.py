"""Slot computation over a day's schedule grid.

Everything here is pure: it works on :class:`ReserveDay` snapshots read from the
remote UI, so it can be tested without a browser.
"""

from __future__ import annotations

import datetime as dt
import math
from typing import Iterable, Sequence

from apobot.domain import ColumnRow, MenuInfo, ReserveDay, ReserveRow, SlotInfo, TimeRow, TreatmentItem

SLOT_MINUTES = 15
DEFAULT_DURATION_MIN = 45

# The emergency column ("急患") is kept free for walk-ins and never auto-assigned.
EMERGENCY_COLUMN_NAME = "急患"


def is_break_time(row: TimeRow) -> bool:
    return row.is_break_time or row.is_night_break_time


def time_row_minutes(row: TimeRow) -> int:
    return int(row.hour) * 60 + int(row.minute)


def to_time_num(time_text: str) -> str:
    """'9:30' / '09:30' -> '0930'."""
    hour, _, minute = time_text.strip().partition(":")
    return f"{int(hour):02d}{int(minute or 0):02d}"


def add_minutes(time_text: str, minutes: int) -> str:
    base = dt.datetime.strptime(time_text, "%H:%M")
    return (base + dt.timedelta(minutes=minutes)).strftime("%H:%M")


def minutes_between(time_from: str, time_to: str) -> int:
    start = dt.datetime.strptime(time_from, "%H:%M")
    end = dt.datetime.strptime(time_to, "%H:%M")
    return int((end - start).total_seconds() // 60)


def required_cells(duration_min: int) -> int:
    return max(1, math.ceil(duration_min / SLOT_MINUTES))


def operating_time_rows(day: ReserveDay) -> list[TimeRow]:
    start, end = day.start_time_num, day.end_time_num
    return [row for row in day.time_rows if start <= row.time_num < end]


def is_day_closed(day: ReserveDay) -> bool:
    return day.is_closed or not operating_time_rows(day)


def slots_consecutive(rows: Sequence[TimeRow], start_index: int, required: int) -> bool:
    """True when rows[start_index:start_index+required] exist, are not breaks and are 15 minutes apart."""
    if start_index < 0 or start_index + required > len(rows):
        return False

    for k in range(required):
        row = rows[start_index + k]
        if is_break_time(row):
            return False
        if k < required - 1:
            nxt = rows[start_index + k + 1]
            if time_row_minutes(nxt) - time_row_minutes(row) != SLOT_MINUTES:
                return False
    return True


def _overlaps(reservation: ReserveRow, column_id: int, time_num: str) -> bool:
    if reservation.column_no != column_id or not reservation.is_active:
        return False
    # Half-open: a booking ending at 10:00 does not block the 10:00 cell.
    return reservation.time_from_num <= time_num < reservation.time_to_num


def is_staff_available(
    column: ColumnRow,
    rows: Sequence[TimeRow],
    start_index: int,
    required: int,
    reserve_rows: Iterable[ReserveRow],
    *,
    ignore_reservation_id: int | None = None,
) -> bool:
    if not slots_consecutive(rows, start_index, required):
        return False

    reservations = [r for r in reserve_rows if r.id != ignore_reservation_id]
    for k in range(required):
        time_num = rows[start_index + k].time_num
        if any(_overlaps(r, column.id, time_num) for r in reservations):
            return False
    return True


def candidate_columns(
    day: ReserveDay,
    *,
    resources: Sequence[str] | None = None,
    allowed_column_ids: Iterable[int] | None = None,
) -> list[ColumnRow]:
    columns = [c for c in day.column_rows if c.name != EMERGENCY_COLUMN_NAME]
    if resources is not None:
        wanted = set(resources)
        columns = [c for c in columns if c.name in wanted]
    if allowed_column_ids is not None:
        allowed = set(allowed_column_ids)
        columns = [c for c in columns if c.id in allowed]
    return columns


def effective_resources(resources: Sequence[str] | None, item: TreatmentItem | None) -> list[str] | None:
    """Caller resources ∩ menu resources when both are given; otherwise whichever is given.

    None means "every column".
    """
    menu_resources = list(item.resources) if item and item.resources else None
    caller = list(resources) if resources else None

    if caller and menu_resources:
        allowed = set(menu_resources)
        return [r for r in caller if r in allowed]
    return caller or menu_resources


def effective_duration(duration: int | None, item: TreatmentItem | None) -> int:
    menu_duration = item.treatment_time if item and item.treatment_time else None
    if duration and menu_duration:
        return max(duration, menu_duration)
    return duration or menu_duration or DEFAULT_DURATION_MIN


def _cell_is_past(date_str: str, row: TimeRow, now: dt.datetime | None) -> bool:
    if now is None:
        return False
    cell = dt.datetime.strptime(f"{date_str} {row.time_text}", "%Y-%m-%d %H:%M")
    return cell <= now.replace(tzinfo=None)


def available_slots_for_date(
    date_str: str,
    day: ReserveDay,
    *,
    resources: Sequence[str] | None,
    duration_min: int,
    now: dt.datetime | None = None,
) -> list[SlotInfo]:
    """Slots of one day. ``now`` must already be clinic-local wall-clock time."""
    if is_day_closed(day):
        return []

    rows = operating_time_rows(day)
    columns = candidate_columns(day, resources=resources)
    required = required_cells(duration_min)

    slots: list[SlotInfo] = []
    for i, row in enumerate(rows):
        if is_break_time(row) or _cell_is_past(date_str, row, now):
            continue

        free = [c.name for c in columns if is_staff_available(c, rows, i, required, day.reserve_rows)]
        if free:
            slots.append(
                SlotInfo(
                    date=date_str,
                    time=row.time_text,
                    duration_min=duration_min,
                    stock=len(free),
                    resource_name=",".join(free),
                )
            )
    return slots


def find_available_column(
    day: ReserveDay,
    time_from: str,
    duration_min: int,
    *,
    allowed_column_ids: Iterable[int] | None = None,
    ignore_reservation_id: int | None = None,
) -> int | None:
    """First eligible column free for the whole duration starting at ``time_from``."""
    rows = operating_time_rows(day)
    target = to_time_num(time_from)
    start_index = next((i for i, row in enumerate(rows) if row.time_num == target), -1)
    if start_index == -1:
        return None

    required = required_cells(duration_min)
    for column in candidate_columns(day, allowed_column_ids=allowed_column_ids):
        if is_staff_available(
            column,
            rows,
            start_index,
            required,
            day.reserve_rows,
            ignore_reservation_id=ignore_reservation_id,
        ):
            return column.id
    return None


def find_treatment_item(items: Sequence[TreatmentItem], menu: MenuInfo | None) -> TreatmentItem | None:
    """Exact external id first, then a substring match of the menu name in item titles."""
    if menu is None or menu.is_empty:
        return None

    if menu.external_menu_id:
        wanted = str(menu.external_menu_id)
        for item in items:
            if str(item.id) == wanted:
                return item

    if menu.menu_name:
        for item in items:
            if menu.menu_name in item.title:
                return item
    return None
