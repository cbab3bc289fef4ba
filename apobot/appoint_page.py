"""Appointment ledger page: slot scan, reservation search and the booking state machine.

All remote work goes through :class:`RemotePage`; the UI components are
addressed by name (ReserveDay, SideMain, ReserveAdd, ...).
"""

from __future__ import annotations

import datetime as dt
import logging
import re
from typing import Any, Sequence

from selenium.common.exceptions import TimeoutException, WebDriverException
from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt

from apobot import availability
from apobot.domain import (
    ComponentNotFoundError,
    MenuInfo,
    ReservationRequest,
    ReservationResult,
    ReservationSearchResult,
    ReserveDay,
    ReserveRow,
    ScheduleConflictError,
    SlotInfo,
    TreatmentItem,
)
from apobot.envelope import Envelope
from apobot.selenium_provider import RemotePage

logger = logging.getLogger(__name__)

RESERVE_DAY = "ReserveDay"
SIDE_MAIN = "SideMain"
RESERVE_ADD = "ReserveAdd"
RESERVE_EDIT = "ReserveEdit"
CANCEL_ADD = "CancelAdd"
PATIENT_LIST = "PatientList"

NOTE_MARKER = "【SmartCall予約】"

# CancelAdd.form.circumstance_type
CIRCUMSTANCE_CANCEL = 1  # history retained
CIRCUMSTANCE_DELETE = 99  # history removed
# CancelAdd.form.cancel_type
CANCEL_TYPE_TEL = 1

NO_AVAILABLE_STAFF = "NO_AVAILABLE_STAFF"
NO_COMPATIBLE_STAFF = "NO_COMPATIBLE_STAFF"
RESERVATION_NOT_FOUND = "RESERVATION_NOT_FOUND"
PATIENT_NOT_FOUND = "PATIENT_NOT_FOUND"
REMOTE_REJECTED = "REMOTE_REJECTED"
SCHEDULE_CONFLICT = "SCHEDULE_CONFLICT"

_SUBMIT_BUTTON = ".alert-wrapper .contentfooter button.btn-primary"
_DIALOG_TITLE = ".alert-wrapper .alert h2"

_CONFLICT_RX = re.compile(r"重複|既に予約|他の予約|予約が入って|double[- ]?book|conflict|overlap", re.IGNORECASE)


def is_schedule_conflict(message: str | None) -> bool:
    """Whether a remote rejection means another booking already holds the slot."""
    return bool(message) and bool(_CONFLICT_RX.search(message))


def phone_tag(phone: str) -> str:
    return f"tel:[{phone}]"


def build_note(menu_name: str | None, phone: str | None) -> str:
    return f"{NOTE_MARKER} 症状:[{menu_name or ''}]、{phone_tag(phone or '')}"


def _date_range(date_from: str, date_to: str) -> list[str]:
    start = dt.date.fromisoformat(date_from)
    end = dt.date.fromisoformat(date_to)
    days = (end - start).days
    return [(start + dt.timedelta(days=i)).isoformat() for i in range(days + 1)]


def _same_time(a: str, b: str) -> bool:
    try:
        return availability.to_time_num(a) == availability.to_time_num(b)
    except ValueError:
        return a == b


def _normalize_name(name: str) -> str:
    return re.sub(r"\s+", "", name or "")


def _log_conflict_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "Update attempt %s hit a schedule conflict (%s); retrying with another column",
        retry_state.attempt_number,
        exc,
    )


class AppointPage:
    def __init__(self, page: RemotePage):
        self.page = page
        self._treatment_items: list[TreatmentItem] | None = None

    # -- navigation -----------------------------------------------------

    def wait_for_loading(self) -> None:
        self.page.wait_for_selector("#loading", hidden=True)

    def navigate(self, base_url: str) -> None:
        self.page.goto(f"{base_url}/")
        self.page.wait_for_selector("#col-main > div")
        self.page.wait_for_selector("#col-side > div")
        self.wait_for_loading()

    def select_date(self, date_str: str) -> None:
        """Load one day into the ledger through the side calendar."""
        self.wait_for_loading()
        with self.page.expect_response("GET", r"/reservations\?") as response:
            self.page.call_component(SIDE_MAIN, "vm.clickDay({id: args[0]});", date_str)
            response.value()
        self.wait_for_loading()

    def reset(self) -> None:
        """Reload so no dialog is left open for the next request."""
        self.page.reload()
        self.wait_for_loading()

    def _reset_after_error(self) -> None:
        try:
            self.reset()
        except WebDriverException:
            logger.warning("Failed to reset the ledger page after an error", exc_info=True)

    # -- reads ----------------------------------------------------------

    def get_reserve_day(self) -> ReserveDay | None:
        try:
            raw = self.page.call_component(
                RESERVE_DAY,
                "return JSON.parse(JSON.stringify({"
                "  reserve_rows: vm.reserve_rows, column_rows: vm.column_rows, time_rows: vm.time_rows,"
                "  start_hour: vm.start_hour, start_minute: vm.start_minute,"
                "  end_hour: vm.end_hour, end_minute: vm.end_minute,"
                "  is_closed: !!(vm.is_holiday || vm.is_closed)"
                "}));",
            )
        except ComponentNotFoundError:
            return None
        return ReserveDay.from_remote(raw) if isinstance(raw, dict) else None

    def _api_get(self, url: str, params: dict[str, Any]) -> Envelope:
        raw = self.page.call_component_async(
            RESERVE_DAY,
            "const res = await vm.get(args[0], args[1] || {});"
            "return res ? JSON.parse(JSON.stringify(res.data)) : null;",
            url,
            params,
        )
        return Envelope.from_json(raw)

    def _day_reservations(self, date_str: str) -> list[ReserveRow]:
        envelope = self._api_get("/reservations", {"from": date_str, "days": 1})
        if not envelope.result or not isinstance(envelope.data, dict):
            return []
        return [ReserveRow.from_remote(r) for r in envelope.data.get("reservations") or []]

    def get_treatment_items(self) -> list[TreatmentItem]:
        if self._treatment_items is not None:
            return self._treatment_items

        raw = self.page.call_component_async(
            RESERVE_DAY,
            "const res = await vm.get(vm.$store.state.api.get_treatment_items, {});"
            "return {api: res ? JSON.parse(JSON.stringify(res.data)) : null,"
            "        columns: JSON.parse(JSON.stringify(vm.column_rows || []))};",
        )
        envelope = Envelope.from_json((raw or {}).get("api"))
        if not envelope.result or not isinstance(envelope.data, dict):
            return []

        names = {int(c["id"]): str(c.get("name") or "") for c in (raw or {}).get("columns") or []}
        items: list[TreatmentItem] = []
        for item in envelope.data.get("treatment_items") or []:
            use_column = tuple(int(c) for c in item.get("use_column") or [])
            items.append(
                TreatmentItem(
                    id=int(item.get("id") or 0),
                    title=str(item.get("title") or ""),
                    treatment_time=int(item.get("treatment_time") or 0),
                    use_column=use_column,
                    color=str(item.get("color") or ""),
                    resources=tuple(names[c] for c in use_column if c in names),
                )
            )
        self._treatment_items = items
        return items

    def find_treatment_item(self, menu: MenuInfo | None) -> TreatmentItem | None:
        if menu is None or menu.is_empty:
            return None
        return availability.find_treatment_item(self.get_treatment_items(), menu)

    def get_available_slots(
        self,
        *,
        date_from: str,
        date_to: str,
        resources: Sequence[str] | None = None,
        duration: int | None = None,
        menu: MenuInfo | None = None,
        now: dt.datetime | None = None,
    ) -> list[SlotInfo]:
        item = self.find_treatment_item(menu)
        resources_eff = availability.effective_resources(resources, item)
        duration_eff = availability.effective_duration(duration, item)

        slots: list[SlotInfo] = []
        for date_str in _date_range(date_from, date_to):
            self.select_date(date_str)
            day = self.get_reserve_day()
            if day is None:
                logger.warning("No schedule grid for %s", date_str)
                continue
            slots.extend(
                availability.available_slots_for_date(
                    date_str, day, resources=resources_eff, duration_min=duration_eff, now=now
                )
            )
        return slots

    # -- search ---------------------------------------------------------

    def _search_patients(self, phone: str) -> list[dict[str, Any]]:
        self.wait_for_loading()
        with self.page.expect_response("GET", r"/patients\?") as response:
            self.page.call_component(SIDE_MAIN, "vm.s_q = args[0]; vm.clickSearch();", phone)
            envelope = response.value().envelope()

        if not envelope.result or not isinstance(envelope.data, dict):
            return []
        patients = envelope.data.get("patients") or []
        return [p for p in patients if phone in (p.get("tel1"), p.get("tel2"))]

    def _close_patient_list(self) -> None:
        try:
            self.page.call_component(PATIENT_LIST, "vm.clickClose();")
        except ComponentNotFoundError:
            pass

    def search_reservations_by_phone(self, date_from: str, date_to: str, phone: str) -> list[ReservationSearchResult]:
        """Patient search by phone first; the note convention is the fallback."""
        patients = self._search_patients(phone)
        self._close_patient_list()
        if not patients:
            return self._search_reservations_by_note(date_from, date_to, phone)

        results: list[ReservationSearchResult] = []
        for patient in patients:
            patient_id = int(patient["id"])
            detail = self._api_get(f"/patients/{patient_id}", {"id": patient_id, "original": True})
            if not detail.result or not isinstance(detail.data, dict):
                continue

            for history in detail.data.get("reservation_histories") or []:
                if not (date_from <= str(history.get("reservation_date") or "") <= date_to):
                    continue
                reservation_id = int(history["id"])
                reservation = self._api_get(f"/reservations/{reservation_id}", {"id": reservation_id, "original": True})
                data = reservation.data if isinstance(reservation.data, dict) else None
                if not reservation.result or data is None or data.get("cancel"):
                    continue

                results.append(
                    ReservationSearchResult(
                        appoint_id=str(data.get("id")),
                        date=str(data.get("reservation_date") or ""),
                        time=str(data.get("time_from") or ""),
                        customer_name=str(detail.data.get("name_kana") or data.get("patient_name") or ""),
                        customer_phone=str((data.get("patient") or {}).get("tel1") or phone),
                        staff_id=str(data.get("column_no")),
                    )
                )
        return results

    def _search_reservations_by_note(self, date_from: str, date_to: str, phone: str) -> list[ReservationSearchResult]:
        tag = phone_tag(phone)
        results: list[ReservationSearchResult] = []
        for date_str in _date_range(date_from, date_to):
            for row in self._day_reservations(date_str):
                if row.is_active and tag in row.memo_text:
                    results.append(
                        ReservationSearchResult(
                            appoint_id=str(row.id),
                            date=row.reservation_date or date_str,
                            time=row.time_from,
                            customer_name=row.patient_name,
                            customer_phone=phone,
                            staff_id=str(row.column_no),
                        )
                    )

        if results:
            # Leave the ledger showing the latest hit.
            self.select_date(max(r.date for r in results))
        return results

    def find_reservation_by_phone_and_time(self, date_str: str, time_from: str, phone: str) -> ReserveRow | None:
        tag = phone_tag(phone)
        for row in self._day_reservations(date_str):
            if not row.is_active:
                continue
            if time_from and not _same_time(row.time_from, time_from):
                continue
            if tag in row.memo_text:
                return row
        return None

    def _lookup_patient_number(self, name: str, phone: str) -> str | None:
        if not phone:
            return None
        try:
            patients = self._search_patients(phone)
        except TimeoutException:
            logger.warning("Patient lookup by phone timed out; booking as a new patient")
            return None
        finally:
            self._close_patient_list()

        wanted = _normalize_name(name)
        for patient in patients:
            if wanted and wanted in (_normalize_name(patient.get("name", "")), _normalize_name(patient.get("name_kana", ""))):
                number = patient.get("patient_number")
                if number:
                    return str(number)
        return None

    # -- create ---------------------------------------------------------

    def _close_add_dialog(self) -> None:
        if self.page.click("#alert_common_wrapper .alert_common_label_close"):
            try:
                self.page.wait_for_selector("#alert_common_wrapper", hidden=True, timeout=5)
            except TimeoutException:
                pass
        try:
            self.page.call_component(RESERVE_ADD, "vm.clickClose();")
        except ComponentNotFoundError:
            pass

    def create_reservation(
        self,
        *,
        date: str,
        time_from: str,
        time_to: str,
        column_no: int,
        customer_name: str,
        customer_phone: str | None,
        patient_number: str | None = None,
        item: TreatmentItem | None = None,
        menu_name: str | None = None,
    ) -> tuple[str | None, str | None, str | None]:
        """Submit the ReserveAdd dialog.

        Returns (reservation_id, error_message, error_code); exactly one of id/message is set.
        """
        self.page.call_component(
            RESERVE_DAY,
            "vm.$store.commit('openReserveAdd', args[0]);",
            {"column_no": column_no, "reservation_date": date, "time_from": time_from, "time_to": time_to},
        )
        self.page.wait_for_selector(_DIALOG_TITLE)
        self.page.call_component(
            RESERVE_DAY,
            "if (vm.candidate && vm.candidate.is_active) { vm.$store.commit('resetCandidate'); }",
        )

        if patient_number:
            with self.page.expect_response("GET", r"/patients/number/") as response:
                self.page.call_component(
                    RESERVE_ADD, "vm.form.patient_number = args[0]; vm.getPatient();", patient_number
                )
                patient = response.value().envelope()
            if not patient.result:
                self._close_add_dialog()
                return None, f"Patient '{patient_number}' not found", PATIENT_NOT_FOUND

        note = build_note(item.title if item else menu_name, customer_phone) if (customer_phone or menu_name) else None
        self.page.call_component(
            RESERVE_ADD,
            "vm.form.patient_name = args[0];"
            "if (args[1]) { vm.form.color = args[1]; }"
            "if (args[2]) {"
            "  vm.addMemo();"
            "  if (vm.form.memo.length > 0) { vm.form.memo[vm.form.memo.length - 1].memo = args[2]; }"
            "}",
            customer_name,
            item.color if item else None,
            note,
        )

        with self.page.expect_response("POST", r"/reservations/?(\?.*)?$") as post, self.page.expect_response(
            "GET", r"/reservations\?"
        ) as listing:
            if not self.page.click(_SUBMIT_BUTTON):
                self._reset_after_error()
                return None, "Create button not found", None
            created = post.value().envelope()

            if not created.ok:
                message = created.error_text("Failed to create reservation")
                logger.error("Create rejected: %s", message)
                self._reset_after_error()
                return None, message, REMOTE_REJECTED

            day_list = listing.value().envelope()

        if not day_list.result or not isinstance(day_list.data, dict):
            return None, "Failed to reload the reservation list", None

        for raw in day_list.data.get("reservations") or []:
            row = ReserveRow.from_remote(raw)
            if not (_same_time(row.time_from, time_from) and _same_time(row.time_to, time_to)):
                continue
            if patient_number:
                if row.patient_number == patient_number:
                    self.wait_for_loading()
                    return str(row.id), None, None
            elif row.patient_name == customer_name:
                self.wait_for_loading()
                return str(row.id), None, None

        logger.error("Created reservation not found: %s %s-%s", customer_name, time_from, time_to)
        return None, "Created reservation not found", None

    def _process_create(self, request: ReservationRequest) -> ReservationResult:
        slot = request.slot
        self.select_date(slot.date)
        item = self.find_treatment_item(request.menu)

        if slot.end_at:
            duration = availability.minutes_between(slot.start_at, slot.end_at)
        else:
            duration = availability.effective_duration(slot.duration_min, item)
        time_to = slot.end_at or availability.add_minutes(slot.start_at, duration)

        staff = request.staff
        if staff and staff.preference == "specific" and staff.staff_id:
            column_no = int(staff.staff_id)
        else:
            day = self.get_reserve_day()
            allowed = item.use_column if item and item.use_column else None
            found = (
                availability.find_available_column(day, slot.start_at, duration, allowed_column_ids=allowed)
                if day
                else None
            )
            if found is None:
                return ReservationResult.failure(
                    request,
                    f"No staff available at {slot.date} {slot.start_at}",
                    code=NO_AVAILABLE_STAFF,
                    status="conflict",
                )
            column_no = found

        patient_number = request.customer.customer_id or self._lookup_patient_number(
            request.customer.name, request.customer.phone
        )

        reservation_id, error, code = self.create_reservation(
            date=slot.date,
            time_from=slot.start_at,
            time_to=time_to,
            column_no=column_no,
            customer_name=request.customer.name,
            customer_phone=request.customer.phone,
            patient_number=patient_number,
            item=item,
            menu_name=request.menu.menu_name if request.menu else None,
        )
        if reservation_id is None:
            return ReservationResult.failure(request, error or "Failed to create reservation", code=code)
        return ReservationResult.success(request, reservation_id)

    # -- update / cancel ------------------------------------------------

    def _open_edit_dialog(self, reservation_id: int) -> None:
        self.page.call_component(RESERVE_DAY, "vm.openReserveEdit(args[0]);", reservation_id)
        self.page.wait_for_selector(_DIALOG_TITLE)
        self.wait_for_loading()

    def _submit_update(self, reservation: ReserveRow, changes: dict[str, Any]) -> str | None:
        """Apply ``changes`` to the edit form and submit.

        Returns an error message, or None on success. Raises ScheduleConflictError
        when the remote side reports a double booking.
        """
        self._open_edit_dialog(reservation.id)
        self.page.call_component_async(
            RESERVE_EDIT,
            "for (let i = 0; i < 1000 && !vm.is_loaded; i++) {"
            "  await new Promise(function (r) { setTimeout(r, 10); });"
            "}"
            "const p = args[0];"
            "if (p.note) {"
            "  const memo = (vm.form.memo || []).find(function (m) { return (m.memo || '').includes(p.marker); });"
            "  if (memo) { memo.memo = p.note; } else { vm.form.memo.push({id: 1, memo: p.note}); }"
            "}"
            "if (p.color) { vm.form.color = p.color; }"
            "if (p.column_no) { vm.form.column_no = p.column_no; }"
            "if (p.reservation_date) { vm.form.reservation_date = p.reservation_date; }"
            "if (p.time_from) { vm.form.time_from = p.time_from; }"
            "if (p.time_to) { vm.form.time_to = p.time_to; }"
            "return true;",
            {"marker": NOTE_MARKER, **changes},
        )

        with self.page.expect_response("POST", r"/reservations/\d+$") as response:
            if not self.page.click(_SUBMIT_BUTTON):
                self._reset_after_error()
                return "Update button not found"
            envelope = response.value().envelope()

        if envelope.ok:
            self.wait_for_loading()
            return None

        message = envelope.error_text("Failed to update reservation")
        logger.error("Update rejected: %s", message)
        self._reset_after_error()
        if is_schedule_conflict(message):
            raise ScheduleConflictError(message)
        return message

    def _fallback_column(self, target_date: str, target_time: str, duration: int, reservation: ReserveRow) -> int | None:
        # Any free column; menu eligibility is not re-checked here.
        self.select_date(target_date)
        day = self.get_reserve_day()
        if day is None:
            return None
        return availability.find_available_column(
            day, target_time, duration, ignore_reservation_id=reservation.id
        )

    def update_reservation(self, request: ReservationRequest) -> ReservationResult:
        slot, phone = request.slot, request.customer.phone
        self.select_date(slot.date)
        item = self.find_treatment_item(request.menu)

        reservation = self.find_reservation_by_phone_and_time(slot.date, slot.start_at, phone)
        if reservation is None:
            return ReservationResult.failure(
                request, f"Reservation not found: {slot.date} {slot.start_at} {phone}", code=RESERVATION_NOT_FOUND
            )

        desired = slot.desired
        target_date = (desired.date if desired else None) or slot.date
        target_time = (desired.time if desired else None) or slot.start_at
        moving = target_date != slot.date or not _same_time(target_time, slot.start_at)

        # Moving only the start keeps the booked length; a new menu imposes its own.
        duration = (
            item.treatment_time
            if item and item.treatment_time
            else availability.minutes_between(reservation.time_from, reservation.time_to)
        )
        column_no = reservation.column_no

        if item and item.use_column and column_no not in item.use_column:
            if target_date != slot.date:
                self.select_date(target_date)
            day = self.get_reserve_day()
            alternate = (
                availability.find_available_column(
                    day, target_time, duration, allowed_column_ids=item.use_column, ignore_reservation_id=reservation.id
                )
                if day
                else None
            )
            if alternate is None:
                return ReservationResult.failure(
                    request,
                    f"No compatible staff available for '{item.title}' at {target_date} {target_time}",
                    code=NO_COMPATIBLE_STAFF,
                )
            logger.info("Reassigning reservation %s: column %s -> %s", reservation.id, column_no, alternate)
            column_no = alternate
            if target_date != slot.date:
                self.select_date(slot.date)

        changes: dict[str, Any] = {
            "note": build_note(item.title, phone) if item else None,
            "color": item.color if item else None,
            "column_no": column_no,
            "time_to": None,
        }
        if moving or item:
            changes["reservation_date"] = target_date
            changes["time_from"] = target_time
            changes["time_to"] = availability.add_minutes(target_time, duration)

        retrying = Retrying(
            stop=stop_after_attempt(2 if moving else 1),
            retry=retry_if_exception_type(ScheduleConflictError),
            before_sleep=_log_conflict_retry,
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        fallback = self._fallback_column(target_date, target_time, duration, reservation)
                        if fallback is None:
                            raise ScheduleConflictError(f"No free column at {target_date} {target_time}")
                        changes["column_no"] = fallback
                        self.select_date(slot.date)
                    error = self._submit_update(reservation, changes)
        except ScheduleConflictError as e:
            return ReservationResult.failure(request, str(e), code=SCHEDULE_CONFLICT, status="conflict")

        if error:
            return ReservationResult.failure(request, error, code=REMOTE_REJECTED)
        return ReservationResult.success(request, str(reservation.id))

    def _process_cancel(self, request: ReservationRequest, circumstance_type: int) -> ReservationResult:
        slot, phone = request.slot, request.customer.phone
        operation_name = "delete" if circumstance_type == CIRCUMSTANCE_DELETE else "cancel"

        self.select_date(slot.date)
        reservation = self.find_reservation_by_phone_and_time(slot.date, slot.start_at, phone)
        if reservation is None:
            return ReservationResult.failure(
                request, f"Reservation not found: {slot.date} {slot.start_at} {phone}", code=RESERVATION_NOT_FOUND
            )

        self._open_edit_dialog(reservation.id)
        self.page.call_component(RESERVE_EDIT, "vm.clickReserveCancel();")
        self.page.wait_for_selector(".alert-wrapper .alert-dlList")

        with self.page.expect_response("POST", r"/reservations/\d+/cancel$") as response:
            error = self.page.call_component(
                CANCEL_ADD,
                "vm.form.circumstance_type = args[0];"
                "if (args[1] !== null) { vm.form.cancel_type = args[1]; }"
                "const button = vm.$el.querySelector('.btn-primary');"
                "if (!button) { return 'Submit button not found'; }"
                "button.click();"
                "return null;",
                circumstance_type,
                None if circumstance_type == CIRCUMSTANCE_DELETE else CANCEL_TYPE_TEL,
            )
            if error:
                self._reset_after_error()
                return ReservationResult.failure(request, str(error))
            envelope = response.value().envelope()

        if not envelope.result:
            message = envelope.error_text(f"Failed to {operation_name} reservation")
            logger.error("%s rejected: %s", operation_name.capitalize(), message)
            self._reset_after_error()
            return ReservationResult.failure(request, message, code=REMOTE_REJECTED)

        self.wait_for_loading()
        return ReservationResult.success(request, str(reservation.id))

    def cancel_reservation(self, request: ReservationRequest) -> ReservationResult:
        return self._process_cancel(request, CIRCUMSTANCE_CANCEL)

    def delete_reservation(self, request: ReservationRequest) -> ReservationResult:
        return self._process_cancel(request, CIRCUMSTANCE_DELETE)

    # -- batch ----------------------------------------------------------

    def process_reservation(self, request: ReservationRequest) -> ReservationResult:
        try:
            if request.operation == "create":
                return self._process_create(request)
            if request.operation == "update":
                return self.update_reservation(request)
            if request.operation == "cancel":
                return self.cancel_reservation(request)
            if request.operation == "delete":
                return self.delete_reservation(request)
        except WebDriverException:
            self._reset_after_error()
            raise
        raise ValueError(f"Unknown operation: {request.operation!r}")

    def process_reservations(self, requests: Sequence[ReservationRequest]) -> list[ReservationResult]:
        """Run requests one after another on this page."""
        results = [self.process_reservation(r) for r in requests]
        self.wait_for_loading()
        return results
