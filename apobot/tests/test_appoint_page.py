from __future__ import annotations

import contextlib
import datetime as dt
import json
import re

import pytest
from selenium.common.exceptions import TimeoutException

from apobot.appoint_page import (
    CANCEL_ADD,
    CIRCUMSTANCE_CANCEL,
    NOTE_MARKER,
    PATIENT_LIST,
    RESERVE_ADD,
    RESERVE_DAY,
    RESERVE_EDIT,
    SIDE_MAIN,
    AppointPage,
    build_note,
    is_schedule_conflict,
)
from apobot.domain import (
    Customer,
    DesiredSlot,
    MenuInfo,
    ReservationRequest,
    SlotRequest,
    StaffPreference,
)
from apobot.selenium_provider import CapturedResponse

DAY = "2030-01-15"
PHONE = "09011112222"
OTHER_PHONE = "09033334444"

_SUBMIT = ".alert-wrapper .contentfooter button.btn-primary"


class _Waiter:
    def __init__(self, page: "FakeLedgerPage", method: str, pattern: str, start: int):
        self.page = page
        self.method = method
        self.pattern = re.compile(pattern)
        self.start = start

    def value(self) -> CapturedResponse:
        for response in self.page.responses[self.start:]:
            if response.method == self.method and self.pattern.search(response.url):
                return response
        raise TimeoutException(f"no {self.method} {self.pattern.pattern}")


class FakeLedgerPage:
    """In-memory stand-in for the scheduling app, driven through the RemotePage contract.

    Component scripts are recognised by the component name plus a marker in the script body.
    """

    def __init__(self):
        self.columns = [{"id": 1, "name": "Dr A"}, {"id": 2, "name": "Dr B"}, {"id": 9, "name": "急患"}]
        self.treatment_items: list[dict] = []
        self.patients: list[dict] = []
        self.reservations: dict[int, dict] = {}
        self.responses: list[CapturedResponse] = []
        self.current_date: str | None = None
        self.add_form: dict | None = None
        self.edit_form: dict | None = None
        self.cancel_open = False
        self.confirmation_on_create: list[str] | None = None
        self.reloads = 0
        self.update_submits = 0
        self.cancel_types: list[object] = []
        self._next_id = 1

    # -- seeding --------------------------------------------------------

    def book(self, column: int, time_from: str, time_to: str, *, phone: str = OTHER_PHONE, date: str = DAY,
             patient_id: int | None = None, name: str = "既存 患者") -> int:
        rid = self._next_id
        self._next_id += 1
        self.reservations[rid] = {
            "id": rid,
            "column_no": column,
            "reservation_date": date,
            "time_from": time_from,
            "time_to": time_to,
            "patient_name": name,
            "patient_number": "",
            "patient_id": patient_id,
            "cancel": 0,
            "memo": [{"id": 1, "memo": build_note("", phone)}],
        }
        return rid

    # -- helpers --------------------------------------------------------

    def _push(self, method: str, url: str, body: dict, status: int = 200) -> None:
        self.responses.append(CapturedResponse(method=method, url=url, status=status, body=json.dumps(body)))

    def _rows(self, date: str) -> list[dict]:
        return [dict(r) for r in self.reservations.values() if r["reservation_date"] == date]

    def _overlaps(self, date: str, column: int, time_from: str, time_to: str, ignore: int | None = None) -> bool:
        for r in self.reservations.values():
            if r["id"] == ignore or r["cancel"] or r["reservation_date"] != date or r["column_no"] != column:
                continue
            if r["time_from"] < time_to and time_from < r["time_to"]:
                return True
        return False

    def _time_rows(self) -> list[dict]:
        rows = []
        t = dt.datetime(2030, 1, 1, 9, 0)
        while t.hour < 12:
            rows.append({"hour": t.strftime("%H"), "minute": t.strftime("%M")})
            t += dt.timedelta(minutes=15)
        return rows

    # -- RemotePage contract --------------------------------------------

    def goto(self, url: str) -> None:
        pass

    def reload(self) -> None:
        self.reloads += 1
        self.add_form = self.edit_form = None
        self.cancel_open = False

    def sleep(self, seconds: float) -> None:
        pass

    def wait_for_selector(self, css: str, *, hidden: bool = False, timeout: float | None = None) -> None:
        pass

    @contextlib.contextmanager
    def expect_response(self, method: str, url_pattern: str, *, timeout: float | None = None):
        yield _Waiter(self, method, url_pattern, len(self.responses))

    def click(self, css: str) -> bool:
        if css != _SUBMIT:
            return False
        if self.add_form is not None:
            self._submit_add()
            return True
        if self.edit_form is not None:
            self._submit_edit()
            return True
        return False

    def call_component(self, name: str, body: str, *args):
        if name == SIDE_MAIN and "clickDay" in body:
            self.current_date = args[0]["id"]
            self._push("GET", f"https://x/reservations?from={self.current_date}&days=1",
                       {"result": True, "data": {"reservations": self._rows(self.current_date)}})
            return None
        if name == SIDE_MAIN and "clickSearch" in body:
            found = [p for p in self.patients if args[0] in (p.get("tel1"), p.get("tel2"))]
            self._push("GET", f"https://x/patients?q={args[0]}", {"result": True, "data": {"patients": found}})
            return None
        if name == PATIENT_LIST:
            return None
        if name == RESERVE_DAY and "reserve_rows: vm.reserve_rows" in body:
            return {
                "reserve_rows": self._rows(self.current_date),
                "column_rows": self.columns,
                "time_rows": self._time_rows(),
                "start_hour": 9,
                "start_minute": 0,
                "end_hour": 12,
                "end_minute": 0,
                "is_closed": False,
            }
        if name == RESERVE_DAY and "openReserveAdd" in body:
            self.add_form = dict(args[0], patient_number="", patient_name="", color="", memo=[])
            return None
        if name == RESERVE_DAY and "resetCandidate" in body:
            return None
        if name == RESERVE_DAY and "openReserveEdit" in body:
            self.edit_form = json.loads(json.dumps(self.reservations[args[0]]))
            return None
        if name == RESERVE_ADD and "getPatient" in body:
            number = args[0]
            patient = next((p for p in self.patients if p["patient_number"] == number), None)
            self.add_form["patient_number"] = number
            self._push("GET", f"https://x/patients/number/{number}", {"result": patient is not None, "data": patient})
            return None
        if name == RESERVE_ADD and "form.patient_name" in body:
            patient_name, color, note = args
            self.add_form["patient_name"] = patient_name
            if color:
                self.add_form["color"] = color
            if note:
                self.add_form["memo"].append({"id": 1, "memo": note})
            return None
        if name == RESERVE_ADD and "clickClose" in body:
            self.add_form = None
            return None
        if name == RESERVE_EDIT and "clickReserveCancel" in body:
            self.cancel_open = True
            return None
        if name == CANCEL_ADD:
            circumstance, cancel_type = args
            rid = self.edit_form["id"]
            self.cancel_types.append(cancel_type)
            if circumstance == CIRCUMSTANCE_CANCEL:
                self.reservations[rid]["cancel"] = 1
            else:
                del self.reservations[rid]
            self.edit_form = None
            self.cancel_open = False
            self._push("POST", f"https://x/reservations/{rid}/cancel", {"result": True, "data": None})
            return None
        raise AssertionError(f"unexpected script for {name}: {body[:60]}")

    def call_component_async(self, name: str, body: str, *args):
        if name == RESERVE_DAY and "get_treatment_items" in body:
            return {"api": {"result": True, "data": {"treatment_items": self.treatment_items}}, "columns": self.columns}
        if name == RESERVE_DAY and "vm.get(args[0]" in body:
            return self._api_get(*args)
        if name == RESERVE_EDIT and "is_loaded" in body:
            self._apply_edit(args[0])
            return True
        raise AssertionError(f"unexpected async script for {name}: {body[:60]}")

    # -- fake backend ---------------------------------------------------

    def _api_get(self, url: str, params: dict) -> dict:
        if url == "/reservations":
            return {"result": True, "data": {"reservations": self._rows(params["from"])}}
        m = re.fullmatch(r"/patients/(\d+)", url)
        if m:
            pid = int(m.group(1))
            patient = next(p for p in self.patients if p["id"] == pid)
            histories = [
                {"id": r["id"], "reservation_date": r["reservation_date"]}
                for r in self.reservations.values()
                if r["patient_id"] == pid
            ]
            return {"result": True, "data": dict(patient, reservation_histories=histories)}
        m = re.fullmatch(r"/reservations/(\d+)", url)
        if m:
            r = self.reservations[int(m.group(1))]
            patient = next((p for p in self.patients if p["id"] == r["patient_id"]), {})
            return {"result": True, "data": dict(r, patient={"tel1": patient.get("tel1")})}
        raise AssertionError(url)

    def _apply_edit(self, p: dict) -> None:
        form = self.edit_form
        if p.get("note"):
            memo = next((m for m in form["memo"] if p["marker"] in m["memo"]), None)
            if memo:
                memo["memo"] = p["note"]
            else:
                form["memo"].append({"id": 1, "memo": p["note"]})
        for key in ("color", "column_no", "reservation_date", "time_from", "time_to"):
            if p.get(key):
                form[key] = p[key]

    def _submit_add(self) -> None:
        form, self.add_form = self.add_form, None
        if self.confirmation_on_create:
            self._push("POST", "https://x/reservations",
                       {"result": True, "data": None, "confirmation": json.dumps(self.confirmation_on_create)})
            return
        if self._overlaps(form["reservation_date"], form["column_no"], form["time_from"], form["time_to"]):
            self._push("POST", "https://x/reservations", {"result": False, "message": ["他の予約と重複しています"]})
            return

        rid = self._next_id
        self._next_id += 1
        self.reservations[rid] = {
            "id": rid,
            "column_no": form["column_no"],
            "reservation_date": form["reservation_date"],
            "time_from": form["time_from"],
            "time_to": form["time_to"],
            "patient_name": form["patient_name"],
            "patient_number": form["patient_number"],
            "patient_id": None,
            "cancel": 0,
            "color": form["color"],
            "memo": form["memo"],
        }
        self._push("POST", "https://x/reservations", {"result": True, "data": None})
        date = form["reservation_date"]
        self._push("GET", f"https://x/reservations?from={date}&days=1",
                   {"result": True, "data": {"reservations": self._rows(date)}})

    def _submit_edit(self) -> None:
        form, self.edit_form = self.edit_form, None
        self.update_submits += 1
        rid = form["id"]
        if self._overlaps(form["reservation_date"], form["column_no"], form["time_from"], form["time_to"], ignore=rid):
            self._push("POST", f"https://x/reservations/{rid}", {"result": False, "message": ["他の予約と重複しています"]})
            return
        self.reservations[rid] = form
        self._push("POST", f"https://x/reservations/{rid}", {"result": True, "data": None})


# -- request builders ---------------------------------------------------


def _create(time: str = "10:00", *, phone: str = PHONE, name: str = "山田太郎", **kwargs) -> ReservationRequest:
    return ReservationRequest(
        reservation_id="r1",
        operation="create",
        slot=SlotRequest(date=DAY, start_at=time, duration_min=kwargs.pop("duration_min", None)),
        customer=Customer(name=name, phone=phone, customer_id=kwargs.pop("customer_id", None)),
        menu=kwargs.pop("menu", None),
        staff=kwargs.pop("staff", StaffPreference()),
    )


def _update(time: str = "10:00", *, desired_time: str | None = None, menu: MenuInfo | None = None) -> ReservationRequest:
    return ReservationRequest(
        reservation_id="r2",
        operation="update",
        slot=SlotRequest(date=DAY, start_at=time, desired=DesiredSlot(time=desired_time) if desired_time else None),
        customer=Customer(name="", phone=PHONE),
        menu=menu,
    )


def _cancel(time: str = "10:00", *, operation: str = "cancel") -> ReservationRequest:
    return ReservationRequest(
        reservation_id="r3",
        operation=operation,
        slot=SlotRequest(date=DAY, start_at=time),
        customer=Customer(name="", phone=PHONE),
    )


@pytest.fixture()
def ledger() -> FakeLedgerPage:
    return FakeLedgerPage()


@pytest.fixture()
def appoint(ledger: FakeLedgerPage) -> AppointPage:
    return AppointPage(ledger)


# -- create / search / delete ---------------------------------------------


def test_create_search_delete_round_trip(ledger: FakeLedgerPage, appoint: AppointPage) -> None:
    created = appoint.process_reservations([_create("10:00")])[0]
    assert created.result.status == "success"
    rid = int(created.result.external_reservation_id)
    assert ledger.reservations[rid]["time_to"] == "10:45"
    assert PHONE in ledger.reservations[rid]["memo"][0]["memo"]

    found = appoint.search_reservations_by_phone(DAY, DAY, PHONE)
    assert [(r.appoint_id, r.time) for r in found] == [(str(rid), "10:00")]

    deleted = appoint.process_reservations([_cancel("10:00", operation="delete")])[0]
    assert deleted.result.status == "success"
    assert rid not in ledger.reservations
    assert appoint.search_reservations_by_phone(DAY, DAY, PHONE) == []


def test_two_creates_at_same_time_use_different_columns(ledger: FakeLedgerPage, appoint: AppointPage) -> None:
    first, second = appoint.process_reservations([_create("10:00"), _create("10:00", phone=OTHER_PHONE, name="佐藤花子")])

    assert first.succeeded and second.succeeded
    columns = {ledger.reservations[int(r.result.external_reservation_id)]["column_no"] for r in (first, second)}
    assert columns == {1, 2}


def test_create_without_free_column_is_a_conflict(ledger: FakeLedgerPage, appoint: AppointPage) -> None:
    ledger.book(1, "10:00", "11:00")
    ledger.book(2, "10:30", "11:00")

    result = appoint.process_reservations([_create("10:00")])[0]

    assert result.result.status == "conflict"
    assert result.result.error_code == "NO_AVAILABLE_STAFF"
    assert len(ledger.reservations) == 2


def test_create_with_specific_staff(ledger: FakeLedgerPage, appoint: AppointPage) -> None:
    result = appoint.process_reservations([_create(staff=StaffPreference(staff_id="2", preference="specific"))])[0]

    assert ledger.reservations[int(result.result.external_reservation_id)]["column_no"] == 2


def test_create_confirmation_is_a_failure_and_reloads(ledger: FakeLedgerPage, appoint: AppointPage) -> None:
    ledger.confirmation_on_create = ["診療時間外です"]

    result = appoint.process_reservations([_create()])[0]

    assert result.result.status == "failed"
    assert result.result.error_code == "REMOTE_REJECTED"
    assert "診療時間外です" in result.result.error_message
    assert ledger.reloads == 1
    assert ledger.reservations == {}


def test_create_with_unknown_customer_id(ledger: FakeLedgerPage, appoint: AppointPage) -> None:
    result = appoint.process_reservations([_create(customer_id="404")])[0]

    assert result.result.status == "failed"
    assert result.result.error_code == "PATIENT_NOT_FOUND"
    assert ledger.add_form is None
    assert ledger.reservations == {}


def test_create_reuses_patient_found_by_name_and_phone(ledger: FakeLedgerPage, appoint: AppointPage) -> None:
    ledger.patients.append({"id": 3, "patient_number": "P-3", "name": "山田 太郎", "name_kana": "ヤマダ タロウ", "tel1": PHONE})

    result = appoint.process_reservations([_create(name="山田 太郎")])[0]

    assert result.succeeded
    assert ledger.reservations[int(result.result.external_reservation_id)]["patient_number"] == "P-3"


def test_create_uses_menu_duration_color_and_note(ledger: FakeLedgerPage, appoint: AppointPage) -> None:
    ledger.treatment_items.append({"id": 5, "title": "定期検診", "treatment_time": 60, "use_column": [2], "color": "#f00"})

    result = appoint.process_reservations([_create(duration_min=30, menu=MenuInfo(external_menu_id="5"))])[0]

    row = ledger.reservations[int(result.result.external_reservation_id)]
    assert (row["column_no"], row["time_to"], row["color"]) == (2, "11:00", "#f00")
    assert row["memo"][0]["memo"] == f"{NOTE_MARKER} 症状:[定期検診]、tel:[{PHONE}]"


# -- update ---------------------------------------------------------------


def test_update_moves_start_and_keeps_duration(ledger: FakeLedgerPage, appoint: AppointPage) -> None:
    rid = ledger.book(1, "10:00", "10:30", phone=PHONE)

    result = appoint.process_reservations([_update("10:00", desired_time="11:00")])[0]

    assert result.succeeded
    assert (ledger.reservations[rid]["time_from"], ledger.reservations[rid]["time_to"]) == ("11:00", "11:30")
    assert appoint.find_reservation_by_phone_and_time(DAY, "10:00", PHONE) is None
    assert appoint.find_reservation_by_phone_and_time(DAY, "11:00", PHONE).id == rid


def test_update_unknown_reservation(appoint: AppointPage) -> None:
    result = appoint.process_reservations([_update("10:00", desired_time="11:00")])[0]

    assert result.result.status == "failed"
    assert result.result.error_code == "RESERVATION_NOT_FOUND"


def test_update_menu_without_compatible_staff(ledger: FakeLedgerPage, appoint: AppointPage) -> None:
    ledger.treatment_items.append({"id": 5, "title": "矯正", "treatment_time": 30, "use_column": [2], "color": ""})
    ledger.book(1, "10:00", "10:45", phone=PHONE)
    ledger.book(2, "10:00", "11:00")

    result = appoint.process_reservations([_update(menu=MenuInfo(external_menu_id="5"))])[0]

    assert result.result.status == "failed"
    assert result.result.error_code == "NO_COMPATIBLE_STAFF"
    assert "No compatible staff" in result.result.error_message
    assert ledger.update_submits == 0


def test_update_menu_reassigns_to_eligible_column(ledger: FakeLedgerPage, appoint: AppointPage) -> None:
    ledger.treatment_items.append({"id": 5, "title": "矯正", "treatment_time": 30, "use_column": [2], "color": "#0f0"})
    rid = ledger.book(1, "10:00", "10:45", phone=PHONE)

    result = appoint.process_reservations([_update(menu=MenuInfo(menu_name="矯正"))])[0]

    row = ledger.reservations[rid]
    assert result.succeeded
    assert (row["column_no"], row["time_to"], row["color"]) == (2, "10:30", "#0f0")
    assert "症状:[矯正]" in row["memo"][0]["memo"]


def test_update_conflict_retries_once_on_another_column(ledger: FakeLedgerPage, appoint: AppointPage) -> None:
    rid = ledger.book(1, "10:00", "10:45", phone=PHONE)
    ledger.book(1, "11:00", "11:45")

    result = appoint.process_reservations([_update("10:00", desired_time="11:00")])[0]

    assert result.succeeded
    assert ledger.update_submits == 2
    assert (ledger.reservations[rid]["column_no"], ledger.reservations[rid]["time_from"]) == (2, "11:00")


def test_update_conflict_without_any_free_column_is_terminal(ledger: FakeLedgerPage, appoint: AppointPage) -> None:
    ledger.book(1, "10:00", "10:45", phone=PHONE)
    ledger.book(1, "11:00", "11:45")
    ledger.book(2, "11:00", "11:45")

    result = appoint.process_reservations([_update("10:00", desired_time="11:00")])[0]

    assert result.result.status == "conflict"
    assert result.result.error_code == "SCHEDULE_CONFLICT"
    assert ledger.update_submits == 1


def test_update_conflict_without_move_is_not_retried(ledger: FakeLedgerPage, appoint: AppointPage) -> None:
    ledger.treatment_items.append({"id": 5, "title": "長時間", "treatment_time": 90, "use_column": [], "color": ""})
    ledger.book(1, "10:00", "10:45", phone=PHONE)
    ledger.book(1, "11:00", "11:45")

    result = appoint.process_reservations([_update(menu=MenuInfo(external_menu_id="5"))])[0]

    assert result.result.status == "conflict"
    assert ledger.update_submits == 1


# -- cancel / search ------------------------------------------------------


def test_cancel_keeps_history_with_telephone_reason(ledger: FakeLedgerPage, appoint: AppointPage) -> None:
    rid = ledger.book(1, "10:00", "10:45", phone=PHONE)

    result = appoint.process_reservations([_cancel("10:00")])[0]

    assert result.succeeded
    assert ledger.reservations[rid]["cancel"] == 1
    assert ledger.cancel_types == [1]
    assert appoint.find_reservation_by_phone_and_time(DAY, "10:00", PHONE) is None


def test_delete_sends_no_cancel_reason(ledger: FakeLedgerPage, appoint: AppointPage) -> None:
    ledger.book(1, "10:00", "10:45", phone=PHONE)

    appoint.process_reservations([_cancel("10:00", operation="delete")])

    assert ledger.cancel_types == [None]


def test_search_prefers_patient_histories(ledger: FakeLedgerPage, appoint: AppointPage) -> None:
    ledger.patients.append({"id": 3, "patient_number": "P-3", "name": "山田 太郎", "name_kana": "ヤマダ タロウ", "tel1": PHONE})
    rid = ledger.book(2, "09:30", "10:15", patient_id=3, phone="")
    cancelled = ledger.book(1, "11:00", "11:15", patient_id=3, phone="")
    ledger.reservations[cancelled]["cancel"] = 1
    ledger.book(1, "10:00", "10:45", patient_id=3, phone="", date="2030-02-01")

    found = appoint.search_reservations_by_phone(DAY, DAY, PHONE)

    assert [r.to_dict() for r in found] == [
        {
            "appointId": str(rid),
            "date": DAY,
            "time": "09:30",
            "customerName": "ヤマダ タロウ",
            "customerPhone": PHONE,
            "staffId": "2",
        }
    ]


def test_note_search_scans_each_day_and_loads_latest(ledger: FakeLedgerPage, appoint: AppointPage) -> None:
    ledger.book(1, "10:00", "10:45", phone=PHONE, date="2030-01-15")
    ledger.book(2, "09:00", "09:45", phone=PHONE, date="2030-01-17")
    ledger.book(2, "09:00", "09:45", phone=OTHER_PHONE, date="2030-01-16")

    found = appoint.search_reservations_by_phone("2030-01-15", "2030-01-17", PHONE)

    assert [r.date for r in found] == ["2030-01-15", "2030-01-17"]
    assert ledger.current_date == "2030-01-17"


# -- slots ----------------------------------------------------------------


def test_available_slots_follow_menu_columns_and_duration(ledger: FakeLedgerPage, appoint: AppointPage) -> None:
    ledger.treatment_items.append({"id": 5, "title": "定期検診", "treatment_time": 60, "use_column": [2], "color": ""})
    ledger.book(2, "09:00", "10:00")

    slots = appoint.get_available_slots(
        date_from=DAY, date_to="2030-01-16", duration=30, menu=MenuInfo(menu_name="検診")
    )

    first_day = [s for s in slots if s.date == DAY]
    assert first_day[0].time == "10:00"
    assert {s.resource_name for s in slots} == {"Dr B"}
    assert {s.duration_min for s in slots} == {60}
    assert max(s.time for s in first_day) == "11:00"
    assert any(s.date == "2030-01-16" and s.time == "09:00" for s in slots)


def test_available_slots_skip_past_cells(ledger: FakeLedgerPage, appoint: AppointPage) -> None:
    now = dt.datetime(2030, 1, 15, 10, 50)

    slots = appoint.get_available_slots(date_from=DAY, date_to=DAY, duration=15, now=now)

    assert min(s.time for s in slots) == "11:00"


def test_treatment_items_map_columns_to_names(ledger: FakeLedgerPage, appoint: AppointPage) -> None:
    ledger.treatment_items.append({"id": 5, "title": "定期検診", "treatment_time": 60, "use_column": [1, 2], "color": ""})

    (item,) = appoint.get_treatment_items()

    assert item.to_menu_dict() == {
        "external_menu_id": "5",
        "menu_name": "定期検診",
        "duration_min": 60,
        "resources": ["Dr A", "Dr B"],
        "resource_ids": [1, 2],
    }


@pytest.mark.parametrize(
    ("message", "expected"),
    [
        ("他の予約と重複しています", True),
        ("Schedule conflict with reservation 12", True),
        ("診療時間外です", False),
        ("", False),
        (None, False),
    ],
)
def test_is_schedule_conflict(message: str | None, expected: bool) -> None:
    assert is_schedule_conflict(message) is expected
