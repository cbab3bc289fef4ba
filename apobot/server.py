from __future__ import annotations

import contextlib
import datetime as dt
import logging
import time
from typing import Any, Callable, Optional, TypeVar
from zoneinfo import ZoneInfo

from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from selenium.common.exceptions import WebDriverException

from apobot.appoint_page import AppointPage
from apobot.config import Settings
from apobot.credentials import (
    LOGIN_ID_HEADER,
    LOGIN_PASSWORD_HEADER,
    TEST_MODE_HEADER,
    credentials_from_headers,
    is_test_mode,
)
from apobot.domain import (
    AuthError,
    Credentials,
    Customer,
    DesiredSlot,
    MenuInfo,
    ReservationRequest,
    ReservationResult,
    SessionNotReadyError,
    SessionState,
    SlotRequest,
    StaffPreference,
)
from apobot.selenium_provider import RemotePage
from apobot.session import SessionContext

logger = logging.getLogger(__name__)

T = TypeVar("T")

AUTH_REQUIRED = "AUTH_REQUIRED"
INVALID_REQUEST = "INVALID_REQUEST"
SESSION_NOT_READY = "SESSION_NOT_READY"
PROCESSING_ERROR = "PROCESSING_ERROR"

router = APIRouter()


class ApiError(Exception):
    def __init__(self, status_code: int, code: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


class ReservationCreateBody(BaseModel):
    date: Optional[str] = None
    time: Optional[str] = None
    duration_min: Optional[int] = None
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    menu_name: Optional[str] = None
    external_menu_id: Optional[str] = None
    staff_id: Optional[str] = None


class ReservationUpdateBody(BaseModel):
    date: Optional[str] = None
    time: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    menu_name: Optional[str] = None
    external_menu_id: Optional[str] = None
    desired_date: Optional[str] = None
    desired_time: Optional[str] = None


class ReservationCancelBody(BaseModel):
    date: Optional[str] = None
    time: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None


# -- helpers ------------------------------------------------------------


def _settings(request: Request) -> Settings:
    return request.app.state.settings


def _context(request: Request) -> SessionContext:
    return request.app.state.context


def _require_credentials(request: Request) -> Credentials:
    credentials = credentials_from_headers(request.headers)
    if credentials is None:
        raise ApiError(
            401,
            AUTH_REQUIRED,
            f"Missing authentication headers. Required: {LOGIN_ID_HEADER}, {LOGIN_PASSWORD_HEADER}",
        )
    return credentials


def _require(fields: dict[str, Any]) -> None:
    missing = [name for name, value in fields.items() if not value]
    if missing:
        raise ApiError(400, INVALID_REQUEST, f"Missing required parameters: {', '.join(missing)}")


def _check_date(name: str, value: str | None) -> None:
    if value is None:
        return
    try:
        dt.date.fromisoformat(value)
    except ValueError as e:
        raise ApiError(400, INVALID_REQUEST, f"Invalid {name}: {value!r}. Expected YYYY-MM-DD.") from e


def _check_time(name: str, value: str | None) -> None:
    if value is None:
        return
    try:
        dt.datetime.strptime(value, "%H:%M")
    except ValueError as e:
        raise ApiError(400, INVALID_REQUEST, f"Invalid {name}: {value!r}. Expected HH:MM.") from e


def _menu(external_menu_id: str | None, menu_name: str | None) -> MenuInfo | None:
    if not external_menu_id and not menu_name:
        return None
    return MenuInfo(external_menu_id=external_menu_id or "", menu_name=menu_name or "")


def _clinic_now(settings: Settings) -> dt.datetime:
    return dt.datetime.now(ZoneInfo(settings.clinic_timezone))


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _request_id(prefix: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}"


async def _run_on_page(request: Request, credentials: Credentials, work: Callable[[AppointPage], T]) -> tuple[T, str | None]:
    """Ensure the session, lease its page and run ``work`` against the ledger screen."""
    settings = _settings(request)
    context = _context(request)
    page_factory = request.app.state.appoint_page_factory
    test_mode = is_test_mode(request.headers)

    try:
        session = await context.ensure_session(credentials)
    except AuthError as e:
        raise ApiError(401, e.code, str(e)) from e
    except SessionNotReadyError as e:
        raise ApiError(503, SESSION_NOT_READY, str(e)) from e
    except Exception as e:
        logger.error("Session start failed (%s: %s)", type(e).__name__, e)
        raise ApiError(500, PROCESSING_ERROR, str(e) or type(e).__name__) from e

    def job(page: RemotePage) -> tuple[T, str | None]:
        appoint = page_factory(page)
        try:
            appoint.navigate(settings.base_url)
            value = work(appoint)
        except WebDriverException:
            page.save_debug_snapshot(settings.screenshot_dir, prefix="error")
            raise

        screenshot = None
        if test_mode:
            try:
                page.sleep(0.5)
                screenshot = page.screenshot_base64()
            except WebDriverException:
                logger.warning("Screenshot failed", exc_info=True)
        return value, screenshot

    try:
        return await session.with_leased_page(job, settings.request_timeout_ms)
    except SessionNotReadyError as e:
        raise ApiError(503, SESSION_NOT_READY, str(e)) from e
    except Exception as e:
        logger.error("%s %s failed (%s: %s)", request.method, request.url.path, type(e).__name__, e)
        raise ApiError(500, PROCESSING_ERROR, str(e) or type(e).__name__) from e


def _with_screenshot(body: dict[str, Any], screenshot: str | None) -> dict[str, Any]:
    if screenshot:
        body["screenshot"] = screenshot
    return body


def _mutation_response(result: ReservationResult, started: float, screenshot: str | None) -> dict[str, Any]:
    body: dict[str, Any] = {
        "success": result.succeeded,
        "reservation_id": result.reservation_id,
        "external_reservation_id": result.result.external_reservation_id,
        "status": result.result.status,
        "timing": {"total_ms": _elapsed_ms(started)},
    }
    if not result.succeeded:
        body["error"] = result.result.error_message
        body["error_code"] = result.result.error_code
    return _with_screenshot(body, screenshot)


# -- routes -------------------------------------------------------------


@router.get("/health")
def health(request: Request) -> dict[str, Any]:
    context = _context(request)
    state = context.state
    return {
        "status": "ok" if state in (SessionState.READY, SessionState.BUSY) else "degraded",
        "session_state": state.value,
        "has_credentials": context.has_credentials,
    }


@router.get("/status")
def status(request: Request) -> dict[str, Any]:
    context = _context(request)
    settings = _settings(request)
    last_activity = context.session.get_last_activity_time() if context.session else None
    return {
        "session": {
            "state": context.state.value,
            "last_activity": last_activity.isoformat() if last_activity else None,
        },
        "config": {
            "keep_alive_interval_ms": settings.keep_alive_interval_ms,
            "request_timeout_ms": settings.request_timeout_ms,
        },
    }


@router.get("/menu")
async def menu(request: Request) -> dict[str, Any]:
    credentials = _require_credentials(request)
    started = time.monotonic()

    items, screenshot = await _run_on_page(request, credentials, lambda page: page.get_treatment_items())
    menu_list = [item.to_menu_dict() for item in items]
    return _with_screenshot(
        {"success": True, "menu": menu_list, "count": len(menu_list), "timing": {"total_ms": _elapsed_ms(started)}},
        screenshot,
    )


@router.get("/slots")
async def slots(
    request: Request,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    resources: Optional[str] = None,
    duration: Optional[str] = None,
    external_menu_id: Optional[str] = None,
    menu_name: Optional[str] = None,
) -> dict[str, Any]:
    credentials = _require_credentials(request)
    settings = _settings(request)

    date_from = date_from or _clinic_now(settings).date().isoformat()
    date_to = date_to or date_from
    _check_date("date_from", date_from)
    _check_date("date_to", date_to)

    duration_min: int | None = None
    if duration:
        try:
            duration_min = int(duration)
        except ValueError as e:
            raise ApiError(400, INVALID_REQUEST, f"Invalid duration: {duration!r}") from e
        if duration_min <= 0:
            raise ApiError(400, INVALID_REQUEST, "duration must be > 0")

    resource_names = [r.strip() for r in resources.split(",") if r.strip()] if resources else None
    menu_info = _menu(external_menu_id, menu_name)
    started = time.monotonic()

    def work(page: AppointPage):
        return page.get_available_slots(
            date_from=date_from,
            date_to=date_to,
            resources=resource_names,
            duration=duration_min,
            menu=menu_info,
            now=_clinic_now(settings),
        )

    found, screenshot = await _run_on_page(request, credentials, work)
    return _with_screenshot(
        {
            "success": True,
            "available_slots": [s.to_dict() for s in found],
            "count": len(found),
            "timing": {"total_ms": _elapsed_ms(started)},
        },
        screenshot,
    )


@router.get("/reservations/search")
async def search_reservations(
    request: Request,
    customer_phone: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
) -> dict[str, Any]:
    credentials = _require_credentials(request)
    settings = _settings(request)
    _require({"customer_phone": customer_phone})

    date_from = date_from or _clinic_now(settings).date().isoformat()
    date_to = date_to or date_from
    _check_date("date_from", date_from)
    _check_date("date_to", date_to)
    started = time.monotonic()

    found, screenshot = await _run_on_page(
        request,
        credentials,
        lambda page: page.search_reservations_by_phone(date_from, date_to, customer_phone),
    )
    return _with_screenshot(
        {
            "success": True,
            "reservations": [r.to_dict() for r in found],
            "count": len(found),
            "timing": {"total_ms": _elapsed_ms(started)},
        },
        screenshot,
    )


async def _process_one(request: Request, credentials: Credentials, reservation: ReservationRequest) -> dict[str, Any]:
    started = time.monotonic()
    results, screenshot = await _run_on_page(
        request, credentials, lambda page: page.process_reservations([reservation])
    )
    return _mutation_response(results[0], started, screenshot)


@router.post("/reservations")
async def create_reservation(request: Request, body: Optional[ReservationCreateBody] = None) -> dict[str, Any]:
    credentials = _require_credentials(request)
    body = body or ReservationCreateBody()
    _require(
        {
            "date": body.date,
            "time": body.time,
            "customer_name": body.customer_name,
            "customer_phone": body.customer_phone,
        }
    )
    _check_date("date", body.date)
    _check_time("time", body.time)
    if body.duration_min is not None and body.duration_min <= 0:
        raise ApiError(400, INVALID_REQUEST, "duration_min must be > 0")

    reservation = ReservationRequest(
        reservation_id=_request_id("create"),
        operation="create",
        slot=SlotRequest(date=body.date, start_at=body.time, duration_min=body.duration_min),
        customer=Customer(name=body.customer_name, phone=body.customer_phone, customer_id=body.customer_id or None),
        menu=_menu(body.external_menu_id, body.menu_name),
        staff=StaffPreference(staff_id=body.staff_id, preference="specific") if body.staff_id else StaffPreference(),
    )
    return await _process_one(request, credentials, reservation)


@router.put("/reservations")
async def update_reservation(request: Request, body: Optional[ReservationUpdateBody] = None) -> dict[str, Any]:
    credentials = _require_credentials(request)
    body = body or ReservationUpdateBody()
    _require({"date": body.date, "time": body.time, "customer_phone": body.customer_phone})
    _check_date("date", body.date)
    _check_time("time", body.time)
    _check_date("desired_date", body.desired_date)
    _check_time("desired_time", body.desired_time)

    desired = DesiredSlot(date=body.desired_date, time=body.desired_time)
    reservation = ReservationRequest(
        reservation_id=_request_id("update"),
        operation="update",
        slot=SlotRequest(date=body.date, start_at=body.time, desired=desired if desired.requested else None),
        customer=Customer(name=body.customer_name or "", phone=body.customer_phone),
        menu=_menu(body.external_menu_id, body.menu_name),
    )
    return await _process_one(request, credentials, reservation)


@router.delete("/reservations")
async def cancel_reservation(
    request: Request,
    force: Optional[str] = Query(None),
    body: Optional[ReservationCancelBody] = None,
) -> dict[str, Any]:
    credentials = _require_credentials(request)
    body = body or ReservationCancelBody()
    _require({"date": body.date, "time": body.time, "customer_phone": body.customer_phone})
    _check_date("date", body.date)
    _check_time("time", body.time)

    reservation = ReservationRequest(
        reservation_id=_request_id("cancel"),
        operation="delete" if force == "true" else "cancel",
        slot=SlotRequest(date=body.date, start_at=body.time),
        customer=Customer(name=body.customer_name or "", phone=body.customer_phone),
    )
    return await _process_one(request, credentials, reservation)


@router.post("/session/restart")
async def restart_session(request: Request) -> dict[str, Any]:
    credentials = _require_credentials(request)
    context = _context(request)
    settings = _settings(request)

    try:
        session = await context.restart(credentials)
    except AuthError as e:
        raise ApiError(401, e.code, str(e)) from e
    except Exception as e:
        logger.error("Session restart failed (%s: %s)", type(e).__name__, e)
        raise ApiError(500, PROCESSING_ERROR, str(e) or type(e).__name__) from e

    screenshot = None
    if is_test_mode(request.headers):
        try:
            screenshot = await session.with_leased_page(
                lambda page: page.screenshot_base64(), settings.request_timeout_ms
            )
        except (WebDriverException, TimeoutError, SessionNotReadyError):
            logger.warning("Screenshot after restart failed", exc_info=True)

    return {"success": True, "message": "Session restarted", "screenshot": screenshot}


# -- app ----------------------------------------------------------------


async def _api_error_handler(_request: Request, exc: ApiError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.message, "code": exc.code})


async def _validation_error_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"success": False, "error": str(exc), "code": INVALID_REQUEST})


def create_app(
    settings: Settings,
    context: SessionContext | None = None,
    *,
    appoint_page_factory: Callable[[RemotePage], AppointPage] = AppointPage,
) -> FastAPI:
    context = context or SessionContext(settings)

    @contextlib.asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        logger.info("Shutting down...")
        await context.shutdown()

    app = FastAPI(title="apobot", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.context = context
    app.state.appoint_page_factory = appoint_page_factory

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.allowed_origins),
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=[
            "Origin",
            "X-Requested-With",
            "Content-Type",
            "Accept",
            LOGIN_ID_HEADER,
            LOGIN_PASSWORD_HEADER,
            TEST_MODE_HEADER,
        ],
    )
    app.add_exception_handler(ApiError, _api_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.include_router(router)
    return app
