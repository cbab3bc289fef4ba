from __future__ import annotations

from typing import Mapping

from apobot.domain import Credentials

LOGIN_ID_HEADER = "X-RPA-Login-Id"
LOGIN_PASSWORD_HEADER = "X-RPA-Login-Password"
TEST_MODE_HEADER = "X-RPA-Test-Mode"


def _header(headers: Mapping[str, str], name: str) -> str | None:
    # Starlette headers are case-insensitive already; plain dicts are not.
    value = headers.get(name)
    if value is None:
        lowered = {k.lower(): v for k, v in headers.items()}
        value = lowered.get(name.lower())
    return value


def credentials_from_headers(headers: Mapping[str, str]) -> Credentials | None:
    login_key = _header(headers, LOGIN_ID_HEADER)
    login_password = _header(headers, LOGIN_PASSWORD_HEADER)
    if not login_key or not login_password:
        return None
    return Credentials(login_key=login_key, login_password=login_password)


def has_credentials_changed(current: Credentials | None, new: Credentials) -> bool:
    if current is None:
        return True
    return current.login_key != new.login_key or current.login_password != new.login_password


def is_test_mode(headers: Mapping[str, str]) -> bool:
    """Test mode asks for a screenshot of the page in the response."""
    return _header(headers, TEST_MODE_HEADER) == "true"
