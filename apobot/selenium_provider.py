from __future__ import annotations

import json
import logging
import os
import re
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator

from selenium import webdriver
from selenium.common.exceptions import JavascriptException, TimeoutException, WebDriverException
from selenium.webdriver.chrome.options import Options
from selenium.webdriver.chrome.service import Service
from selenium.webdriver.common.by import By
from selenium.webdriver.support import expected_conditions as EC
from selenium.webdriver.support.ui import WebDriverWait
from webdriver_manager.chrome import ChromeDriverManager

from apobot.domain import AuthError, ComponentNotFoundError
from apobot.envelope import Envelope

logger = logging.getLogger(__name__)

_MISSING = "__apobot_missing"

# Finds the live Vue instance whose vnode tag ends with the given component name.
_FIND_COMPONENT_JS = (
    "const __apobotFind = function (name) {"
    "  const el = Array.from(document.querySelectorAll('*')).find(function (e) {"
    "    return e && e.__vue__ && e.__vue__.$vnode && e.__vue__.$vnode.tag && e.__vue__.$vnode.tag.endsWith(name);"
    "  });"
    "  return el ? el.__vue__ : null;"
    "};\n"
)

# Records every finished XHR so callers can wait for a specific API response.
# The app talks to its backend through axios, which uses XMLHttpRequest in the browser.
_RECORDER_JS = """
if (!window.__apobotResponses) {
  window.__apobotResponses = [];
  const open = XMLHttpRequest.prototype.open;
  const send = XMLHttpRequest.prototype.send;
  XMLHttpRequest.prototype.open = function (method, url) {
    this.__apobotRequest = {method: String(method).toUpperCase(), url: String(url)};
    return open.apply(this, arguments);
  };
  XMLHttpRequest.prototype.send = function () {
    const xhr = this;
    xhr.addEventListener('loadend', function () {
      if (!xhr.__apobotRequest) return;
      let body = null;
      try { body = xhr.responseText; } catch (e) { body = null; }
      window.__apobotResponses.push({
        method: xhr.__apobotRequest.method,
        url: xhr.responseURL || xhr.__apobotRequest.url,
        status: xhr.status,
        body: body,
      });
    });
    return send.apply(this, arguments);
  };
}
return window.__apobotResponses.length;
"""


def start_driver(*, headless: bool, window_size: tuple[int, int] = (1800, 1300), script_timeout: int = 60) -> webdriver.Chrome:
    options = Options()
    # Keep it close to a real browser. Headless can be toggled via env.
    if headless:
        options.add_argument("--headless=new")
    options.add_argument("--disable-gpu")
    options.add_argument("--no-sandbox")
    options.add_argument(f"--window-size={window_size[0]},{window_size[1]}")
    options.add_argument("--disable-dev-shm-usage")
    options.add_argument("--disable-features=Translate,BackForwardCache")
    options.add_argument("--disable-background-networking")
    options.add_argument("--disable-background-timer-throttling")
    options.add_argument("--disable-renderer-backgrounding")

    service = Service(ChromeDriverManager().install())
    driver = webdriver.Chrome(service=service, options=options)
    driver.set_script_timeout(script_timeout)
    return driver


@dataclass(frozen=True)
class CapturedResponse:
    method: str
    url: str
    status: int
    body: str | None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> Any:
        if not self.body:
            return None
        try:
            return json.loads(self.body)
        except json.JSONDecodeError:
            return None

    def envelope(self) -> Envelope:
        return Envelope.from_json(self.json())


class ResponseWaiter:
    """Handle returned by :meth:`RemotePage.expect_response`."""

    def __init__(self, page: RemotePage, method: str, pattern: re.Pattern[str], start_index: int, timeout: float):
        self._page = page
        self._method = method.upper()
        self._pattern = pattern
        self._start_index = start_index
        self._timeout = timeout
        self._response: CapturedResponse | None = None

    def _poll(self, driver: Any) -> CapturedResponse | None:
        entries = driver.execute_script(
            "return (window.__apobotResponses || []).slice(arguments[0]);", self._start_index
        )
        for entry in entries or []:
            if str(entry.get("method", "")).upper() != self._method:
                continue
            if not self._pattern.search(str(entry.get("url", ""))):
                continue
            return CapturedResponse(
                method=self._method,
                url=str(entry.get("url", "")),
                status=int(entry.get("status") or 0),
                body=entry.get("body"),
            )
        return None

    def value(self) -> CapturedResponse:
        if self._response is None:
            try:
                self._response = WebDriverWait(self._page.driver, self._timeout, poll_frequency=0.1).until(self._poll)
            except TimeoutException as e:
                raise TimeoutException(
                    f"No {self._method} response matching {self._pattern.pattern!r} within {self._timeout}s"
                ) from e
        return self._response


class RemotePage:
    """Narrow page contract the appointment driver is written against.

    navigate, evaluate against a named UI component, wait for a matching
    network response, screenshot. Nothing above this class touches Selenium.
    """

    def __init__(self, driver: webdriver.Chrome, *, wait_seconds: int = 30):
        self.driver = driver
        self.wait_seconds = wait_seconds

    @property
    def current_url(self) -> str:
        return self.driver.current_url

    def goto(self, url: str) -> None:
        self.driver.get(url)

    def reload(self) -> None:
        self.driver.refresh()

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)

    def wait_for_selector(self, css: str, *, hidden: bool = False, timeout: float | None = None) -> None:
        wait = WebDriverWait(self.driver, timeout or self.wait_seconds)
        locator = (By.CSS_SELECTOR, css)
        if hidden:
            wait.until(EC.invisibility_of_element_located(locator))
        else:
            wait.until(EC.presence_of_element_located(locator))

    def has_selector(self, css: str) -> bool:
        return bool(self.driver.find_elements(By.CSS_SELECTOR, css))

    def click(self, css: str) -> bool:
        elements = self.driver.find_elements(By.CSS_SELECTOR, css)
        if not elements:
            return False
        el = elements[0]
        # A plain click is sometimes swallowed by overlays; fall back to a JS click.
        try:
            el.click()
        except WebDriverException:
            self.driver.execute_script("arguments[0].click();", el)
        return True

    def evaluate(self, script: str, *args: Any) -> Any:
        return self.driver.execute_script(script, *args)

    def call_component(self, name: str, body: str, *args: Any) -> Any:
        """Run ``body`` with ``vm`` bound to the named component and ``args`` to the arguments."""
        script = (
            _FIND_COMPONENT_JS
            + "const vm = __apobotFind(arguments[0]);\n"
            + f"if (!vm) return {{'{_MISSING}': true}};\n"
            + "const args = Array.prototype.slice.call(arguments, 1);\n"
            + "return (function (vm, args) {\n"
            + body
            + "\n})(vm, args);"
        )
        result = self.driver.execute_script(script, name, *args)
        if isinstance(result, dict) and result.get(_MISSING):
            raise ComponentNotFoundError(f"UI component not found: {name}")
        return result

    def call_component_async(self, name: str, body: str, *args: Any) -> Any:
        """Like :meth:`call_component`, but ``body`` may ``await`` (e.g. the component's API client)."""
        script = (
            _FIND_COMPONENT_JS
            + "const done = arguments[arguments.length - 1];\n"
            + "const vm = __apobotFind(arguments[0]);\n"
            + f"if (!vm) {{ done({{'{_MISSING}': true}}); return; }}\n"
            + "const args = Array.prototype.slice.call(arguments, 1, arguments.length - 1);\n"
            + "(async function (vm, args) {\n"
            + body
            + "\n})(vm, args)"
            + ".then(function (v) { done({ok: true, value: v === undefined ? null : v}); })"
            + ".catch(function (e) { done({ok: false, error: String((e && e.message) || e)}); });"
        )
        result = self.driver.execute_async_script(script, name, *args)
        if isinstance(result, dict) and result.get(_MISSING):
            raise ComponentNotFoundError(f"UI component not found: {name}")
        if not isinstance(result, dict) or not result.get("ok"):
            error = result.get("error") if isinstance(result, dict) else result
            raise JavascriptException(f"Script against {name} failed: {error}")
        return result.get("value")

    @contextmanager
    def expect_response(self, method: str, url_pattern: str, *, timeout: float | None = None) -> Iterator[ResponseWaiter]:
        """Arm the recorder before triggering a request; ``waiter.value()`` blocks for the response."""
        start_index = int(self.driver.execute_script(_RECORDER_JS) or 0)
        yield ResponseWaiter(self, method, re.compile(url_pattern), start_index, timeout or self.wait_seconds)

    def screenshot_base64(self) -> str:
        return self.driver.get_screenshot_as_base64()

    def save_debug_snapshot(self, directory: str, prefix: str = "debug") -> str | None:
        ts = int(time.time())
        base = os.path.join(directory, f"{prefix}_{ts}")
        try:
            os.makedirs(directory, exist_ok=True)
            self.driver.save_screenshot(f"{base}.png")
            with open(f"{base}.html", "w", encoding="utf-8") as f:
                f.write(self.driver.page_source)
        except (OSError, WebDriverException):
            logger.warning("Failed to save debug snapshot to %s", directory, exc_info=True)
            return None
        return base


class LoginPage:
    def __init__(self, page: RemotePage):
        self.page = page

    def login(self, login_id: str, password: str) -> None:
        """Sign in through the login form component.

        Raises AuthError when the app rejects the credentials.
        """
        if not login_id or not password:
            raise AuthError("Credentials are not set")

        self.page.wait_for_selector(".login-wrapper")

        with self.page.expect_response("POST", r"/login") as response:
            found = self.page.evaluate(
                "const holder = document.querySelector('.login-wrapper');"
                "const form = holder && holder.parentElement && holder.parentElement.__vue__;"
                "if (!form) return false;"
                "form.form.login_id = arguments[0];"
                "form.form.login_password = arguments[1];"
                "form.execLogin();"
                "return true;",
                login_id,
                password,
            )
            if not found:
                raise ComponentNotFoundError("Login form not found")
            captured = response.value()

        if not captured.ok:
            envelope = captured.envelope()
            self.page.reload()
            raise AuthError(envelope.messages[0] if envelope.messages else "Authentication failed")

        self.page.wait_for_selector("#loading", hidden=True)

    def is_logged_in(self) -> bool:
        return self.page.has_selector("#col-main > div")
