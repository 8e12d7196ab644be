"""
Browser session for the Wilma portal.

This module handles:
- Chrome WebDriver setup (headless by default)
- Logging in through the Wilma front door
- Navigating between portal views and waiting for them to settle
- Bounded waits that the view extractors build on

One WilmaSession is one browser for one scrape attempt. Use it as a context
manager so the browser is quit on every exit path.
"""

import os
import logging
import time
from datetime import datetime
from typing import Callable, Optional

from bs4 import BeautifulSoup
from dotenv import load_dotenv
from selenium import webdriver
from selenium.common.exceptions import (
    NoSuchElementException,
    TimeoutException,
    WebDriverException,
)
from selenium.webdriver.chrome.options import Options
from selenium.webdriver.chrome.service import Service
from selenium.webdriver.common.by import By
from selenium.webdriver.support import expected_conditions as EC
from selenium.webdriver.support.ui import WebDriverWait
from webdriver_manager.chrome import ChromeDriverManager

from wilma.errors import LoginFailed, SessionFailure

load_dotenv()

logger = logging.getLogger(__name__)


class WilmaSession:
    """Remote-controlled browser logged into Wilma."""

    BASE_URL = os.getenv("WILMA_BASE_URL", "https://yvkoulut.inschool.fi").rstrip("/")
    PAGE_LOAD_TIMEOUT = int(os.getenv("WILMA_PAGE_LOAD_TIMEOUT", "30"))
    DEBUG_HTML_DIR = os.getenv("WILMA_DEBUG_HTML_DIR")

    # Login form and the marker that only exists once authenticated
    USERNAME_FIELD = "#login-frontdoor"
    PASSWORD_FIELD = "#password"
    SUBMIT_BUTTON = '[name="submit"]'
    LOGGED_IN_MARKER = "body.somebody"

    def __init__(self, headless: Optional[bool] = None, base_url: Optional[str] = None):
        """Initialize the session.

        Args:
            headless: Whether to run Chrome in headless mode. Defaults to WILMA_HEADLESS.
            base_url: Portal root. Defaults to WILMA_BASE_URL.
        """
        if headless is None:
            headless = os.getenv("WILMA_HEADLESS", "true").lower() not in ("0", "false", "no")
        self.headless = headless
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.driver = None

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def open(self):
        """Set up Chrome WebDriver."""
        if self.driver:
            return
        options = Options()
        if self.headless:
            options.add_argument("--headless=new")
        options.add_argument("--no-sandbox")
        options.add_argument("--disable-setuid-sandbox")
        options.add_argument("--disable-dev-shm-usage")
        options.add_argument("--disable-gpu")
        options.add_argument("--window-size=1920,1080")
        options.add_argument("--log-level=3")
        options.add_experimental_option('excludeSwitches', ['enable-logging'])

        try:
            service = Service(ChromeDriverManager().install())
            self.driver = webdriver.Chrome(service=service, options=options)
        except WebDriverException as e:
            raise SessionFailure("Could not start browser", details=e.msg or str(e)) from e

        self.driver.set_page_load_timeout(self.PAGE_LOAD_TIMEOUT)
        logger.info(f"Chrome WebDriver started (headless={self.headless})")

    def close(self):
        """Close the browser."""
        if self.driver:
            driver, self.driver = self.driver, None
            try:
                driver.quit()
            except WebDriverException as e:
                logger.warning(f"Error while closing browser: {e.msg}")
            logger.info("Browser closed")

    def _require_driver(self):
        if not self.driver:
            raise SessionFailure("Browser session is not open")
        return self.driver

    # ============== NAVIGATION ==============

    def url_for(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def _wait_until_settled(self, timeout: Optional[int] = None):
        WebDriverWait(self.driver, timeout or self.PAGE_LOAD_TIMEOUT).until(
            lambda d: d.execute_script("return document.readyState") in ("interactive", "complete")
        )

    def navigate(self, path: str = "/"):
        """Go to a portal path and wait until the document has loaded.

        Raises:
            SessionFailure: on timeout or any transport error
        """
        driver = self._require_driver()
        url = self.url_for(path)
        try:
            logger.info(f"Navigating to: {url}")
            driver.get(url)
            self._wait_until_settled()
        except TimeoutException as e:
            raise SessionFailure(f"Timed out loading {path}", details=e.msg or str(e)) from e
        except WebDriverException as e:
            raise SessionFailure(f"Could not load {path}", details=e.msg or str(e)) from e

    def login(self, username: str, password: str):
        """Log in through the Wilma front door.

        Raises:
            LoginFailed: the portal did not show an authenticated page
            SessionFailure: the portal could not be reached or timed out
        """
        self.navigate("/")
        driver = self.driver
        try:
            username_field = self.wait_for(self.USERNAME_FIELD, timeout=10)
            username_field.clear()
            username_field.send_keys(username)

            password_field = driver.find_element(By.CSS_SELECTOR, self.PASSWORD_FIELD)
            password_field.clear()
            password_field.send_keys(password)

            submit_button = driver.find_element(By.CSS_SELECTOR, self.SUBMIT_BUTTON)
            submit_button.click()

            # Wait for the login form to go away, then for the new page to load
            WebDriverWait(driver, self.PAGE_LOAD_TIMEOUT).until(EC.staleness_of(submit_button))
            self._wait_until_settled()
        except TimeoutException as e:
            raise SessionFailure("Timed out during login", details=e.msg or str(e)) from e
        except NoSuchElementException as e:
            self.save_debug_html("login_form_missing")
            raise SessionFailure("Login form not found", details=e.msg or str(e)) from e
        except WebDriverException as e:
            raise SessionFailure("Browser error during login", details=e.msg or str(e)) from e

        if not driver.find_elements(By.CSS_SELECTOR, self.LOGGED_IN_MARKER):
            logger.warning("Login rejected - authenticated marker missing")
            self.save_debug_html("login_failed")
            raise LoginFailed("Invalid Wilma credentials")

        logger.info("Successfully logged in to Wilma")

    # ============== BOUNDED WAITS ==============

    def wait_for(self, selector: str, timeout: int = 10):
        """Wait for an element to be present."""
        return WebDriverWait(self._require_driver(), timeout).until(
            EC.presence_of_element_located((By.CSS_SELECTOR, selector))
        )

    def wait_until(self, predicate: Callable, timeout: int = 10):
        """Wait for an arbitrary predicate over the driver."""
        return WebDriverWait(self._require_driver(), timeout).until(predicate)

    def wait_until_gone(self, selector: str, timeout: int = 10):
        """Wait until no element matches the selector."""
        return self.wait_until(
            lambda d: len(d.find_elements(By.CSS_SELECTOR, selector)) == 0,
            timeout=timeout,
        )

    def is_visible(self, selector: str) -> bool:
        """True if the first match exists and is displayed."""
        elements = self._require_driver().find_elements(By.CSS_SELECTOR, selector)
        return bool(elements) and elements[0].is_displayed()

    def click(self, selector: str):
        self._require_driver().find_element(By.CSS_SELECTOR, selector).click()

    def pause(self, seconds: float):
        time.sleep(seconds)

    def soup(self) -> BeautifulSoup:
        """Parse the current page into a BeautifulSoup tree."""
        return BeautifulSoup(self._require_driver().page_source, "html.parser")

    def save_debug_html(self, label: str = ""):
        """Save the current page source for offline selector analysis.

        Only active when WILMA_DEBUG_HTML_DIR is set.
        """
        if not self.driver or not self.DEBUG_HTML_DIR:
            return
        try:
            os.makedirs(self.DEBUG_HTML_DIR, exist_ok=True)
            stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
            path = os.path.join(self.DEBUG_HTML_DIR, f"{stamp}-{label or 'page'}.html")
            header = f"<!-- DEBUG DUMP: {label} -->\n<!-- URL: {self.driver.current_url} -->\n<!-- TIME: {datetime.now().isoformat()} -->\n"
            with open(path, "w", encoding="utf-8") as f:
                f.write(header + self.driver.page_source)
            logger.info(f"Saved debug HTML to {path} ({label})")
        except (OSError, WebDriverException) as e:
            logger.error(f"Failed to save debug HTML: {e}")
