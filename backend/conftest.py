"""Shared fixtures: a fake browser session serving canned Wilma pages."""

import pytest
from bs4 import BeautifulSoup
from selenium.common.exceptions import TimeoutException

from wilma import extractors
from wilma.errors import LoginFailed, SessionFailure


HOME_HTML = """
<html><body class="somebody">
  <a href="/messages">Viestit <span class="badge">12 uutta</span></a>
  <div class="dropdown-toggle profile">
    <div class="name-container">
      <span class="teacher">  Maija Meikäläinen </span>
      <span class="school">Ylioppilaskoulu</span>
    </div>
  </div>
</body></html>
"""

LOGIN_HTML = """
<html><body class="nobody">
  <form><input id="login-frontdoor"><input id="password"><button name="submit"></button></form>
</body></html>
"""

GRADEBOOK_HTML = """
<html><body class="somebody">
<div id="expand-all"><a href="#">Avaa kaikki</a></div>
<table id="gradebook"><tbody>
  <tr class="level1"><td><span>Lukion opetussuunnitelma</span></td><td></td><td></td><td></td><td></td></tr>
  <tr class="level2"><td><span>Matematiikka</span></td><td></td><td></td><td></td><td></td></tr>
  <tr class="level3"><td><span>Pitkä matematiikka</span></td><td></td><td></td><td></td><td></td></tr>
  <tr class="level4"><td><span>Funktiot <span class="secondary-text">MAA02</span></span></td>
      <td>8,5</td><td>2</td><td>3.9.2025</td><td>Opettaja Olli</td></tr>
  <tr class="level4" style="display: none"><td><span>Geometria <span class="secondary-text">MAA03</span></span></td>
      <td>S</td><td>2</td><td>45.1.2025</td><td></td></tr>
  <tr class="level4"><td><span>Vektorit <span class="secondary-text">MAA04</span></span></td>
      <td></td><td></td><td></td><td></td></tr>
  <tr class="level2"><td><span>Biologia</span></td><td></td><td></td><td></td><td></td></tr>
  <tr class="level3"><td><span>Elämä ja evoluutio <span class="secondary-text">BG04 </span></span></td>
      <td>9</td><td>2</td><td>12.5.2025</td><td>Opettaja Outi</td></tr>
  <tr class="level1"><td><span>Opinto-ohjaus <span class="secondary-text">OP01</span></span></td>
      <td></td><td>2</td><td>1.6.2024</td><td></td></tr>
  <tr class="level1"><td><span>Keskeneräinen <span class="secondary-text">KE01</span></span></td>
      <td></td><td></td><td></td><td></td></tr>
  <tr><td><span>No level class <span class="secondary-text">XX01</span></span></td><td>7</td></tr>
</tbody></table>
</body></html>
"""

ATTENDANCE_HTML = """
<html><body class="somebody">
<table class="datatable attendance-single"><tbody><tr>
  <td class="event" title="BG04 ; Myöhässä alle 15 min / 8:15-9:30">M</td>
  <td class="event" title="bg04; Myöhässä alle 15 min / 10:00-11:15">M</td>
  <td class="event" title="MAA02; Terveydellisiin syihin liittyvä poissaolo / 8:15-9:30">T</td>
  <td class="event" title="MAA02; Luvaton poissaolo (selvitetty)">L</td>
  <td class="event" title="MAA02; Koulun asia / 12:00-13:15">K</td>
  <td class="event">no title</td>
  <td class="other" title="MAA02; Myöhässä alle 15 min">x</td>
</tr></tbody></table>
</body></html>
"""

ECTS_HTML_NO_FOOTER = """
<html><body class="somebody">
<table id="credits-summary-table">
  <thead><tr><th>Kurssityyppi</th><th>2024</th><th>2025</th><th>Yhteensä</th></tr></thead>
  <tbody>
    <tr><td>Pakollinen</td><td>5</td><td>3</td><td>8</td></tr>
    <tr><td>Valinnainen</td><td>2</td><td>1</td><td>3</td></tr>
  </tbody>
</table>
</body></html>
"""

ECTS_HTML_WITH_FOOTER = """
<html><body class="somebody">
<table id="credits-summary-table">
  <thead><tr><th>Kurssityyppi</th><th>2024</th><th>2025</th><th>Yhteensä</th></tr></thead>
  <tbody>
    <tr><td>Pakollinen</td><td>5,5</td><td>3</td><td>8,5</td></tr>
    <tr><td></td><td>9</td><td>9</td><td>18</td></tr>
  </tbody>
  <tfoot><tr class="total"><td>Yhteensä</td><td>10</td><td>4</td><td>14</td></tr></tfoot>
</table>
</body></html>
"""


def make_soup(html: str) -> BeautifulSoup:
    return BeautifulSoup(html, "html.parser")


class FakeSession:
    """Stands in for WilmaSession: serves canned pages, no browser."""

    VALID_USERNAME = "maija"
    VALID_PASSWORD = "salasana"

    def __init__(self, pages=None, fail_navigation=False):
        self.pages = {
            "/": HOME_HTML,
            extractors.GRADEBOOK_PATH: GRADEBOOK_HTML,
            extractors.ECTS_SUMMARY_PATH: ECTS_HTML_NO_FOOTER,
            extractors.ATTENDANCE_PATH: ATTENDANCE_HTML,
        }
        self.pages.update(pages or {})
        self.fail_navigation = fail_navigation
        self.current = LOGIN_HTML
        self.visited = []
        self.clicked = []
        self.open_count = 0
        self.close_count = 0

    def __enter__(self):
        self.open_count += 1
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close_count += 1
        return False

    def login(self, username, password):
        if self.fail_navigation:
            raise SessionFailure("Timed out loading /", details="timeout")
        if (username, password) != (self.VALID_USERNAME, self.VALID_PASSWORD):
            raise LoginFailed("Invalid Wilma credentials")
        self.current = self.pages["/"]

    def navigate(self, path="/"):
        self.visited.append(path)
        if path not in self.pages:
            raise SessionFailure(f"Could not load {path}")
        self.current = self.pages[path]

    def soup(self):
        return make_soup(self.current)

    def wait_for(self, selector, timeout=10):
        element = self.soup().select_one(selector)
        if element is None:
            raise TimeoutException(f"waiting for {selector}")
        return element

    def wait_until_gone(self, selector, timeout=10):
        return True

    def is_visible(self, selector):
        return self.soup().select_one(selector) is not None

    def click(self, selector):
        self.clicked.append(selector)

    def pause(self, seconds):
        pass


@pytest.fixture
def fake_session():
    return FakeSession()
