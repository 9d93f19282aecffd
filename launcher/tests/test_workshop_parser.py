"""
Tests für das Parsen von Workshop-Seiten und den HTTP-Fetcher.
"""

import urllib.error
from unittest.mock import MagicMock, patch

import pytest

from reforger_launcher.errors import WorkshopNotFound, WorkshopUnreachable
from reforger_launcher.workshop import (
    HttpWorkshopFetcher,
    extract_workshop_id,
    parse_item_page,
    parse_mod_id_input,
    parse_scenarios_page,
    scenario_display_name,
)

ROOT_PAGE = """
<html><head><title>RHS - Status Quo</title></head>
<body>
  <div class="header"><a href="/workshop/AAAAAAAAAAAAAAAA-Related">Related</a></div>
  <p>ID 595F2BF2F44836FB</p>
  <section>
    <h2>Dependencies</h2>
    <a href="https://reforger.armaplatform.com/workshop/5AAAC70D754245DD-Some-Mod">Some Mod</a>
    <a href="/workshop/5C9758250C8C56F1-Other-Mod">Other Mod</a>
  </section>
</body></html>
"""

STATE_PAGE = """
<html><body>
<script id="__WORKSHOP_STATE__" type="application/json">
{"workshopId": "595F2BF2F44836FB", "name": "RHS - Status Quo",
 "dependencies": ["5AAAC70D754245DD",
                  "https://reforger.armaplatform.com/workshop/5C9758250C8C56F1-Other-Mod",
                  "595F2BF2F44836FB", "5AAAC70D754245DD"]}
</script>
<a href="/workshop/BBBBBBBBBBBBBBBB">unrelated</a>
</body></html>
"""

SCENARIOS_PAGE = """
<html><body>
<table>
  <tr><th>Name</th><th>Scenario ID</th></tr>
  <tr><td>MSV</td><td><code>{C5EAD55037EB4751}Missions/RHS_CombatOps_MSV.conf</code></td></tr>
  <tr><td>Cain</td><td><code>{731B585620A3F461}Missions/Coop_CombatOps_Cain_Plus.conf</code></td></tr>
  <tr><td>MSV again</td><td><code>{C5EAD55037EB4751}Missions/RHS_CombatOps_MSV.conf</code></td></tr>
</table>
</body></html>
"""


class TestIds:
    def test_extract_from_url(self):
        url = "https://reforger.armaplatform.com/workshop/595F2BF2F44836FB-RHS-StatusQuo"
        assert extract_workshop_id(url) == "595F2BF2F44836FB"

    def test_extract_from_url_without_id(self):
        assert extract_workshop_id("https://reforger.armaplatform.com/workshop") is None

    def test_parse_input_accepts_bare_lowercase_id(self):
        assert parse_mod_id_input("  595f2bf2f44836fb ") == "595F2BF2F44836FB"

    def test_parse_input_rejects_garbage(self):
        assert parse_mod_id_input("not-a-mod") is None
        assert parse_mod_id_input("595F2BF2F44836") is None

    def test_scenario_display_name(self):
        assert scenario_display_name("{C5EAD55037EB4751}Missions/RHS_CombatOps_MSV.conf") == "RHS_CombatOps_MSV"
        assert scenario_display_name("plain") == "plain"


class TestItemPage:
    def test_dependency_section_links(self):
        item = parse_item_page(ROOT_PAGE)

        assert item.id == "595F2BF2F44836FB"
        assert item.name == "RHS - Status Quo"
        # the header link is outside the dependencies section
        assert item.dependencies == ("5AAAC70D754245DD", "5C9758250C8C56F1")

    def test_embedded_state_wins(self):
        item = parse_item_page(STATE_PAGE)

        assert item.id == "595F2BF2F44836FB"
        assert item.name == "RHS - Status Quo"
        assert item.dependencies == ("5AAAC70D754245DD", "5C9758250C8C56F1")

    def test_falls_back_to_all_workshop_links(self):
        html = """
        <html><body><p>ID 1111111111111111</p>
        <a href="/workshop/2222222222222222-A">A</a>
        <a href="/workshop/1111111111111111-Self">self</a>
        <a href="/workshop/3333333333333333-B">B</a>
        </body></html>
        """
        item = parse_item_page(html)
        assert item.dependencies == ("2222222222222222", "3333333333333333")

    def test_expected_id_is_used_as_hint(self):
        item = parse_item_page("<html><body>no id here</body></html>", expected_id="ABCDEF0123456789")
        assert item.id == "ABCDEF0123456789"
        assert item.dependencies == ()

    def test_data_props_id(self):
        html = '<div data-props=\'{"workshopId": "ABCDEF0123456789"}\'></div>'
        assert parse_item_page(html).id == "ABCDEF0123456789"

    def test_missing_id_raises(self):
        with pytest.raises(ValueError):
            parse_item_page("<html><body>nothing</body></html>")


class TestScenariosPage:
    def test_scenarios_deduplicated_in_order(self):
        scenarios = parse_scenarios_page(SCENARIOS_PAGE)

        assert [s.id for s in scenarios] == [
            "{C5EAD55037EB4751}Missions/RHS_CombatOps_MSV.conf",
            "{731B585620A3F461}Missions/Coop_CombatOps_Cain_Plus.conf",
        ]
        assert scenarios[1].name == "Coop_CombatOps_Cain_Plus"

    def test_page_without_scenario_table(self):
        html = "<html><body>{C5EAD55037EB4751}Missions/RHS_CombatOps_MSV.conf</body></html>"
        assert parse_scenarios_page(html) == []


def _response(body: str):
    resp = MagicMock()
    resp.read.return_value = body.encode("utf-8")
    resp.headers.get_content_charset.return_value = "utf-8"
    cm = MagicMock()
    cm.__enter__.return_value = resp
    cm.__exit__.return_value = False
    return cm


class TestHttpWorkshopFetcher:
    @pytest.fixture
    def fetcher(self):
        return HttpWorkshopFetcher("https://reforger.example/", timeout=5)

    def test_fetch_with_scenarios(self, fetcher):
        pages = {
            "https://reforger.example/workshop/595F2BF2F44836FB": ROOT_PAGE,
            "https://reforger.example/workshop/595F2BF2F44836FB/scenarios": SCENARIOS_PAGE,
        }
        with patch("urllib.request.urlopen", side_effect=lambda req, timeout: _response(pages[req.full_url])) as urlopen:
            item = fetcher.fetch_item("595F2BF2F44836FB")

        assert urlopen.call_count == 2
        assert item.dependencies == ("5AAAC70D754245DD", "5C9758250C8C56F1")
        assert len(item.scenarios) == 2

    def test_fetch_without_scenarios_skips_second_request(self, fetcher):
        with patch("urllib.request.urlopen", return_value=_response(ROOT_PAGE)) as urlopen:
            item = fetcher.fetch_item("595F2BF2F44836FB", with_scenarios=False)

        assert urlopen.call_count == 1
        assert item.scenarios == ()

    def test_404_is_not_found(self, fetcher):
        err = urllib.error.HTTPError("https://reforger.example/workshop/X", 404, "Not Found", None, None)
        with patch("urllib.request.urlopen", side_effect=err):
            with pytest.raises(WorkshopNotFound):
                fetcher.fetch_item("595F2BF2F44836FB")

    def test_server_error_is_unreachable(self, fetcher):
        err = urllib.error.HTTPError("https://reforger.example/workshop/X", 503, "Unavailable", None, None)
        with patch("urllib.request.urlopen", side_effect=err):
            with pytest.raises(WorkshopUnreachable):
                fetcher.fetch_item("595F2BF2F44836FB")

    def test_connection_error_is_unreachable(self, fetcher):
        with patch("urllib.request.urlopen", side_effect=urllib.error.URLError("connection refused")):
            with pytest.raises(WorkshopUnreachable):
                fetcher.fetch_item("595F2BF2F44836FB")
