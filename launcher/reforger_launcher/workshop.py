"""
workshop.py: Arma Reforger workshop page client
------------------------------------------------
Extracts workshop ids from URLs, parses item and scenario pages, and
implements the `fetch_item` capability the resolver depends on.
"""

from __future__ import annotations

import json
import re
import urllib.error
import urllib.request
from html.parser import HTMLParser
from typing import List, Optional, Protocol, Tuple

from .errors import WorkshopNotFound, WorkshopUnreachable
from .logging_setup import get_logger
from .models import ScenarioRef, WorkshopItem

log = get_logger("reforger.launcher.workshop")

WORKSHOP_ID_RE = re.compile(r"^[A-F0-9]{16}$")
_URL_ID_RE = re.compile(r"/workshop/([A-F0-9]{16})")
_HTML_ID_RE = re.compile(r"\bID\s+([A-F0-9]{16})\b")
_SCENARIO_RE = re.compile(r"\{[A-F0-9]{16}\}Missions/[^\s\"'<>]+\.conf")

STATE_SCRIPT_ID = "__WORKSHOP_STATE__"


class WorkshopFetcher(Protocol):
    def fetch_item(self, item_id: str, *, with_scenarios: bool = True) -> WorkshopItem:
        ...


def is_workshop_id(value: str) -> bool:
    return bool(WORKSHOP_ID_RE.match(value or ""))


def extract_workshop_id(url: str) -> Optional[str]:
    m = _URL_ID_RE.search(url or "")
    return m.group(1) if m else None


def parse_mod_id_input(text: str) -> Optional[str]:
    """Accept either a workshop URL or a bare 16-digit hex id."""
    s = (text or "").strip()
    if "/workshop/" in s:
        return extract_workshop_id(s)
    if is_workshop_id(s.upper()):
        return s.upper()
    return None


def scenario_display_name(scenario_id: str) -> str:
    """"{GUID}Missions/Foo_Bar.conf" -> "Foo_Bar"."""
    marker = "Missions/"
    idx = scenario_id.find(marker)
    if idx < 0:
        return scenario_id
    name = scenario_id[idx + len(marker):]
    if name.endswith(".conf"):
        name = name[: -len(".conf")]
    return name or scenario_id


class _PageScanner(HTMLParser):
    """Single pass over a workshop page collecting everything the parsers need."""

    _BLOCK_TAGS = {"section", "div"}

    def __init__(self):
        super().__init__(convert_charrefs=True)
        self.state_json: Optional[str] = None
        self.data_props: List[str] = []
        self.links: List[str] = []
        self.title = ""
        # [tag, text_parts, links], kept in document (open) order
        self.blocks: List[list] = []
        self._open: List[list] = []
        self._in_state_script = False
        self._in_title = False

    def handle_starttag(self, tag, attrs):
        a = dict(attrs)
        if "data-props" in a and a["data-props"]:
            self.data_props.append(a["data-props"])
        if tag == "script" and a.get("id") == STATE_SCRIPT_ID:
            self._in_state_script = True
            self.state_json = ""
        elif tag == "title":
            self._in_title = True
        elif tag == "a":
            href = a.get("href") or ""
            if "/workshop/" in href:
                self.links.append(href)
                for block in self._open:
                    block[2].append(href)
        if tag in self._BLOCK_TAGS:
            block = [tag, [], []]
            self.blocks.append(block)
            self._open.append(block)

    def handle_endtag(self, tag):
        if tag == "script":
            self._in_state_script = False
        elif tag == "title":
            self._in_title = False
        elif tag in self._BLOCK_TAGS:
            # pop up to the matching block; tolerate unbalanced markup
            for i in range(len(self._open) - 1, -1, -1):
                if self._open[i][0] == tag:
                    del self._open[i:]
                    break

    def handle_data(self, data):
        if self._in_state_script:
            self.state_json += data
            return
        if self._in_title:
            self.title += data
        for block in self._open:
            block[1].append(data)

    def dependency_section_links(self) -> List[str]:
        for _tag, text, links in self.blocks:
            if links and "Dependencies" in "".join(text):
                return links
        return []


def _load_json(raw: Optional[str]) -> Optional[dict]:
    if not raw:
        return None
    try:
        value = json.loads(raw.strip())
    except ValueError:
        return None
    return value if isinstance(value, dict) else None


def _first_str(value: dict, keys: Tuple[str, ...]) -> Optional[str]:
    for k in keys:
        v = value.get(k)
        if isinstance(v, str) and v:
            return v
    return None


def _dedupe(values: List[str]) -> List[str]:
    seen = set()
    out = []
    for v in values:
        if v not in seen:
            seen.add(v)
            out.append(v)
    return out


def _dependency_id(entry: str) -> Optional[str]:
    if is_workshop_id(entry):
        return entry
    return extract_workshop_id(entry)


def parse_item_page(html: str, expected_id: Optional[str] = None) -> WorkshopItem:
    """
    Parse a workshop item page.

    Lookup order for the id: caller hint, embedded state JSON, "ID <hex>" text,
    data-props JSON. Dependencies come from the state JSON, otherwise from the
    links inside the "Dependencies" section, otherwise from every workshop link.

    Raises:
        ValueError: if no workshop id can be determined.
    """
    scanner = _PageScanner()
    scanner.feed(html)
    scanner.close()

    item_id = expected_id
    name: Optional[str] = None
    dep_entries: List[str] = []

    state = _load_json(scanner.state_json)
    if state is not None:
        if item_id is None:
            item_id = _first_str(state, ("workshopId", "id"))
        name = _first_str(state, ("name", "title"))
        deps = state.get("dependencies")
        if isinstance(deps, list):
            dep_entries = [d for d in deps if isinstance(d, str)]

    if item_id is None:
        m = _HTML_ID_RE.search(html)
        if m:
            item_id = m.group(1)

    if item_id is None:
        for raw in scanner.data_props:
            props = _load_json(raw)
            if props is not None:
                item_id = _first_str(props, ("workshopId", "id"))
                if item_id:
                    break

    if not dep_entries:
        dep_entries = scanner.dependency_section_links() or scanner.links

    if not item_id:
        raise ValueError("workshop id not found")

    dependencies = []
    for entry in dep_entries:
        dep = _dependency_id(entry)
        if dep and dep != item_id:
            dependencies.append(dep)

    return WorkshopItem(
        id=item_id,
        name=name or scanner.title.strip(),
        dependencies=tuple(_dedupe(dependencies)),
    )


def parse_scenarios_page(html: str) -> List[ScenarioRef]:
    if "Scenario ID" not in html:
        return []
    ids = _dedupe(_SCENARIO_RE.findall(html))
    return [ScenarioRef(id=s, name=scenario_display_name(s)) for s in ids]


class HttpWorkshopFetcher:
    """Fetches workshop pages over HTTPS and turns them into WorkshopItems."""

    def __init__(self, base_url: str, timeout: float = 30.0, user_agent: str = "reforger-launcher"):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.user_agent = user_agent

    def item_url(self, item_id: str) -> str:
        return f"{self.base_url}/workshop/{item_id}"

    def _get(self, item_id: str, url: str) -> str:
        req = urllib.request.Request(url, headers={"User-Agent": self.user_agent})
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                charset = response.headers.get_content_charset() or "utf-8"
                return response.read().decode(charset, errors="replace")
        except urllib.error.HTTPError as e:
            if e.code == 404:
                raise WorkshopNotFound(item_id, f"{url} returned 404") from e
            raise WorkshopUnreachable(item_id, f"{url} returned {e.code}") from e
        except (urllib.error.URLError, TimeoutError, OSError) as e:
            raise WorkshopUnreachable(item_id, f"request to {url} failed: {e}") from e

    def fetch_item(self, item_id: str, *, with_scenarios: bool = True) -> WorkshopItem:
        url = self.item_url(item_id)
        log.debug("Fetching workshop item %s (%s)", item_id, url)
        html = self._get(item_id, url)
        try:
            item = parse_item_page(html, expected_id=item_id)
        except ValueError as e:
            raise WorkshopUnreachable(item_id, f"unparseable page: {e}") from e

        if not with_scenarios:
            return item

        scenarios = parse_scenarios_page(self._get(item_id, f"{url}/scenarios"))
        return item.model_copy(update={"scenarios": tuple(scenarios)})

