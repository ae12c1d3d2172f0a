# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "httpx",
#   "pandas",
#   "playwright",
#   "pyyaml",
#   "rich",
# ]
# ///
"""Sitemap Accessibility Batch Audit CLI Tool.

Fetches every URL listed in one or more XML sitemaps, audits each page in a
headless Chromium with axe-core and HTML_CodeSniffer, and writes one HTML
report per page (or prints the results to the console).
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import os
import re
import sys
import tomllib
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from html import escape
from pathlib import Path
from typing import Callable
from urllib.parse import urlparse
import xml.etree.ElementTree as ET

import httpx
import pandas as pd
import yaml
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright
from rich.console import Console, Group
from rich.markup import escape as escape_markup
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn
from rich.rule import Rule
from rich.text import Text

__version__ = "1.0.0"

err_console = Console(stderr=True)
out_console = Console()

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

CONFIG_NAME = "sitemap-a11y"
REPORTER_ENV_VAR = "SITEMAP_A11Y_REPORTER"

VALID_REPORTERS = ("console", "html")
VALID_RUNNERS = ("axe", "htmlcs")
VALID_STANDARDS = ("WCAG2A", "WCAG2AA", "WCAG2AAA", "Section508")

DEFAULT_REPORTER = "html"
DEFAULT_DESTINATION = "./output"
DEFAULT_STANDARD = "WCAG2AA"
DEFAULT_RUNNERS = ["axe", "htmlcs"]
DEFAULT_METHOD = "GET"
DEFAULT_VIEWPORT = {"width": 1280, "height": 1024}
DEFAULT_TIMEOUT_MS = 30000

CONFIG_ERROR_EXIT_CODE = 1
TASK_FAILURE_EXIT_CODE = 1

CONFIG_FILENAMES = [
    "pyproject.toml",
    f".{CONFIG_NAME}rc",
    f".{CONFIG_NAME}rc.json",
    f".{CONFIG_NAME}rc.yaml",
    f".{CONFIG_NAME}rc.yml",
    f".{CONFIG_NAME}rc.toml",
    f"{CONFIG_NAME}.toml",
    "sitemaps.txt",
]
CONFIG_SEARCH_PATHS = [
    Path.cwd(),
    Path.home() / ".config" / CONFIG_NAME,
]

# Config file key -> argparse dest. snake_case dest names are accepted as keys too.
CONFIG_KEY_MAP = {
    "sitemaps": "sitemaps",
    "standard": "standard",
    "actions": "actions",
    "reporter": "reporter",
    "includeNotices": "include_notices",
    "method": "method",
    "runners": "runners",
    "viewport": "viewport",
    "destination": "destination",
    "ignore": "ignore",
    "timeout": "timeout",
    "wait": "wait",
    "sitemapLimit": "sitemap_limit",
    "sitemapFilter": "sitemap_filter",
    "maxConcurrency": "max_concurrency",
    "summary": "summary",
    "verbose": "verbose",
}

SITEMAP_NS = {"sm": "http://www.sitemaps.org/schemas/sitemap/0.9"}
SITEMAP_FETCH_TIMEOUT = 30
MAX_SITEMAP_DEPTH = 3

AXE_SCRIPT_URL = "https://cdnjs.cloudflare.com/ajax/libs/axe-core/4.9.1/axe.min.js"
HTMLCS_SCRIPT_URL = "https://squizlabs.github.io/HTML_CodeSniffer/build/HTMLCS.js"

AXE_STANDARD_TAGS = {
    "WCAG2A": ["wcag2a", "wcag21a", "best-practice"],
    "WCAG2AA": ["wcag2a", "wcag21a", "wcag2aa", "wcag21aa", "best-practice"],
    "WCAG2AAA": ["wcag2a", "wcag21a", "wcag2aa", "wcag21aa", "wcag2aaa", "best-practice"],
    "Section508": ["section508"],
}
AXE_IMPACT_TYPES = {
    "critical": "error",
    "serious": "error",
    "moderate": "warning",
    "minor": "notice",
}
HTMLCS_TYPES = {1: "error", 2: "warning", 3: "notice"}
ISSUE_TYPE_CODES = {"error": 1, "warning": 2, "notice": 3}
HTMLCS_CONTEXT_LIMIT = 300

AXE_RUN_SCRIPT = """
async (tags) => {
    const result = await axe.run(document, {
        runOnly: {type: 'tag', values: tags},
        resultTypes: ['violations', 'incomplete']
    });
    return {violations: result.violations, incomplete: result.incomplete};
}
"""

HTMLCS_RUN_SCRIPT = """
([standard, contextLimit]) => new Promise((resolve, reject) => {
    const selectorFor = (element) => {
        if (!element || element.nodeType !== Node.ELEMENT_NODE) {
            return '';
        }
        const parts = [];
        let node = element;
        while (node && node.nodeType === Node.ELEMENT_NODE) {
            if (node.id) {
                parts.unshift('#' + CSS.escape(node.id));
                break;
            }
            let part = node.tagName.toLowerCase();
            const parent = node.parentElement;
            if (parent) {
                const siblings = Array.from(parent.children);
                if (siblings.filter((child) => child.tagName === node.tagName).length > 1) {
                    part += ':nth-child(' + (siblings.indexOf(node) + 1) + ')';
                }
            }
            parts.unshift(part);
            node = parent;
        }
        return parts.join(' > ');
    };
    HTMLCS.process(standard, document, () => {
        resolve(HTMLCS.getMessages().map((message) => {
            const element = message.element;
            let context = null;
            if (element && element.outerHTML) {
                context = element.outerHTML.length > contextLimit
                    ? element.outerHTML.slice(0, contextLimit) + '...'
                    : element.outerHTML;
            }
            return {
                code: message.code,
                type: message.type,
                message: message.msg,
                context: context,
                selector: selectorFor(element)
            };
        }));
    }, (error) => reject(new Error('HTML_CodeSniffer failed: ' + error)));
})
"""

URL_CONDITION_SCRIPT = """
({subject, value, negated}) => {
    const location = window.location;
    const current = {
        fragment: location.hash,
        hash: location.hash,
        host: location.host,
        path: location.pathname,
        url: location.href
    }[subject];
    return negated ? current !== value : current === value;
}
"""

# Ordered: URL waits must be tried before element waits.
ACTION_PATTERNS = [
    ("navigate", re.compile(r"^navigate to (?P<url>.+)$", re.IGNORECASE)),
    ("click", re.compile(r"^click(?: element)? (?P<selector>.+)$", re.IGNORECASE)),
    ("set_field", re.compile(r"^set field (?P<selector>.+?) to (?P<value>.+)$", re.IGNORECASE)),
    ("clear_field", re.compile(r"^clear field (?P<selector>.+)$", re.IGNORECASE)),
    ("check_field", re.compile(r"^(?P<state>check|uncheck) field (?P<selector>.+)$", re.IGNORECASE)),
    ("screen_capture", re.compile(r"^(?:screen[ -]?capture|capture screen) (?P<path>.+)$", re.IGNORECASE)),
    (
        "wait_for_url",
        re.compile(
            r"^wait for (?P<subject>fragment|hash|host|path|url) to (?P<negated>not )?be (?P<value>.+)$",
            re.IGNORECASE,
        ),
    ),
    (
        "wait_for_element",
        re.compile(
            r"^wait for(?: element)? (?P<selector>.+?) to be (?P<state>added|removed|visible|hidden)$",
            re.IGNORECASE,
        ),
    ),
]
ELEMENT_WAIT_STATES = {
    "added": "attached",
    "removed": "detached",
    "visible": "visible",
    "hidden": "hidden",
}

SUMMARY_COLUMNS = ["url", "document_title", "errors", "warnings", "notices"]


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class SitemapError(Exception):
    """Raised when a sitemap cannot be fetched or parsed."""


class AuditError(Exception):
    """Raised when a page audit, runner or action fails."""


# ---------------------------------------------------------------------------
# Data Model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AuditConfig:
    """Resolved run configuration. Built once in main() and passed explicitly."""

    sitemaps: tuple[str, ...]
    reporter: str = DEFAULT_REPORTER
    destination: Path = field(default_factory=lambda: Path(DEFAULT_DESTINATION).resolve())
    standard: str = DEFAULT_STANDARD
    runners: tuple[str, ...] = tuple(DEFAULT_RUNNERS)
    viewport: dict = field(default_factory=lambda: dict(DEFAULT_VIEWPORT))
    method: str = DEFAULT_METHOD
    actions: tuple[str, ...] = ()
    include_notices: bool = False
    ignore: tuple[str, ...] = ()
    timeout: int = DEFAULT_TIMEOUT_MS
    wait: int = 0
    sitemap_limit: int | None = None
    sitemap_filter: str | None = None
    max_concurrency: int = 0
    summary: bool = False
    show_progress: bool = False
    verbose: bool = False


@dataclass(frozen=True)
class SitemapTask:
    """One sitemap's worth of work: where its reports go and which pages to audit."""

    sitemap_url: str
    folder_name: str
    urls: tuple[str, ...]


# ---------------------------------------------------------------------------
# Config & Profile
# ---------------------------------------------------------------------------


def _fail(message: str) -> None:
    err_console.print(f"[red]Error:[/red] {escape_markup(message)}")
    sys.exit(CONFIG_ERROR_EXIT_CODE)


def _pyproject_has_section(path: Path) -> bool:
    try:
        with open(path, "rb") as fh:
            data = tomllib.load(fh)
    except (tomllib.TOMLDecodeError, OSError):
        return False
    return CONFIG_NAME in data.get("tool", {})


def discover_config_path() -> Path | None:
    """Find the first existing config file in search paths.

    pyproject.toml only counts when it carries a [tool.sitemap-a11y] table.
    """
    for search_dir in CONFIG_SEARCH_PATHS:
        for filename in CONFIG_FILENAMES:
            candidate = search_dir / filename
            if not candidate.is_file():
                continue
            if filename == "pyproject.toml" and not _pyproject_has_section(candidate):
                continue
            return candidate
    return None


def load_config(config_path: Path | None) -> dict:
    """Parse a config file and return its settings as a dict.

    The loader is picked from the file name: TOML for pyproject.toml and
    *.toml, JSON for *.json, a whitespace-separated sitemap list for *.txt,
    and YAML (which also reads JSON) for everything else.
    """
    if config_path is None:
        return {}
    try:
        if config_path.suffix == ".toml":
            with open(config_path, "rb") as fh:
                data = tomllib.load(fh)
            if config_path.name == "pyproject.toml":
                data = data.get("tool", {}).get(CONFIG_NAME, {})
        elif config_path.suffix == ".json":
            data = json.loads(config_path.read_text())
        elif config_path.suffix == ".txt":
            data = config_path.read_text().split()
        else:
            data = yaml.safe_load(config_path.read_text())
    except (tomllib.TOMLDecodeError, json.JSONDecodeError, yaml.YAMLError) as exc:
        _fail(f"malformed config file {config_path}: {exc}")
    except OSError as exc:
        _fail(f"cannot read config file {config_path}: {exc}")

    if data is None:
        return {}
    # A bare list or string is a sitemap list.
    if isinstance(data, (list, str)):
        return {"sitemaps": data}
    if not isinstance(data, dict):
        _fail(f"config file {config_path} must contain a mapping, got {type(data).__name__}")
    return data


def _as_list(value) -> list:
    if value is None:
        return []
    if isinstance(value, str):
        return value.split()
    if isinstance(value, (list, tuple, set)):
        return list(value)
    return [value]


def normalize_sitemaps(values) -> list[str]:
    """Stringify, trim and drop empty sitemap entries; collapse duplicates."""
    cleaned = (str(value).strip() for value in _as_list(values))
    return list(dict.fromkeys(value for value in cleaned if value))


def apply_profile(args: argparse.Namespace, config: dict, profile_name: str | None) -> argparse.Namespace:
    """Merge config settings and optional profile into args.

    Resolution order (highest priority wins):
      1. Explicit CLI flags
      2. Profile values
      3. Top-level settings from config
      4. SITEMAP_A11Y_REPORTER (reporter only)
      5. Built-in defaults (already in args)

    Sitemaps are never overridden: CLI, config and profile lists are unioned.
    """
    settings = {key: value for key, value in config.items() if key != "profiles"}
    profiles = config.get("profiles") or {}
    if not isinstance(profiles, dict):
        _fail(f"'profiles' must be a mapping of profile names to settings, got {type(profiles).__name__}")
    profile = {}
    if profile_name:
        if profile_name not in profiles:
            available = ", ".join(str(name) for name in profiles) if profiles else "(none)"
            _fail(f"profile '{profile_name}' not found in config. Available: {available}")
        profile = profiles[profile_name] or {}
        if not isinstance(profile, dict):
            _fail(f"profile '{profile_name}' must be a mapping, got {type(profile).__name__}")

    cli_explicit = set(getattr(args, "_explicit_args", []))
    known_dests = set(CONFIG_KEY_MAP.values())
    sitemaps = _as_list(getattr(args, "sitemaps", None))
    config_set: set[str] = set()

    # Settings first so profile values land on top.
    for layer in (settings, profile):
        for key, value in layer.items():
            arg_dest = CONFIG_KEY_MAP.get(key) or (key if key in known_dests else None)
            if arg_dest is None:
                err_console.print(f"[yellow]Warning:[/yellow] ignoring unknown config key '{escape_markup(str(key))}'")
                continue
            if arg_dest == "sitemaps":
                sitemaps.extend(_as_list(value))
                continue
            if arg_dest in cli_explicit:
                continue  # CLI flag takes priority
            setattr(args, arg_dest, value)
            config_set.add(arg_dest)

    args.sitemaps = normalize_sitemaps(sitemaps)

    if "reporter" not in cli_explicit and "reporter" not in config_set:
        env_reporter = os.environ.get(REPORTER_ENV_VAR)
        if env_reporter:
            args.reporter = env_reporter

    return args


def _parse_viewport(value) -> dict:
    if isinstance(value, str):
        match = re.fullmatch(r"\s*(\d+)\s*[xX]\s*(\d+)\s*", value)
        if not match:
            _fail(f"invalid viewport '{value}', expected WIDTHxHEIGHT")
        return {"width": int(match.group(1)), "height": int(match.group(2))}
    if isinstance(value, dict) and "width" in value and "height" in value:
        try:
            return {"width": int(value["width"]), "height": int(value["height"])}
        except (TypeError, ValueError):
            pass
    _fail(f"invalid viewport {value!r}, expected a mapping with integer width and height")


def _non_negative_int(name: str, value) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        _fail(f"{name} must be an integer, got {value!r}")
    if number < 0:
        _fail(f"{name} must not be negative, got {number}")
    return number


def build_audit_config(args: argparse.Namespace) -> AuditConfig:
    """Validate merged args and freeze them into an AuditConfig."""
    reporter = str(args.reporter).strip().lower()
    if reporter not in VALID_REPORTERS:
        _fail(f"invalid reporter '{args.reporter}'. Choose from: {', '.join(VALID_REPORTERS)}")

    standard = str(args.standard).strip()
    if standard not in VALID_STANDARDS:
        _fail(f"invalid standard '{args.standard}'. Choose from: {', '.join(VALID_STANDARDS)}")

    runners = tuple(str(runner).strip().lower() for runner in _as_list(args.runners))
    unknown_runners = [runner for runner in runners if runner not in VALID_RUNNERS]
    if not runners or unknown_runners:
        _fail(f"invalid runners {list(runners)}. Choose from: {', '.join(VALID_RUNNERS)}")

    raw_actions = [args.actions] if isinstance(args.actions, str) else (args.actions or [])
    actions = tuple(str(action).strip() for action in raw_actions if str(action).strip())
    for action in actions:
        try:
            parse_action(action)
        except AuditError as exc:
            _fail(str(exc))

    method = str(args.method).strip().upper()
    if not method:
        _fail("method must not be empty")

    sitemap_filter = args.sitemap_filter or None
    if sitemap_filter:
        try:
            re.compile(sitemap_filter)
        except re.error as exc:
            _fail(f"invalid sitemap filter regex '{sitemap_filter}': {exc}")

    sitemap_limit = None
    if args.sitemap_limit is not None:
        sitemap_limit = _non_negative_int("sitemap limit", args.sitemap_limit) or None

    # Progress output would interleave with console reports on the terminal.
    show_progress = reporter == "html" and not args.no_progress

    return AuditConfig(
        sitemaps=tuple(args.sitemaps),
        reporter=reporter,
        destination=Path(args.destination).expanduser().resolve(),
        standard=standard,
        runners=runners,
        viewport=_parse_viewport(args.viewport),
        method=method,
        actions=actions,
        include_notices=bool(args.include_notices),
        ignore=tuple(str(code) for code in _as_list(args.ignore)),
        timeout=_non_negative_int("timeout", args.timeout),
        wait=_non_negative_int("wait", args.wait),
        sitemap_limit=sitemap_limit,
        sitemap_filter=sitemap_filter,
        max_concurrency=_non_negative_int("max concurrency", args.max_concurrency),
        summary=bool(args.summary),
        show_progress=show_progress,
        verbose=bool(args.verbose),
    )


# ---------------------------------------------------------------------------
# CLI Argument Parser
# ---------------------------------------------------------------------------


class TrackingAction(argparse.Action):
    """Argparse action that records which flags were explicitly provided."""

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, values)
        explicit = getattr(namespace, "_explicit_args", [])
        explicit.append(self.dest)
        namespace._explicit_args = explicit


class TrackingStoreTrueAction(argparse.Action):
    """Like store_true but tracks that the flag was explicitly set."""

    def __init__(self, option_strings, dest, default=False, required=False, help=None):
        super().__init__(option_strings=option_strings, dest=dest, nargs=0, const=True, default=default, required=required, help=help)

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, True)
        explicit = getattr(namespace, "_explicit_args", [])
        explicit.append(self.dest)
        namespace._explicit_args = explicit


def build_argument_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog=CONFIG_NAME,
        description="Run accessibility audits for every page listed in one or more sitemaps",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Audit two sitemaps and write HTML reports to ./output
  sitemap-a11y --sitemaps https://example.com/sitemap.xml https://blog.example.com/sitemap.xml

  # Print results to the console instead
  sitemap-a11y --reporter console --sitemaps https://example.com/sitemap.xml

  # Use sitemaps and audit options from .sitemap-a11yrc.yaml, with a named profile
  sitemap-a11y --profile staging
        """,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-c", "--config", dest="config", action=TrackingAction, default=None, help="Path to config file (skips discovery)")
    parser.add_argument("-p", "--profile", dest="profile", action=TrackingAction, default=None, help="Named profile from config file")
    parser.add_argument("-r", "--reporter", dest="reporter", action=TrackingAction, default=DEFAULT_REPORTER, choices=VALID_REPORTERS, help=f"Reporter: console or html (or set {REPORTER_ENV_VAR})")
    parser.add_argument("-d", "--destination", dest="destination", action=TrackingAction, default=DEFAULT_DESTINATION, help="Output directory for HTML reports (default: ./output)")
    parser.add_argument("-s", "--sitemaps", dest="sitemaps", action="extend", nargs="+", default=[], metavar="URL", help="One or more sitemap URLs (repeatable)")
    parser.add_argument("--standard", dest="standard", action=TrackingAction, default=DEFAULT_STANDARD, choices=VALID_STANDARDS, help="Accessibility standard (default: WCAG2AA)")
    parser.add_argument("--runners", dest="runners", action=TrackingAction, nargs="+", default=DEFAULT_RUNNERS, choices=VALID_RUNNERS, help="Rule engines to run")
    parser.add_argument("--viewport", dest="viewport", action=TrackingAction, default=dict(DEFAULT_VIEWPORT), help="Viewport as WIDTHxHEIGHT (default: 1280x1024)")
    parser.add_argument("--method", dest="method", action=TrackingAction, default=DEFAULT_METHOD, help="HTTP method for page loads (default: GET)")
    parser.add_argument("--include-notices", dest="include_notices", action=TrackingStoreTrueAction, default=False, help="Include notice-level issues in reports")
    parser.add_argument("--ignore", dest="ignore", action=TrackingAction, nargs="+", default=[], help="Issue codes or types to leave out of reports")
    parser.add_argument("--timeout", dest="timeout", action=TrackingAction, type=int, default=DEFAULT_TIMEOUT_MS, help="Page load and action timeout in ms (default: 30000)")
    parser.add_argument("--wait", dest="wait", action=TrackingAction, type=int, default=0, help="Milliseconds to wait after page load before auditing")
    parser.add_argument("--sitemap-limit", dest="sitemap_limit", action=TrackingAction, type=int, default=None, help="Max URLs to audit per sitemap")
    parser.add_argument("--sitemap-filter", dest="sitemap_filter", action=TrackingAction, default=None, help="Regex to filter sitemap URLs")
    parser.add_argument("--max-concurrency", dest="max_concurrency", action=TrackingAction, type=int, default=0, help="Max sitemaps processed at once (0 = unbounded)")
    parser.add_argument("--summary", dest="summary", action=TrackingStoreTrueAction, default=False, help="Write a per-sitemap CSV summary next to the HTML reports")
    parser.add_argument("--no-progress", dest="no_progress", action=TrackingStoreTrueAction, default=False, help="Disable the progress bar")
    parser.add_argument("-v", "--verbose", dest="verbose", action=TrackingStoreTrueAction, default=False, help="Verbose output to stderr")
    # Set from config files only.
    parser.set_defaults(actions=[])
    return parser


# ---------------------------------------------------------------------------
# Sitemap Handling
# ---------------------------------------------------------------------------


def folder_name_for(sitemap_url: str) -> str:
    """Derive the per-sitemap output folder from the sitemap host.

    Drops the first "www." and then the first remaining dot, so
    www.example.com becomes examplecom.
    """
    hostname = urlparse(sitemap_url).hostname or Path(sitemap_url).stem
    return hostname.replace("www.", "", 1).replace(".", "", 1)


async def _fetch_sitemap_content(source: str, client: httpx.AsyncClient) -> bytes:
    """Fetch raw sitemap XML from a URL or read it from a local file path.

    Bytes are returned so the XML parser decodes them per the document's
    encoding declaration.
    """
    if source.startswith(("http://", "https://")):
        response = await client.get(source)
        response.raise_for_status()
        return response.content
    return Path(source).read_bytes()


async def parse_sitemap_xml(xml_content: str | bytes, client: httpx.AsyncClient | None = None, verbose: bool = False, _depth: int = 0) -> list[str]:
    """Parse sitemap XML and return extracted URLs in document order.

    Handles both <urlset> and <sitemapindex> root elements.
    Recursively fetches child sitemaps from index files up to MAX_SITEMAP_DEPTH.
    """
    if _depth >= MAX_SITEMAP_DEPTH:
        err_console.print(f"[yellow]Warning:[/yellow] max sitemap depth ({MAX_SITEMAP_DEPTH}) reached, stopping recursion")
        return []

    try:
        root = ET.fromstring(xml_content)
    except ET.ParseError as exc:
        raise SitemapError(f"malformed sitemap XML: {exc}") from exc

    # Strip namespace from tag for easier comparison
    root_tag = root.tag.split("}")[-1] if "}" in root.tag else root.tag

    urls: list[str] = []

    if root_tag == "sitemapindex":
        # Try namespaced first, then non-namespaced
        sitemap_locs = root.findall("sm:sitemap/sm:loc", SITEMAP_NS)
        if not sitemap_locs:
            sitemap_locs = root.findall("sitemap/loc")
        for loc_elem in sitemap_locs:
            child_url = loc_elem.text.strip() if loc_elem.text else ""
            if not child_url:
                continue
            if verbose:
                err_console.print(f"  Following child sitemap: {child_url}")
            child_content = await _fetch_sitemap_content(child_url, client)
            urls.extend(await parse_sitemap_xml(child_content, client, verbose, _depth + 1))
    elif root_tag == "urlset":
        loc_elements = root.findall("sm:url/sm:loc", SITEMAP_NS)
        if not loc_elements:
            loc_elements = root.findall("url/loc")
        for loc_elem in loc_elements:
            url_text = loc_elem.text.strip() if loc_elem.text else ""
            if url_text:
                urls.append(url_text)
    else:
        raise SitemapError(f"unexpected sitemap root element <{root_tag}>")

    return urls


async def fetch_sitemap_urls(
    source: str,
    client: httpx.AsyncClient,
    limit: int | None = None,
    filter_pattern: str | None = None,
    verbose: bool = False,
) -> list[str]:
    """Fetch and filter URLs from a sitemap XML source.

    Args:
        source: URL or local file path to a sitemap.xml.
        client: HTTP client used for remote sitemaps.
        limit: Maximum number of URLs to return.
        filter_pattern: Regex pattern to filter URLs (keeps matches).
        verbose: Print progress to stderr.

    Network, HTTP status and XML errors propagate to the caller.
    """
    if verbose:
        err_console.print(f"  Fetching sitemap: {source}")
    xml_content = await _fetch_sitemap_content(source, client)
    urls = await parse_sitemap_xml(xml_content, client, verbose)

    if verbose:
        err_console.print(f"  Found {len(urls)} URL(s) in sitemap")

    if filter_pattern:
        pattern = re.compile(filter_pattern)
        urls = [u for u in urls if pattern.search(u)]
        if verbose:
            err_console.print(f"  {len(urls)} URL(s) after filter '{escape_markup(filter_pattern)}'")

    if limit is not None and limit > 0:
        urls = urls[:limit]
        if verbose:
            err_console.print(f"  Limited to {len(urls)} URL(s)")

    return urls


# ---------------------------------------------------------------------------
# File Names
# ---------------------------------------------------------------------------


def generate_file_name(url: str, today: date | None = None) -> str:
    """Build a filesystem-safe report name like 2026-3-7-examplecomabout.html."""
    today = today or date.today()
    slug = url.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug, flags=re.ASCII)
    slug = re.sub(r"[\s_-]+", "-", slug, flags=re.ASCII)
    slug = slug.strip("-").replace("httpswww", "", 1)
    return f"{today.year}-{today.month}-{today.day}-{slug}.html"


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


def parse_action(action: str) -> tuple[str, dict]:
    """Match an action string against the supported grammar.

    Returns the action name and its captured arguments.
    """
    for name, pattern in ACTION_PATTERNS:
        match = pattern.match(action.strip())
        if match:
            return name, match.groupdict()
    raise AuditError(f'Failed action: "{action}" does not match any known action')


async def run_action(page, action: str, timeout: int) -> None:
    """Execute a single action against an open page."""
    name, params = parse_action(action)
    try:
        if name == "navigate":
            await page.goto(params["url"], wait_until="load", timeout=timeout)
        elif name == "click":
            await page.click(params["selector"], timeout=timeout)
        elif name == "set_field":
            await page.fill(params["selector"], params["value"], timeout=timeout)
        elif name == "clear_field":
            await page.fill(params["selector"], "", timeout=timeout)
        elif name == "check_field":
            await page.set_checked(params["selector"], params["state"].lower() == "check", timeout=timeout)
        elif name == "screen_capture":
            await page.screenshot(path=params["path"], full_page=True)
        elif name == "wait_for_url":
            await page.wait_for_function(
                URL_CONDITION_SCRIPT,
                arg={
                    "subject": params["subject"].lower(),
                    "value": params["value"],
                    "negated": bool(params["negated"]),
                },
                timeout=timeout,
            )
        elif name == "wait_for_element":
            state = ELEMENT_WAIT_STATES[params["state"].lower()]
            await page.wait_for_selector(params["selector"], state=state, timeout=timeout)
    except PlaywrightError as exc:
        raise AuditError(f'Failed action: "{action}": {exc}') from exc


async def run_actions(page, actions, timeout: int) -> None:
    for action in actions:
        await run_action(page, action, timeout)


# ---------------------------------------------------------------------------
# Audit Engine
# ---------------------------------------------------------------------------


def _make_issue(code, issue_type, message, context, selector, runner, runner_extras=None) -> dict:
    return {
        "code": code or "",
        "type": issue_type,
        "typeCode": ISSUE_TYPE_CODES[issue_type],
        "message": message or "",
        "context": context,
        "selector": selector or "",
        "runner": runner,
        "runnerExtras": runner_extras or {},
    }


def _axe_issues(raw: dict | None) -> list[dict]:
    """Normalize axe-core violations and incomplete results into issues."""
    if not isinstance(raw, dict):
        raise AuditError(f"axe returned no results (got {type(raw).__name__})")
    issues = []
    for result_kind in ("violations", "incomplete"):
        for rule in raw.get(result_kind) or []:
            if result_kind == "incomplete":
                issue_type = "warning"
            else:
                issue_type = AXE_IMPACT_TYPES.get(rule.get("impact") or "", "error")
            extras = {
                "description": rule.get("description"),
                "impact": rule.get("impact"),
                "help": rule.get("help"),
                "helpUrl": rule.get("helpUrl"),
            }
            message = f"{rule.get('help', '')} ({rule.get('helpUrl', '')})"
            for node in rule.get("nodes") or []:
                selector = " ".join(str(target) for target in node.get("target") or [])
                issues.append(_make_issue(rule.get("id"), issue_type, message, node.get("html"), selector, "axe", extras))
    return issues


def _htmlcs_issues(messages: list[dict]) -> list[dict]:
    """Normalize HTML_CodeSniffer messages into issues."""
    issues = []
    for message in messages or []:
        issue_type = HTMLCS_TYPES.get(message.get("type"))
        if issue_type is None:
            continue
        issues.append(_make_issue(message.get("code"), issue_type, message.get("message"), message.get("context"), message.get("selector"), "htmlcs"))
    return issues


def filter_issues(issues: list[dict], include_notices: bool, ignore=()) -> list[dict]:
    """Drop notices (unless included) and anything whose code or type is ignored."""
    ignored = {str(value).lower() for value in ignore}
    return [
        issue
        for issue in issues
        if (include_notices or issue["type"] != "notice")
        and issue["type"] not in ignored
        and issue["code"].lower() not in ignored
    ]


def count_issue_types(issues: list[dict]) -> dict:
    counts = {"errors": 0, "warnings": 0, "notices": 0}
    for issue in issues:
        counts[f"{issue['type']}s"] += 1
    return counts


async def _run_axe(page, standard: str) -> list[dict]:
    await page.add_script_tag(url=AXE_SCRIPT_URL)
    raw = await page.evaluate(AXE_RUN_SCRIPT, AXE_STANDARD_TAGS[standard])
    return _axe_issues(raw)


async def _run_htmlcs(page, standard: str) -> list[dict]:
    await page.add_script_tag(url=HTMLCS_SCRIPT_URL)
    messages = await page.evaluate(HTMLCS_RUN_SCRIPT, [standard, HTMLCS_CONTEXT_LIMIT])
    return _htmlcs_issues(messages)


def _method_override(page, method: str):
    """Route handler that sends the page's first main-frame navigation with method.

    Matching on the request rather than its URL keeps the override working
    when the browser normalizes the URL (https://example.com -> https://example.com/).
    """
    overridden = False

    async def handler(route):
        nonlocal overridden
        request = route.request
        if not overridden and request.is_navigation_request() and request.frame == page.main_frame:
            overridden = True
            await route.continue_(method=method)
        else:
            await route.continue_()

    return handler


async def audit_page(page, url: str, config: AuditConfig) -> dict:
    """Load a URL in an open tab, run actions and runners, and return the result."""
    page.set_default_timeout(config.timeout)
    if config.method != "GET":
        await page.route("**/*", _method_override(page, config.method))

    await page.goto(url, wait_until="load", timeout=config.timeout)
    if config.wait:
        await page.wait_for_timeout(config.wait)
    await run_actions(page, config.actions, config.timeout)

    issues: list[dict] = []
    for runner in config.runners:
        try:
            if runner == "axe":
                issues.extend(await _run_axe(page, config.standard))
            elif runner == "htmlcs":
                issues.extend(await _run_htmlcs(page, config.standard))
            else:
                raise AuditError(f"unknown runner '{runner}'")
        except PlaywrightError as exc:
            raise AuditError(f"{runner} runner failed on {url}: {exc}") from exc

    return {
        "documentTitle": await page.title(),
        "pageUrl": page.url or url,
        "issues": filter_issues(issues, config.include_notices, config.ignore),
    }


# ---------------------------------------------------------------------------
# Reporters
# ---------------------------------------------------------------------------

ISSUE_STYLES = {"error": "bold red", "warning": "bold yellow", "notice": "bold cyan"}


def format_issues_table(result: dict) -> Group:
    """Format one audit result for the terminal."""
    page_url = result.get("pageUrl", "?")
    issues = result.get("issues", [])
    renderables = [Rule(Text(f"Results for URL: {page_url}"), align="left")]

    if not issues:
        renderables.append(Text("No issues found!", style="green"))

    for issue in issues:
        block = Text()
        block.append(f" • {issue['type'].capitalize()}: ", style=ISSUE_STYLES.get(issue["type"], "bold"))
        block.append(issue.get("message", ""))
        block.append(f"\n   ├── {issue.get('code', '')}", style="dim")
        block.append(f"\n   ├── {issue.get('selector') or '(no selector)'}", style="dim")
        block.append(f"\n   └── {issue.get('context') or '(no context)'}", style="dim")
        renderables.append(block)

    counts = count_issue_types(issues)
    renderables.append(Text(""))
    renderables.append(Text(f"{counts['errors']} Errors, {counts['warnings']} Warnings, {counts['notices']} Notices", style="bold"))
    return Group(*renderables)


def generate_html_report(result: dict) -> str:
    """Generate a self-contained HTML report for one audited page."""
    generated_at = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
    page_url = escape(result.get("pageUrl") or "")
    document_title = escape(result.get("documentTitle") or "") or page_url
    issues = result.get("issues", [])
    counts = count_issue_types(issues)

    issue_items = []
    for issue in issues:
        issue_type = escape(issue["type"])
        context = issue.get("context")
        context_html = f"<pre><code>{escape(context)}</code></pre>" if context else ""
        selector = issue.get("selector")
        selector_html = f'<p class="selector"><code>{escape(selector)}</code></p>' if selector else ""
        issue_items.append(f"""
        <li class="issue issue-{issue_type}">
            <h3><span class="badge {issue_type}">{issue_type}</span> {escape(issue.get("message", ""))}</h3>
            <p class="code">{escape(issue.get("code", ""))} <small>({escape(issue.get("runner", ""))})</small></p>
            {selector_html}
            {context_html}
        </li>""")
    issues_html = "\n".join(issue_items) if issue_items else '<p class="no-issues">No accessibility issues found.</p>'

    html = f"""<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="UTF-8">
<meta name="viewport" content="width=device-width, initial-scale=1.0">
<title>Accessibility Report for {document_title}</title>
<style>
    * {{ margin: 0; padding: 0; box-sizing: border-box; }}
    body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; background: #f5f5f5; color: #333; padding: 20px; max-width: 1100px; margin: 0 auto; }}
    h1 {{ font-size: 1.5rem; margin-bottom: 5px; }}
    h2 {{ font-size: 1.2rem; margin: 30px 0 15px; color: #555; }}
    h3 {{ font-size: 1rem; font-weight: 600; margin-bottom: 8px; }}
    .meta {{ color: #666; font-size: 0.85rem; margin-bottom: 25px; }}
    .meta a {{ color: #0b57d0; }}
    .cards {{ display: grid; grid-template-columns: repeat(auto-fit, minmax(180px, 1fr)); gap: 15px; margin-bottom: 30px; }}
    .card {{ background: #fff; border-radius: 8px; padding: 20px; box-shadow: 0 1px 3px rgba(0,0,0,0.1); text-align: center; }}
    .card .value {{ font-size: 2rem; font-weight: 700; }}
    .card .label {{ font-size: 0.8rem; color: #666; margin-top: 5px; }}
    .card .value.error {{ color: #c5221f; }}
    .card .value.warning {{ color: #9a6700; }}
    .card .value.notice {{ color: #0b57d0; }}
    .issues {{ list-style: none; }}
    .issue {{ background: #fff; border-radius: 8px; padding: 16px 20px; margin-bottom: 12px; box-shadow: 0 1px 3px rgba(0,0,0,0.1); border-left: 5px solid #999; }}
    .issue-error {{ border-left-color: #c5221f; }}
    .issue-warning {{ border-left-color: #9a6700; }}
    .issue-notice {{ border-left-color: #0b57d0; }}
    .badge {{ display: inline-block; font-size: 0.7rem; text-transform: uppercase; padding: 2px 8px; border-radius: 999px; color: #fff; background: #666; vertical-align: middle; }}
    .badge.error {{ background: #c5221f; }}
    .badge.warning {{ background: #9a6700; }}
    .badge.notice {{ background: #0b57d0; }}
    .code, .selector {{ font-size: 0.85rem; color: #555; margin-bottom: 6px; word-break: break-all; }}
    pre {{ background: #f8f9fa; border-radius: 4px; padding: 10px; font-size: 0.8rem; white-space: pre-wrap; word-break: break-all; }}
    .no-issues {{ background: #fff; border-radius: 8px; padding: 20px; color: #137333; font-weight: 600; }}
    footer {{ margin-top: 40px; font-size: 0.8rem; color: #666; text-align: center; }}
</style>
</head>
<body>
<h1>Accessibility Report for {document_title}</h1>
<p class="meta"><a href="{page_url}">{page_url}</a> &middot; Generated {generated_at}</p>

<div class="cards">
    <div class="card"><div class="value error">{counts["errors"]}</div><div class="label">Errors</div></div>
    <div class="card"><div class="value warning">{counts["warnings"]}</div><div class="label">Warnings</div></div>
    <div class="card"><div class="value notice">{counts["notices"]}</div><div class="label">Notices</div></div>
</div>

<h2>Issues</h2>
<ul class="issues">
    {issues_html}
</ul>

<footer>
    Generated by sitemap-a11y v{__version__}
</footer>
</body>
</html>"""
    return html


def write_html_report(result: dict, url: str, destination: Path, folder_name: str, today: date | None = None) -> Path:
    """Write one page's HTML report under destination/folder_name. Returns the file path.

    The file is named after the sitemap URL, not the page URL after redirects,
    so every audited sitemap entry gets its own report.
    """
    dir_path = Path(destination) / folder_name
    dir_path.mkdir(parents=True, exist_ok=True)
    html_path = dir_path / generate_file_name(url, today)
    html_path.write_text(generate_html_report(result), encoding="utf-8")
    return html_path


def report_result(result: dict, url: str, task: SitemapTask, config: AuditConfig) -> None:
    """Dispatch one audit result to the configured reporter."""
    if config.reporter == "html":
        html_path = write_html_report(result, url, config.destination, task.folder_name)
        if config.verbose:
            err_console.print(f"  Report written to: {html_path}")
    else:
        out_console.print(format_issues_table(result))


# ---------------------------------------------------------------------------
# Run Summary
# ---------------------------------------------------------------------------


def summarize_results(urls, results: list[dict]) -> pd.DataFrame:
    """Build a per-page issue count table for one sitemap."""
    rows = []
    for url, result in zip(urls, results):
        row = {"url": url, "document_title": result.get("documentTitle")}
        row.update(count_issue_types(result.get("issues", [])))
        rows.append(row)
    return pd.DataFrame(rows, columns=SUMMARY_COLUMNS)


def write_summary(dataframe: pd.DataFrame, destination: Path, folder_name: str, today: date | None = None) -> Path:
    """Write a summary DataFrame to CSV. Returns the file path."""
    today = today or date.today()
    output_path = Path(destination) / folder_name / f"{today.year}-{today.month}-{today.day}-summary.csv"
    output_path.parent.mkdir(parents=True, exist_ok=True)
    dataframe.to_csv(output_path, index=False)
    return output_path


def _print_task_summary(task: SitemapTask, dataframe: pd.DataFrame) -> None:
    """Print page and issue totals for one sitemap to stderr."""
    err_console.print(f"\nSummary for {task.sitemap_url}:")
    err_console.print(f"  Pages audited: {len(dataframe)}")
    err_console.print(f"  Errors:        {int(dataframe['errors'].sum())}")
    err_console.print(f"  Warnings:      {int(dataframe['warnings'].sum())}")
    err_console.print(f"  Notices:       {int(dataframe['notices'].sum())}")


# ---------------------------------------------------------------------------
# Audit Runner
# ---------------------------------------------------------------------------


async def _close_all(pages: list, browser) -> None:
    """Close every tab, then the browser, without letting one failure stop the rest."""
    for page in pages:
        try:
            await page.close()
        except PlaywrightError as exc:
            err_console.print(f"[yellow]Warning:[/yellow] failed to close tab: {escape_markup(str(exc))}")
    try:
        await browser.close()
    except PlaywrightError as exc:
        err_console.print(f"[yellow]Warning:[/yellow] failed to close browser: {escape_markup(str(exc))}")


async def run_sitemap_task(
    task: SitemapTask,
    config: AuditConfig,
    browser_type,
    on_result: Callable[[dict], None] | None = None,
) -> list[dict]:
    """Audit every page of one sitemap in a single browser, one tab per page.

    Pages are audited strictly in order and each result is reported as soon
    as it is available. Tabs and the browser are closed on every exit path.
    """
    browser = await browser_type.launch(headless=True)
    pages: list = []
    results: list[dict] = []
    try:
        for index, url in enumerate(task.urls):
            if config.verbose:
                err_console.print(f"  Auditing {url}")
            pages.append(await browser.new_page(viewport=dict(config.viewport)))
            results.append(await audit_page(pages[index], url, config))
            report_result(results[index], url, task, config)
            if on_result is not None:
                on_result(results[index])
    finally:
        await _close_all(pages, browser)
    return results


async def process_sitemap(
    sitemap_url: str,
    config: AuditConfig,
    browser_type,
    client: httpx.AsyncClient,
    semaphore: asyncio.Semaphore | None = None,
    progress: Progress | None = None,
) -> bool:
    """Fetch one sitemap and audit its pages. Returns False if the task failed.

    Failures are reported here and never reach sibling sitemap tasks.
    """
    progress_task = None
    async with semaphore if semaphore is not None else contextlib.nullcontext():
        try:
            urls = await fetch_sitemap_urls(
                sitemap_url,
                client,
                limit=config.sitemap_limit,
                filter_pattern=config.sitemap_filter,
                verbose=config.verbose,
            )
            if not urls:
                err_console.print(f"[yellow]Warning:[/yellow] no URLs found in sitemap {sitemap_url}")
                return True

            task = SitemapTask(sitemap_url=sitemap_url, folder_name=folder_name_for(sitemap_url), urls=tuple(urls))
            on_result = None
            if progress is not None:
                progress_task = progress.add_task(task.folder_name, total=len(task.urls))

                def on_result(_result: dict) -> None:
                    progress.advance(progress_task)

            results = await run_sitemap_task(task, config, browser_type, on_result=on_result)

            dataframe = summarize_results(task.urls, results)
            if config.summary and config.reporter == "html":
                summary_path = write_summary(dataframe, config.destination, task.folder_name)
                err_console.print(f"Summary written to: {summary_path}")
            _print_task_summary(task, dataframe)
        # A sitemap task must never take its siblings down, whatever it raised.
        except Exception as exc:
            err_console.print(f"[red]Error:[/red] {escape_markup(sitemap_url)}: {escape_markup(f'{type(exc).__name__}: {exc}')}")
            if progress is not None and progress_task is not None:
                progress.stop_task(progress_task)
                progress.update(progress_task, visible=False)
            return False

    return True


async def run_all(config: AuditConfig) -> int:
    """Process every configured sitemap concurrently. Returns the process exit code."""
    err_console.print(f"Running accessibility audits for: {', '.join(config.sitemaps)}")
    semaphore = asyncio.Semaphore(config.max_concurrency) if config.max_concurrency > 0 else None

    progress = Progress(
        TextColumn("[bold]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        console=err_console,
        disable=not config.show_progress,
    )
    with progress:
        async with httpx.AsyncClient(verify=False, timeout=SITEMAP_FETCH_TIMEOUT, follow_redirects=True) as client, \
                async_playwright() as playwright:
            outcomes = await asyncio.gather(*(
                process_sitemap(sitemap_url, config, playwright.chromium, client, semaphore, progress)
                for sitemap_url in config.sitemaps
            ))

    failed = outcomes.count(False)
    if failed:
        err_console.print(f"\n[red]{failed} of {len(outcomes)} sitemap(s) failed.[/red]")
        return TASK_FAILURE_EXIT_CODE
    return 0


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def main() -> None:
    parser = build_argument_parser()
    args = parser.parse_args()

    config_path = Path(args.config) if args.config else discover_config_path()
    if config_path is None and not args.sitemaps:
        err_console.print("[red]Error:[/red] Could not find configuration. Pass --sitemaps or add a config file and try again.")
        parser.print_help()
        sys.exit(CONFIG_ERROR_EXIT_CODE)

    config = load_config(config_path)
    args = apply_profile(args, config, getattr(args, "profile", None))
    audit_config = build_audit_config(args)

    if not audit_config.sitemaps:
        err_console.print("No sitemaps to process. Exiting.")
        sys.exit(0)

    exit_code = asyncio.run(run_all(audit_config))
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
