# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "pandas",
#   "playwright",
#   "requests",
#   "rich",
# ]
# ///
"""Lighthouse Performance Runner CLI Tool.

Runs repeated Lighthouse audits against a URL, averages the category scores
across runs, extracts Web Vitals, and renders detailed, trend and A/B
comparison HTML reports.
"""

from __future__ import annotations

import argparse
import html
import json
import os
import socket
import subprocess
import sys
import tempfile
import time
import tomllib
import webbrowser
from collections import Counter
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from urllib.parse import urlparse

import pandas as pd
import requests
from playwright.sync_api import sync_playwright
from rich.console import Console
from rich.text import Text

__version__ = "1.0.0"

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PAGESPEED_API_URL = "https://www.googleapis.com/pagespeedonline/v5/runPagespeed"

VALID_DEVICES = ("Mobile", "Desktop")
VALID_CATEGORIES = ("performance", "accessibility", "best-practices", "seo")
VALID_ENGINES = ("lighthouse", "psi")

DEFAULT_URL = "https://playwright.dev"
DEFAULT_COUNT = 5
DEFAULT_DEVICE = "Desktop"
DEFAULT_ENGINE = "lighthouse"
DEFAULT_OUTPUT_DIR = "./reports"
DEFAULT_CATEGORIES = list(VALID_CATEGORIES)

# 3G-like network and a 4x CPU slowdown
DEFAULT_THROTTLING = {
    "cpuSlowdownMultiplier": 4,
    "downloadThroughputKbps": 1638.4,
    "uploadThroughputKbps": 768,
    "rttMs": 150,
}

MAX_RETRIES = 3
RETRY_BASE_DELAY = 2.0
RETRYABLE_STATUS_CODES = {429, 500, 503}

CONFIG_FILENAMES = ["lighthouse-perf.json", "lighthouse-perf.toml"]
CONFIG_SEARCH_PATHS = [
    Path.cwd(),
    Path.home() / ".config" / "lighthouse-perf",
]

# Playwright device descriptors used for screen emulation and screenshots
DEVICE_PROFILES = {
    "Mobile": "Pixel 5",
    "Desktop": "Desktop Chrome",
}
FALLBACK_VIEWPORT = (1920, 1080)
MOBILE_DEVICE_SCALE_FACTOR = 2.75

# Headless mode is requested through Playwright's launch option
CHROME_FLAGS = ["--disable-gpu", "--no-sandbox"]

WEB_VITALS = ("FCP", "LCP", "CLS", "FID", "TTI", "TBT", "TTFB")

# Web Vital -> Lighthouse audit id
WEB_VITAL_AUDITS = {
    "FCP": "first-contentful-paint",
    "LCP": "largest-contentful-paint",
    "CLS": "cumulative-layout-shift",
    "FID": "max-potential-fid",
    "TTI": "interactive",
    "TBT": "total-blocking-time",
    "TTFB": "server-response-time",
}

# (good upper bound, needs-improvement upper bound); lower is better for all
WEB_VITAL_THRESHOLDS = {
    "FCP": (1800, 3000),
    "LCP": (2500, 4000),
    "CLS": (0.1, 0.25),
    "FID": (100, 300),
    "TTI": (3800, 7300),
    "TBT": (200, 600),
    "TTFB": (800, 1800),
}

WEB_VITAL_INFO = {
    "FCP": ("First Contentful Paint", "Time from navigation until any part of the page content is rendered on screen."),
    "LCP": ("Largest Contentful Paint", "Time until the largest content element in the viewport finishes rendering."),
    "CLS": ("Cumulative Layout Shift", "Sum of all unexpected layout shifts over the lifetime of the page."),
    "FID": ("First Input Delay", "Delay between the first user interaction and the moment the browser can respond to it."),
    "TTI": ("Time to Interactive", "Time until the page is fully interactive."),
    "TBT": ("Total Blocking Time", "Total time between FCP and TTI during which the main thread was blocked long enough to prevent input responsiveness."),
    "TTFB": ("Time to First Byte", "Time between requesting the URL and receiving the first byte of the response."),
}

RECOMMENDATIONS = {
    "FCP": [
        "Reduce server response time",
        "Eliminate render-blocking resources",
        "Optimize the critical rendering path",
    ],
    "LCP": [
        "Optimize loading of the largest content element",
        "Lazy-load offscreen images",
        "Reduce server response time",
        "Preload critical resources",
    ],
    "CLS": [
        "Set explicit width and height on images and video elements",
        "Avoid inserting content above existing content",
        "Prefer transform animations over properties that trigger layout",
    ],
    "FID": [
        "Reduce JavaScript execution time",
        "Break up long tasks",
        "Optimize event handlers",
    ],
    "TTI": [
        "Reduce JavaScript payload size",
        "Remove unused JavaScript",
        "Use code splitting",
        "Defer non-critical JavaScript",
    ],
    "TBT": [
        "Minimize main-thread work",
        "Reduce JavaScript execution time",
        "Reduce the impact of third-party scripts",
    ],
    "TTFB": [
        "Reduce server processing time",
        "Use a CDN",
        "Preconnect to required origins",
        "Enable caching",
    ],
}

# Ceilings mapping each metric onto a 0-100 "higher is better" radar scale
RADAR_CEILINGS = {
    "FCP": 3000,
    "LCP": 4000,
    "CLS": 0.25,
    "FID": 300,
    "TTI": 7300,
    "TBT": 600,
    "TTFB": 1800,
}

CATEGORY_NAMES = {
    "performance": "Performance",
    "accessibility": "Accessibility",
    "best-practices": "Best Practices",
    "seo": "SEO",
}

BAND_LABELS = {
    "good": "Good",
    "needs-improvement": "Needs Improvement",
    "poor": "Poor",
}

BAND_STYLES = {
    "good": "green",
    "needs-improvement": "yellow",
    "poor": "red",
}

# Category score changes within +/- this many points are treated as noise
SCORE_DEAD_ZONE = 1.0

CHART_JS_URL = "https://cdn.jsdelivr.net/npm/chart.js"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class LighthouseError(Exception):
    """Raised when a Lighthouse CLI run fails or produces no report."""


class PageSpeedError(Exception):
    """Raised when a PageSpeed API request fails after all retries."""


# ---------------------------------------------------------------------------
# Data Model
# ---------------------------------------------------------------------------


def _as_number(value) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"expected a number, got {value!r}")
    return float(value)


def _as_metric(value) -> float | None:
    if value is None:
        return None
    return _as_number(value)


@dataclass(frozen=True)
class MetricsRecord:
    """The seven tracked Web Vitals of one audit; None marks an absent metric."""

    fcp: float | None = None
    lcp: float | None = None
    cls: float | None = None
    fid: float | None = None
    tti: float | None = None
    tbt: float | None = None
    ttfb: float | None = None

    def get(self, name: str) -> float | None:
        return getattr(self, name.lower())

    def present(self) -> Iterator[tuple[str, float]]:
        """Yield (name, value) for every present metric in canonical order."""
        for name in WEB_VITALS:
            value = self.get(name)
            if value is not None:
                yield name, value

    def to_dict(self) -> dict[str, float | None]:
        return {name: self.get(name) for name in WEB_VITALS}

    @classmethod
    def from_dict(cls, data: dict) -> MetricsRecord:
        return cls(**{name.lower(): _as_metric(data.get(name)) for name in WEB_VITALS})


@dataclass(frozen=True)
class RunResult:
    url: str
    device: str
    timestamp: str
    scores: dict[str, float]
    metrics: MetricsRecord

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "device": self.device,
            "timestamp": self.timestamp,
            "scores": dict(self.scores),
            "metrics": self.metrics.to_dict(),
        }


@dataclass(frozen=True)
class AggregatedResult:
    """Outcome of N runs against one URL.

    ``scores`` holds the mean of each category across the runs, while
    ``metrics`` is the MetricsRecord of the final run only.
    """

    url: str
    device: str
    timestamp: str
    scores: dict[str, float]
    metrics: MetricsRecord

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "device": self.device,
            "timestamp": self.timestamp,
            "scores": dict(self.scores),
            "webVitals": self.metrics.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> AggregatedResult:
        """Build from a history record. Raises KeyError/TypeError/ValueError on malformed input."""
        url = data["url"]
        device = data.get("device", DEFAULT_DEVICE)
        timestamp = data["timestamp"]
        for field_name, value in (("url", url), ("device", device), ("timestamp", timestamp)):
            if not isinstance(value, str):
                raise ValueError(f"{field_name} must be a string, got {value!r}")
        parse_timestamp(timestamp)

        raw_scores = data.get("scores") or {}
        web_vitals = data.get("webVitals", data.get("web_vitals")) or {}
        if not isinstance(raw_scores, dict) or not isinstance(web_vitals, dict):
            raise ValueError("scores and webVitals must be objects")

        scores = {}
        for category, score in raw_scores.items():
            score = _as_number(score)
            if not 0 <= score <= 100:
                raise ValueError(f"score for {category} out of range: {score}")
            scores[category] = score

        metrics = MetricsRecord.from_dict(web_vitals)
        for name, value in metrics.present():
            if not value >= 0:
                raise ValueError(f"{name} must be non-negative, got {value}")

        return cls(url=url, device=device, timestamp=timestamp, scores=scores, metrics=metrics)


@dataclass(frozen=True)
class AuditOutcome:
    """What an audit engine hands back for one run."""

    lhr: dict
    report_html: str | None = None


@dataclass(frozen=True)
class CategoryDelta:
    category: str
    baseline: float
    current: float
    delta: float
    status: str


@dataclass(frozen=True)
class MetricDelta:
    metric: str
    baseline: float
    current: float
    absolute: float
    percentage: float
    improved: bool

    @property
    def status(self) -> str:
        if self.absolute < 0:
            return "improvement"
        if self.absolute > 0:
            return "regression"
        return "neutral"


@dataclass(frozen=True)
class ComparisonResult:
    baseline: AggregatedResult
    current: AggregatedResult
    categories: list[CategoryDelta]
    metrics: list[MetricDelta]

    @property
    def category_improvements(self) -> int:
        return sum(1 for entry in self.categories if entry.status == "improvement")

    @property
    def category_regressions(self) -> int:
        return sum(1 for entry in self.categories if entry.status == "regression")

    @property
    def metric_improvements(self) -> int:
        return sum(1 for entry in self.metrics if entry.improved)

    @property
    def metric_regressions(self) -> int:
        # Unlike categories, metric regressions need a >1% relative change
        return sum(1 for entry in self.metrics if not entry.improved and abs(entry.percentage) > 1)


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def file_stamp(timestamp: str | None = None) -> str:
    """Filesystem-safe form of an ISO timestamp (defaults to now)."""
    return (timestamp or utc_now_iso()).replace(":", "-").replace("+", "_")


def parse_timestamp(timestamp: str) -> datetime:
    parsed = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ---------------------------------------------------------------------------
# Console Reporter
# ---------------------------------------------------------------------------


def format_duration(seconds: float) -> str:
    """Format seconds as m:ss."""
    minutes = int(seconds // 60)
    secs = int(seconds % 60)
    return f"{minutes}:{secs:02d}"


class ProgressLine:
    """Single-line progress indicator with a linear ETA projection."""

    def __init__(self, total: int, console: Console, clock: Callable[[], float] = time.monotonic, bar_length: int = 30):
        self.total = total
        self.current = 0
        self.console = console
        self.clock = clock
        self.bar_length = bar_length
        self.start_time = clock()

    def elapsed(self) -> float:
        return self.clock() - self.start_time

    def eta(self) -> float | None:
        if self.current <= 0:
            return None
        return self.elapsed() / self.current * (self.total - self.current)

    def render(self, message: str = "") -> Text:
        percent = self.current / self.total if self.total else 1.0
        filled = round(self.bar_length * percent)
        line = Text()
        line.append(f"[{self.current}/{self.total}] ", style="bold")
        line.append("█" * filled, style="green")
        line.append("░" * (self.bar_length - filled), style="dim")
        line.append(f" {percent * 100:.1f}%", style="yellow")
        line.append(f" elapsed: {format_duration(self.elapsed())}", style="cyan")
        eta = self.eta()
        if eta is not None:
            line.append(f" ETA: {format_duration(eta)}", style="cyan")
        if message:
            line.append(f" {message}")
        return line

    def update(self, current: int, message: str = "") -> None:
        self.current = current
        self.console.print(self.render(message))

    def complete(self, message: str = "Done") -> None:
        self.current = self.total
        line = Text()
        line.append("✓ ", style="green")
        line.append(message, style="bold")
        line.append(f" (total time: {format_duration(self.elapsed())})", style="dim")
        self.console.print(line)


class Reporter:
    """Console logger and progress factory passed down to every stage."""

    def __init__(self, console: Console | None = None, verbose: bool = False, clock: Callable[[], float] = time.monotonic):
        self.console = console or Console(stderr=True, highlight=False)
        self.verbose = verbose
        self.clock = clock
        self._indent = 0

    def _emit(self, message: str | Text, style: str = "", prefix: str = "") -> None:
        self.console.print(Text.assemble("  " * self._indent, prefix, message, style=style))

    def debug(self, message: str | Text) -> None:
        if self.verbose:
            self._emit(message, style="dim")

    def info(self, message: str | Text) -> None:
        self._emit(message)

    def success(self, message: str | Text) -> None:
        self._emit(message, style="green", prefix="✓ ")

    def warning(self, message: str | Text) -> None:
        self._emit(message, style="yellow", prefix="Warning: ")

    def error(self, message: str, exc: BaseException | None = None) -> None:
        self._emit(message, style="red", prefix="Error: ")
        if exc is not None:
            self._emit(f"{type(exc).__name__}: {exc}", style="red")

    def title(self, message: str) -> None:
        self.console.rule(Text(message, style="bold cyan"))

    def subtitle(self, message: str) -> None:
        self._emit(message, style="bold blue")

    @contextmanager
    def group(self, title: str) -> Iterator[None]:
        self._emit(title, style="bold")
        self._indent += 1
        try:
            yield
        finally:
            self._indent -= 1

    def progress(self, total: int) -> ProgressLine:
        return ProgressLine(total, self.console, clock=self.clock)


def score_band(score: float) -> str:
    if score >= 90:
        return "good"
    if score >= 50:
        return "needs-improvement"
    return "poor"


def format_score(score: float) -> Text:
    return Text(f"{score:.1f}", style=BAND_STYLES[score_band(score)])


def format_metric_value(name: str, value: float) -> str:
    if name == "CLS":
        return f"{value:.3f}"
    return f"{value:,.0f}ms"


def format_web_vital(name: str, value: float | None) -> Text:
    if value is None:
        return Text(f"{name}: N/A", style="dim")
    band = evaluate_metric(name, value) if name in WEB_VITAL_THRESHOLDS else None
    style = BAND_STYLES[band] if band else "blue"
    return Text.assemble((f"{name}: ", "bold"), (format_metric_value(name, value), style))


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

# Config file key -> argparse dest. camelCase keys follow the JSON config
# format of earlier releases.
CONFIG_KEY_MAP = {
    "url": "url",
    "testCount": "count",
    "test_count": "count",
    "count": "count",
    "device": "device",
    "categories": "categories",
    "throttling": "throttling",
    "compareUrl": "compare",
    "compare_url": "compare",
    "compare": "compare",
    "saveHistory": "save_history",
    "save_history": "save_history",
    "outputDir": "output_dir",
    "output_dir": "output_dir",
    "engine": "engine",
    "apiKey": "api_key",
    "api_key": "api_key",
    "preferNpx": "prefer_npx",
    "prefer_npx": "prefer_npx",
}


def discover_config_path() -> Path | None:
    """Find the first existing config file in search paths."""
    for search_dir in CONFIG_SEARCH_PATHS:
        for filename in CONFIG_FILENAMES:
            candidate = search_dir / filename
            if candidate.is_file():
                return candidate
    return None


def load_config(config_path: Path | None, reporter: Reporter) -> dict:
    """Parse a JSON or TOML config file.

    A missing or unreadable file is logged and yields an empty config so the
    built-in defaults stay in effect.
    """
    if config_path is None:
        return {}
    if not config_path.is_file():
        reporter.warning(f"config file not found: {config_path} (using defaults)")
        return {}
    try:
        if config_path.suffix.lower() == ".toml":
            with open(config_path, "rb") as fh:
                config = tomllib.load(fh)
        else:
            with open(config_path, encoding="utf-8") as fh:
                config = json.load(fh)
    except (OSError, ValueError) as exc:
        reporter.error(f"failed to read config file {config_path} (using defaults)", exc)
        return {}
    if not isinstance(config, dict):
        reporter.error(f"config file {config_path} must contain an object (using defaults)")
        return {}
    reporter.info(f"Loaded config from {config_path}")
    return config


def _merge_throttling(current: dict, overrides, reporter: Reporter | None) -> dict:
    """Overlay numeric throttling overrides; anything else is reported and ignored."""
    merged = dict(current)
    if overrides is None:
        return merged
    if not isinstance(overrides, dict):
        if reporter is not None:
            reporter.warning(f"config key 'throttling' must be a table/object, got {overrides!r} (keeping current profile)")
        return merged
    for key, value in overrides.items():
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            if reporter is not None:
                reporter.warning(f"ignoring non-numeric throttling.{key}: {value!r}")
            continue
        merged[key] = value
    return merged


def apply_config(args: argparse.Namespace, config: dict, reporter: Reporter | None = None) -> argparse.Namespace:
    """Merge file config onto parsed CLI args. File values win.

    ``throttling`` is merged key by key so a partial profile keeps the
    remaining defaults.
    """
    for config_key, value in config.items():
        arg_dest = CONFIG_KEY_MAP.get(config_key)
        if arg_dest is None:
            if reporter is not None:
                reporter.debug(f"ignoring unknown config key: {config_key}")
            continue
        if arg_dest == "throttling":
            args.throttling = _merge_throttling(getattr(args, "throttling", None) or DEFAULT_THROTTLING, value, reporter)
        else:
            setattr(args, arg_dest, value)

    if not getattr(args, "api_key", None):
        env_key = os.environ.get("PAGESPEED_API_KEY")
        if env_key:
            args.api_key = env_key

    return args


# ---------------------------------------------------------------------------
# CLI Argument Parser
# ---------------------------------------------------------------------------


def build_argument_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser with subcommands."""
    parser = argparse.ArgumentParser(
        prog="lighthouse-perf",
        description="Repeated Lighthouse audits with averaged scores, Web Vitals and HTML reports",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", dest="verbose", action="store_true", default=False, help="Verbose output to stderr")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # --- run ---
    run_parser = subparsers.add_parser("run", help="Audit a URL N times and generate reports")
    run_parser.add_argument("-u", "--url", dest="url", default=DEFAULT_URL, help=f"URL to audit (default: {DEFAULT_URL})")
    run_parser.add_argument("-c", "--count", dest="count", type=int, default=DEFAULT_COUNT, help=f"Number of audit runs (default: {DEFAULT_COUNT})")
    run_parser.add_argument("-d", "--device", dest="device", default=DEFAULT_DEVICE, choices=VALID_DEVICES, help="Emulated device type")
    run_parser.add_argument("--compare", dest="compare", default=None, help="URL to audit once and compare against the averaged result")
    run_parser.add_argument("--save-history", dest="save_history", action=argparse.BooleanOptionalAction, default=True, help="Save the aggregated result for trend reports (default: on)")
    run_parser.add_argument("--categories", dest="categories", nargs="+", default=DEFAULT_CATEGORIES, choices=VALID_CATEGORIES, help="Lighthouse categories")
    run_parser.add_argument("--config", dest="config", default=None, help="Path to a JSON or TOML config file (file values override flags)")
    run_parser.add_argument("--output-dir", dest="output_dir", default=DEFAULT_OUTPUT_DIR, help="Directory for reports and history")
    run_parser.add_argument("--engine", dest="engine", default=DEFAULT_ENGINE, choices=VALID_ENGINES, help="Audit engine: local Lighthouse CLI or PageSpeed Insights API")
    run_parser.add_argument("--api-key", dest="api_key", default=None, help="Google API key for the psi engine (or set PAGESPEED_API_KEY)")
    run_parser.add_argument("--prefer-npx", dest="prefer_npx", action="store_true", default=False, help="Run Lighthouse through npx instead of a global install")
    run_parser.add_argument("--no-screenshot", dest="no_screenshot", action="store_true", default=False, help="Skip the page screenshot")
    run_parser.add_argument("--open", dest="open_browser", action="store_true", default=False, help="Open the detailed report in a browser")
    run_parser.set_defaults(throttling=dict(DEFAULT_THROTTLING))

    # --- trend ---
    trend_parser = subparsers.add_parser("trend", help="Render a trend report from saved history")
    trend_parser.add_argument("--output-dir", dest="output_dir", default=DEFAULT_OUTPUT_DIR, help="Directory holding history/ and receiving the report")
    trend_parser.add_argument("--open", dest="open_browser", action="store_true", default=False, help="Open the report in a browser")

    # --- compare ---
    compare_parser = subparsers.add_parser("compare", help="Compare two saved history files")
    compare_parser.add_argument("baseline", help="Path to the baseline history JSON")
    compare_parser.add_argument("current", help="Path to the current history JSON")
    compare_parser.add_argument("--output-dir", dest="output_dir", default=DEFAULT_OUTPUT_DIR, help="Directory for the comparison report")
    compare_parser.add_argument("--open", dest="open_browser", action="store_true", default=False, help="Open the report in a browser")

    return parser


def validate_url(url: str) -> str | None:
    """Validate and normalize a URL. Returns the URL or None if invalid."""
    url = url.strip()
    if not url:
        return None

    # Add scheme if missing
    if not url.startswith(("http://", "https://")):
        url = "https://" + url

    parsed = urlparse(url)
    if not parsed.netloc:
        return None
    return url


# ---------------------------------------------------------------------------
# Metrics Extraction & Evaluation
# ---------------------------------------------------------------------------


def _audit_value(audit: dict | None) -> float | None:
    if not audit or audit.get("score", 0) is None:
        return None
    value = audit.get("numericValue")
    if value is None:
        return None
    return float(value)


def extract_web_vitals(lhr: dict) -> MetricsRecord:
    """Map a Lighthouse result onto the seven tracked Web Vitals.

    A metric is absent when its audit is missing, scored null, or carries no
    numericValue.
    """
    audits = lhr.get("audits") or {}
    return MetricsRecord(**{
        name.lower(): _audit_value(audits.get(audit_id))
        for name, audit_id in WEB_VITAL_AUDITS.items()
    })


def extract_category_scores(lhr: dict, categories: list[str]) -> dict[str, float]:
    """Rescale category scores from [0, 1] to [0, 100]; missing or null scores are omitted."""
    report_categories = lhr.get("categories") or {}
    scores: dict[str, float] = {}
    for category in categories:
        score = (report_categories.get(category) or {}).get("score")
        if score is not None:
            scores[category] = score * 100
    return scores


def extract_accessibility_issues(lhr: dict) -> list[dict]:
    """Accessibility audits that scored neither 1 nor null."""
    audits = lhr.get("audits") or {}
    accessibility = (lhr.get("categories") or {}).get("accessibility") or {}
    issues = []
    for ref in accessibility.get("auditRefs") or []:
        audit = audits.get(ref.get("id"))
        if not audit:
            continue
        score = audit.get("score")
        if score is None or score == 1:
            continue
        issues.append({
            "id": audit.get("id", ref.get("id")),
            "title": audit.get("title", ""),
            "description": audit.get("description", ""),
            "score": score,
            "displayValue": audit.get("displayValue", ""),
            "details": audit.get("details"),
        })
    return issues


def evaluate_metric(name: str, value: float) -> str:
    good, needs_improvement = WEB_VITAL_THRESHOLDS[name]
    if value < good:
        return "good"
    if value < needs_improvement:
        return "needs-improvement"
    return "poor"


def evaluate_web_vitals(metrics: MetricsRecord) -> dict[str, str]:
    """Band every present metric as good / needs-improvement / poor."""
    return {name: evaluate_metric(name, value) for name, value in metrics.present()}


def generate_recommendations(metrics: MetricsRecord, evaluations: dict[str, str]) -> dict[str, list[str]]:
    recommendations = {}
    for name, _ in metrics.present():
        if evaluations.get(name) != "good":
            recommendations[name] = list(RECOMMENDATIONS[name])
    return recommendations


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


def aggregate_category_scores(run_scores: list[dict[str, float]], categories: list[str]) -> dict[str, float]:
    """Mean score per category over the runs in which the category was present."""
    if not run_scores:
        return {}
    frame = pd.DataFrame(run_scores, columns=list(categories), dtype=float)
    means = frame.mean(skipna=True)
    return {category: float(means[category]) for category in categories if pd.notna(means[category])}


def summarize_score_spread(run_scores: list[dict[str, float]], categories: list[str]) -> dict[str, dict[str, float]]:
    """Min/max/range/stddev per category across runs."""
    if not run_scores:
        return {}
    frame = pd.DataFrame(run_scores, columns=list(categories), dtype=float)
    spread = {}
    for category in categories:
        values = frame[category].dropna()
        if len(values) == 0:
            continue
        spread[category] = {
            "min": float(values.min()),
            "max": float(values.max()),
            "range": float(values.max() - values.min()),
            "stddev": round(float(values.std()), 1) if len(values) > 1 else 0.0,
        }
    return spread


# ---------------------------------------------------------------------------
# Comparison
# ---------------------------------------------------------------------------


def classify_score_delta(delta: float) -> str:
    if delta > SCORE_DEAD_ZONE:
        return "improvement"
    if delta < -SCORE_DEAD_ZONE:
        return "regression"
    return "neutral"


def compare_metric(name: str, baseline: float, current: float) -> MetricDelta:
    absolute = current - baseline
    percentage = absolute / baseline * 100 if baseline != 0 else 0.0
    return MetricDelta(
        metric=name,
        baseline=baseline,
        current=current,
        absolute=absolute,
        percentage=percentage,
        improved=absolute < 0,
    )


def compare_results(baseline: AggregatedResult, current: AggregatedResult) -> ComparisonResult:
    """Per-category and per-metric deltas of ``current`` against ``baseline``."""
    category_deltas = []
    for category, baseline_score in baseline.scores.items():
        if category not in current.scores:
            continue
        delta = current.scores[category] - baseline_score
        category_deltas.append(CategoryDelta(
            category=category,
            baseline=baseline_score,
            current=current.scores[category],
            delta=delta,
            status=classify_score_delta(delta),
        ))

    metric_deltas = []
    for name, baseline_value in baseline.metrics.present():
        current_value = current.metrics.get(name)
        if current_value is None:
            continue
        metric_deltas.append(compare_metric(name, baseline_value, current_value))

    return ComparisonResult(
        baseline=baseline,
        current=current,
        categories=category_deltas,
        metrics=metric_deltas,
    )


def normalize_for_radar(metrics: MetricsRecord) -> dict[str, float]:
    """Map present metrics onto a 0-100 scale where higher is better."""
    normalized = {}
    for name, value in metrics.present():
        score = 100 - value / RADAR_CEILINGS[name] * 100
        normalized[name] = max(0.0, min(100.0, score))
    return normalized


# ---------------------------------------------------------------------------
# Browser Session & Audit Engines
# ---------------------------------------------------------------------------


def find_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@dataclass
class BrowserSession:
    """A Chromium instance exposing a remote-debugging port for Lighthouse."""

    playwright: object
    browser: object
    port: int

    def device_settings(self, device: str) -> dict:
        """Playwright context options for the device profile."""
        settings = dict(self.playwright.devices[DEVICE_PROFILES[device]])
        settings.pop("default_browser_type", None)
        return settings


@contextmanager
def browser_session(headless: bool = True) -> Iterator[BrowserSession]:
    """Launch Chromium for the duration of the block; always closed on exit."""
    port = find_free_port()
    with sync_playwright() as playwright:
        browser = playwright.chromium.launch(
            headless=headless,
            args=[f"--remote-debugging-port={port}", *CHROME_FLAGS],
        )
        try:
            yield BrowserSession(playwright=playwright, browser=browser, port=port)
        finally:
            browser.close()


def resolve_screen_emulation(device: str, device_settings: dict) -> dict:
    """Lighthouse screenEmulation settings for a device profile."""
    viewport = device_settings.get("viewport") or {}
    is_mobile = device == "Mobile"
    return {
        "mobile": is_mobile,
        "width": viewport.get("width") or FALLBACK_VIEWPORT[0],
        "height": viewport.get("height") or FALLBACK_VIEWPORT[1],
        "deviceScaleFactor": MOBILE_DEVICE_SCALE_FACTOR if is_mobile else 1,
    }


def find_lighthouse_bin(prefer_npx: bool) -> list[str]:
    if prefer_npx:
        return ["npx", "lighthouse"]
    return ["lighthouse"]


def build_lighthouse_command(
    url: str,
    port: int,
    output_path: Path,
    device: str,
    categories: list[str],
    screen_emulation: dict,
    throttling: dict,
    prefer_npx: bool = False,
) -> list[str]:
    """Assemble the Lighthouse CLI invocation for one run."""
    command = find_lighthouse_bin(prefer_npx) + [
        url,
        f"--port={port}",
        "--output=json",
        "--output=html",
        f"--output-path={output_path}",
        f"--only-categories={','.join(categories)}",
        f"--form-factor={device.lower()}",
        "--quiet",
    ]
    for key, value in screen_emulation.items():
        if isinstance(value, bool):
            value = "true" if value else "false"
        command.append(f"--screenEmulation.{key}={value}")
    for key, value in throttling.items():
        command.append(f"--throttling.{key}={value}")
    return command


def run_lighthouse(command: list[str], output_path: Path) -> AuditOutcome:
    """Execute a prepared Lighthouse command and read back its JSON and HTML reports."""
    try:
        completed = subprocess.run(command, capture_output=True, text=True)
    except FileNotFoundError as exc:
        raise LighthouseError(
            f"command not found: {command[0]}. Install Lighthouse (npm i -g lighthouse) or use --prefer-npx."
        ) from exc

    if completed.returncode != 0:
        stderr = (completed.stderr or "").strip()[-500:]
        raise LighthouseError(f"Lighthouse exited with status {completed.returncode}: {stderr}")

    json_path = output_path.with_name(output_path.name + ".report.json")
    html_path = output_path.with_name(output_path.name + ".report.html")
    if not json_path.is_file():
        raise LighthouseError(f"Lighthouse produced no JSON report at {json_path}")
    try:
        lhr = json.loads(json_path.read_text(encoding="utf-8"))
    except ValueError as exc:
        raise LighthouseError(f"invalid JSON in Lighthouse report {json_path}: {exc}") from exc
    report_html = html_path.read_text(encoding="utf-8") if html_path.is_file() else None
    return AuditOutcome(lhr=lhr, report_html=report_html)


def make_lighthouse_audit(
    session: BrowserSession,
    device: str,
    categories: list[str],
    throttling: dict,
    prefer_npx: bool = False,
) -> Callable[[str], AuditOutcome]:
    """Audit callable bound to a browser session and a fixed configuration."""
    screen_emulation = resolve_screen_emulation(device, session.device_settings(device))

    def audit(url: str) -> AuditOutcome:
        with tempfile.TemporaryDirectory(prefix="lighthouse_") as tmp_dir:
            output_path = Path(tmp_dir) / "lighthouse"
            command = build_lighthouse_command(
                url,
                session.port,
                output_path,
                device,
                categories,
                screen_emulation,
                throttling,
                prefer_npx,
            )
            return run_lighthouse(command, output_path)

    return audit


def fetch_pagespeed_result(
    url: str,
    strategy: str,
    api_key: str | None = None,
    categories: list[str] | None = None,
) -> dict:
    """Fetch PageSpeed Insights results for a single URL + strategy.

    Retries on 429/500/503 with exponential backoff.
    """
    # requests supports list values for repeated query params
    category_list = categories or DEFAULT_CATEGORIES
    params: dict[str, str | list[str]] = {
        "url": url,
        "strategy": strategy,
        "category": category_list,
    }
    if api_key:
        params["key"] = api_key

    last_error: Exception | None = None
    for attempt in range(MAX_RETRIES + 1):
        try:
            response = requests.get(
                PAGESPEED_API_URL,
                params=params,
                timeout=120,
            )
        except requests.RequestException as exc:
            last_error = exc
            if attempt < MAX_RETRIES:
                time.sleep(RETRY_BASE_DELAY * (2**attempt))
                continue
            break

        if response.status_code == 200:
            data = response.json()
            if "error" in data:
                message = data["error"].get("message", "unknown error")
                raise PageSpeedError(f"API error for {url} ({strategy}): {message}")
            if "lighthouseResult" not in data:
                raise PageSpeedError(f"No lighthouseResult in response for {url} ({strategy})")
            return data

        if response.status_code in RETRYABLE_STATUS_CODES and attempt < MAX_RETRIES:
            retry_after = response.headers.get("Retry-After")
            if retry_after and response.status_code == 429:
                wait_time = float(retry_after)
            else:
                wait_time = RETRY_BASE_DELAY * (2**attempt)
            time.sleep(wait_time)
            continue

        # Non-retryable error, or retries exhausted
        try:
            error_body = response.json()
            error_detail = error_body.get("error", {}).get("message", response.text[:200])
        except (ValueError, AttributeError):
            error_detail = response.text[:200]
        raise PageSpeedError(
            f"HTTP {response.status_code} for {url} ({strategy}): {error_detail}"
        )

    raise PageSpeedError(f"Failed after {MAX_RETRIES + 1} attempts for {url} ({strategy}): {last_error}")


def make_pagespeed_audit(api_key: str | None, device: str, categories: list[str]) -> Callable[[str], AuditOutcome]:
    strategy = device.lower()

    # HTTP retries stay inside fetch_pagespeed_result; a failed audit still aborts the series
    def audit(url: str) -> AuditOutcome:
        response = fetch_pagespeed_result(url, strategy, api_key, categories)
        return AuditOutcome(lhr=response["lighthouseResult"])

    return audit


@contextmanager
def open_audit_engine(args: argparse.Namespace, reporter: Reporter) -> Iterator[tuple[Callable[[str], AuditOutcome], BrowserSession | None]]:
    """Yield (audit callable, browser session or None) for the configured engine."""
    if args.engine == "psi":
        reporter.debug("Using the PageSpeed Insights API; throttling settings are ignored")
        yield make_pagespeed_audit(args.api_key, args.device, args.categories), None
        return

    reporter.info("Launching Chromium...")
    with browser_session() as session:
        reporter.debug(f"Chromium remote debugging on port {session.port}")
        audit = make_lighthouse_audit(
            session,
            args.device,
            args.categories,
            args.throttling,
            getattr(args, "prefer_npx", False),
        )
        yield audit, session


def capture_screenshot(session: BrowserSession, url: str, device: str, output_dir: Path) -> Path:
    """Screenshot the page with the device profile applied."""
    screenshot_path = output_dir / f"screenshot-{device}.png"
    context = session.browser.new_context(**session.device_settings(device))
    try:
        page = context.new_page()
        page.goto(url)
        page.screenshot(path=str(screenshot_path))
    finally:
        context.close()
    return screenshot_path


# ---------------------------------------------------------------------------
# Run Orchestration
# ---------------------------------------------------------------------------


def _write_json(path: Path, data) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as fh:
        json.dump(data, fh, indent=2, default=str)


def _report_accessibility_issues(reporter: Reporter, issues: list[dict]) -> None:
    with reporter.group("Accessibility issues:"):
        for index, issue in enumerate(issues[:5], start=1):
            display = f" - {issue['displayValue']}" if issue["displayValue"] else ""
            reporter.warning(f"{index}. {issue['title']}{display}")
        if len(issues) > 5:
            reporter.info(f"...and {len(issues) - 5} more")


def run_audit_series(
    url: str,
    count: int,
    audit: Callable[[str], AuditOutcome],
    reporter: Reporter,
    *,
    device: str = DEFAULT_DEVICE,
    categories: list[str] | None = None,
    output_dir: Path | str = DEFAULT_OUTPUT_DIR,
) -> tuple[AggregatedResult, list[RunResult]]:
    """Run ``audit`` ``count`` times in sequence and aggregate the results.

    Category scores are averaged over the runs; the returned metrics are the
    final run's. An audit failure aborts the whole series.
    """
    if count < 1:
        raise ValueError("count must be at least 1")
    categories = list(categories or DEFAULT_CATEGORIES)
    output_dir = Path(output_dir)
    web_vitals_dir = output_dir / "web-vitals"
    accessibility_dir = output_dir / "accessibility-issues"
    output_dir.mkdir(parents=True, exist_ok=True)

    runs: list[RunResult] = []
    run_scores: list[dict[str, float]] = []
    progress = reporter.progress(count)

    for index in range(1, count + 1):
        reporter.info(f"Running Lighthouse audit {index}/{count}...")
        progress.update(index - 1, "auditing...")

        outcome = audit(url)
        timestamp = utc_now_iso()
        stamp = file_stamp(timestamp)

        if outcome.report_html:
            report_path = output_dir / f"lighthouse-report-{index}-{stamp}.html"
            report_path.write_text(outcome.report_html, encoding="utf-8")
            reporter.debug(f"Run {index} report saved to: {report_path}")

        metrics = extract_web_vitals(outcome.lhr)
        scores = extract_category_scores(outcome.lhr, categories)
        run = RunResult(url=url, device=device, timestamp=timestamp, scores=scores, metrics=metrics)
        runs.append(run)
        run_scores.append(scores)
        _write_json(web_vitals_dir / f"web-vitals-{index}-{stamp}.json", run.to_dict())

        issues = extract_accessibility_issues(outcome.lhr)
        if issues:
            issues_path = accessibility_dir / f"accessibility-issues-{index}-{stamp}.json"
            _write_json(issues_path, issues)
            reporter.debug(f"{len(issues)} accessibility issue(s) saved to: {issues_path}")
            _report_accessibility_issues(reporter, issues)
        elif "accessibility" in categories:
            reporter.success("No accessibility issues found")

        with reporter.group(f"Run {index} scores:"):
            for category in categories:
                if category in scores:
                    reporter.info(Text.assemble(f"{CATEGORY_NAMES.get(category, category)}: ", format_score(scores[category])))

        with reporter.group("Web Vitals:"):
            for name, value in metrics.present():
                reporter.info(format_web_vital(name, value))

        progress.update(index, f"run {index} complete")

    progress.complete("All runs complete")

    result = AggregatedResult(
        url=url,
        device=device,
        timestamp=utc_now_iso(),
        scores=aggregate_category_scores(run_scores, categories),
        metrics=runs[-1].metrics,
    )
    _print_average_scores(reporter, result, summarize_score_spread(run_scores, categories), count)
    return result, runs


def run_comparison_audit(
    url: str,
    audit: Callable[[str], AuditOutcome],
    device: str,
    categories: list[str],
) -> AggregatedResult:
    """Audit ``url`` once; its scores stand in for the mean."""
    outcome = audit(url)
    return AggregatedResult(
        url=url,
        device=device,
        timestamp=utc_now_iso(),
        scores=extract_category_scores(outcome.lhr, categories),
        metrics=extract_web_vitals(outcome.lhr),
    )


def _print_average_scores(reporter: Reporter, result: AggregatedResult, spread: dict, count: int) -> None:
    reporter.title(f"Average scores over {count} run(s)")
    for category, score in result.scores.items():
        line = Text.assemble(f"{CATEGORY_NAMES.get(category, category)}: ", format_score(score))
        stats = spread.get(category)
        if stats and count > 1:
            line.append(f"  (range: {stats['range']:.1f}, stddev: {stats['stddev']})", style="dim")
        reporter.info(line)


def _print_comparison_summary(reporter: Reporter, comparison: ComparisonResult) -> None:
    with reporter.group("Category scores:"):
        for entry in comparison.categories:
            name = CATEGORY_NAMES.get(entry.category, entry.category)
            reporter.info(f"{name}: {entry.baseline:.1f} -> {entry.current:.1f} ({entry.delta:+.1f}, {entry.status})")
    with reporter.group("Web Vitals:"):
        for entry in comparison.metrics:
            reporter.info(
                f"{entry.metric}: {format_metric_value(entry.metric, entry.baseline)} -> "
                f"{format_metric_value(entry.metric, entry.current)} ({entry.percentage:+.1f}%, {entry.status})"
            )
    reporter.info(
        f"Scores: {comparison.category_improvements} improved, {comparison.category_regressions} regressed | "
        f"Web Vitals: {comparison.metric_improvements} improved, {comparison.metric_regressions} regressed"
    )


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


def save_history(result: AggregatedResult, history_dir: Path) -> Path:
    """Write one aggregated result as ``history-<timestamp>.json``."""
    history_path = Path(history_dir) / f"history-{file_stamp(result.timestamp)}.json"
    _write_json(history_path, result.to_dict())
    return history_path


def read_history_entry(path: Path) -> AggregatedResult:
    with open(path, encoding="utf-8") as fh:
        data = json.load(fh)
    return AggregatedResult.from_dict(data)


def sort_history(history: list[AggregatedResult]) -> list[AggregatedResult]:
    return sorted(history, key=lambda entry: parse_timestamp(entry.timestamp))


def load_history(history_dir: Path, reporter: Reporter) -> list[AggregatedResult]:
    """Read every history file, skipping unreadable ones, sorted oldest first."""
    history_dir = Path(history_dir)
    if not history_dir.is_dir():
        return []
    history = []
    for path in sorted(history_dir.glob("*.json")):
        try:
            history.append(read_history_entry(path))
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as exc:
            reporter.error(f"failed to read history file {path.name}", exc)
    return sort_history(history)


# ---------------------------------------------------------------------------
# HTML Reports
# ---------------------------------------------------------------------------

REPORT_STYLE = """
    * { margin: 0; padding: 0; box-sizing: border-box; }
    body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; background: #f5f5f5; color: #333; padding: 20px; max-width: 1200px; margin: 0 auto; line-height: 1.5; }
    h1 { font-size: 1.5rem; margin-bottom: 5px; }
    h2 { font-size: 1.2rem; margin-bottom: 15px; color: #555; }
    .meta { color: #888; font-size: 0.85rem; display: flex; flex-wrap: wrap; gap: 20px; }
    .section { background: #fff; border-radius: 8px; padding: 20px; box-shadow: 0 1px 3px rgba(0,0,0,0.1); margin-bottom: 20px; }
    .cards { display: grid; grid-template-columns: repeat(auto-fit, minmax(180px, 1fr)); gap: 15px; }
    .card { border-radius: 8px; padding: 20px; text-align: center; background: #f8f9fa; }
    .card .value { font-size: 2rem; font-weight: 700; }
    .card .label { font-size: 0.8rem; color: #888; margin-top: 5px; }
    .good { color: #0cce6b; }
    .needs-improvement { color: #ffa400; }
    .poor { color: #ff4e42; }
    .vitals-grid { display: grid; grid-template-columns: repeat(auto-fill, minmax(300px, 1fr)); gap: 20px; }
    .vital-card { padding: 15px; border-radius: 8px; box-shadow: 0 1px 3px rgba(0,0,0,0.1); }
    .vital-header { display: flex; justify-content: space-between; align-items: center; margin-bottom: 10px; }
    .vital-name { font-weight: 700; font-size: 1.1rem; }
    .vital-value { font-size: 1.5rem; font-weight: 700; }
    .vital-band { padding: 3px 8px; border-radius: 4px; font-size: 0.75rem; font-weight: 700; background: #f8f9fa; }
    .vital-description { margin-top: 10px; font-size: 0.85rem; color: #666; }
    .recommendations { margin-top: 12px; font-size: 0.85rem; }
    .recommendations ul { padding-left: 20px; margin-top: 5px; }
    .data-table { width: 100%; border-collapse: collapse; }
    .data-table th { background: #f8f9fa; padding: 10px 12px; text-align: left; font-size: 0.8rem; text-transform: uppercase; color: #666; }
    .data-table td { padding: 10px 12px; border-top: 1px solid #eee; font-size: 0.9rem; }
    .delta { font-weight: 700; padding: 2px 8px; border-radius: 4px; }
    .delta.improvement { color: #0cce6b; background: rgba(12, 206, 107, 0.1); }
    .delta.regression { color: #ff4e42; background: rgba(255, 78, 66, 0.1); }
    .delta.neutral { color: #666; background: rgba(0, 0, 0, 0.05); }
    .summary-stats { display: flex; flex-wrap: wrap; gap: 15px; margin-bottom: 20px; }
    .chart-container { position: relative; height: 320px; margin-top: 20px; }
    footer { margin-top: 40px; padding-top: 15px; border-top: 1px solid #ddd; color: #999; font-size: 0.75rem; text-align: center; }
"""


def _json_for_script(data) -> str:
    """JSON safe for embedding inside a <script> element."""
    return json.dumps(data).replace("</", "<\\/")


def _display_time(timestamp: str) -> str:
    return parse_timestamp(timestamp).strftime("%Y-%m-%d %H:%M:%S UTC")


def _page(title: str, body: str, script: str) -> str:
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="UTF-8">
<meta name="viewport" content="width=device-width, initial-scale=1.0">
<title>{html.escape(title)}</title>
<script src="{CHART_JS_URL}"></script>
<style>{REPORT_STYLE}</style>
</head>
<body>
{body}
<footer>
    Generated by Lighthouse Performance Runner v{__version__}
</footer>
<script>
{script}
</script>
</body>
</html>"""


def _render_score_cards(scores: dict[str, float]) -> str:
    cards = []
    for category, score in scores.items():
        cards.append(
            f'<div class="card"><div class="value {score_band(score)}">{score:.0f}</div>'
            f'<div class="label">{html.escape(CATEGORY_NAMES.get(category, category))}</div></div>'
        )
    return "\n    ".join(cards)


def _render_web_vital_cards(metrics: MetricsRecord, evaluations: dict[str, str], recommendations: dict[str, list[str]]) -> str:
    cards = []
    for name, value in metrics.present():
        full_name, description = WEB_VITAL_INFO[name]
        band = evaluations.get(name, "")
        advice = recommendations.get(name, [])
        advice_html = ""
        if advice:
            items = "".join(f"<li>{html.escape(item)}</li>" for item in advice)
            advice_html = f'<div class="recommendations"><strong>How to improve:</strong><ul>{items}</ul></div>'
        cards.append(f"""
        <div class="vital-card" id="vital-{name}">
            <div class="vital-header">
                <div class="vital-name">{name}</div>
                <div class="vital-band {band}">{BAND_LABELS.get(band, "Not evaluated")}</div>
            </div>
            <div class="vital-value {band}">{format_metric_value(name, value)}</div>
            <div class="vital-description"><strong>{full_name}</strong> - {description}</div>
            {advice_html}
        </div>""")
    return "".join(cards)


_LINE_CHART_JS = """
function lineChart(canvasId, labels, series, yTitle, yMax) {
    const colors = ['#4285f4', '#34a853', '#fbbc05', '#ea4335', '#673ab7'];
    new Chart(document.getElementById(canvasId), {
        type: 'line',
        data: {
            labels: labels,
            datasets: series.map((item, index) => ({
                label: item.label,
                data: item.data,
                borderColor: item.color || colors[index % colors.length],
                backgroundColor: 'rgba(0, 0, 0, 0.03)',
                tension: 0.1,
                spanGaps: true
            }))
        },
        options: {
            responsive: true,
            maintainAspectRatio: false,
            scales: {
                y: { beginAtZero: true, max: yMax, title: { display: true, text: yTitle } }
            }
        }
    });
}
"""


def render_detailed_report(result: AggregatedResult, runs: list[RunResult]) -> str:
    """Self-contained HTML report for one aggregated result and its runs."""
    evaluations = evaluate_web_vitals(result.metrics)
    recommendations = generate_recommendations(result.metrics, evaluations)

    labels = [f"Run {index}" for index in range(1, len(runs) + 1)]
    series = {name: [run.metrics.get(name) for run in runs] for name in WEB_VITALS}
    timing_series = [
        {"label": f"{name} (ms)", "data": series[name]}
        for name in ("FCP", "LCP", "TTI", "TBT")
    ]
    cls_series = [{"label": "CLS", "data": series["CLS"], "color": "#673ab7"}]

    body = f"""
<div class="section">
    <h1>Performance Test Report</h1>
    <div class="meta">
        <div><strong>URL:</strong> {html.escape(result.url)}</div>
        <div><strong>Tested:</strong> {_display_time(result.timestamp)}</div>
        <div><strong>Device:</strong> {html.escape(result.device)}</div>
        <div><strong>Runs:</strong> {len(runs)}</div>
    </div>
</div>

<div class="section">
    <h2>Lighthouse Scores (average of {len(runs)} run(s))</h2>
    <div class="cards">
    {_render_score_cards(result.scores)}
    </div>
</div>

<div class="section">
    <h2>Web Vitals (last run)</h2>
    <div class="vitals-grid">{_render_web_vital_cards(result.metrics, evaluations, recommendations)}
    </div>
</div>

<div class="section">
    <h2>Web Vitals Across Runs</h2>
    <div class="chart-container"><canvas id="webVitalsChart"></canvas></div>
    <div class="chart-container"><canvas id="clsChart"></canvas></div>
</div>"""

    script = f"""{_LINE_CHART_JS}
const labels = {_json_for_script(labels)};
lineChart('webVitalsChart', labels, {_json_for_script(timing_series)}, 'Milliseconds (ms)');
lineChart('clsChart', labels, {_json_for_script(cls_series)}, 'CLS');"""

    return _page(f"Performance Test Report - {result.url}", body, script)


def _trend_labels(entries: list[AggregatedResult]) -> list[str]:
    """Per-second timestamps; entries sharing a second get a #n suffix."""
    labels = [_display_time(entry.timestamp) for entry in entries]
    counts = Counter(labels)
    return [
        f"{label} #{index}" if counts[label] > 1 else label
        for index, label in enumerate(labels, start=1)
    ]


def render_trend_report(history: list[AggregatedResult]) -> str:
    """HTML trend report over at least two history entries, oldest first."""
    if len(history) < 2:
        raise ValueError("a trend report needs at least two history entries")
    entries = sort_history(history)

    labels = _trend_labels(entries)
    score_series = [
        {"label": CATEGORY_NAMES[category], "data": [entry.scores.get(category) for entry in entries]}
        for category in VALID_CATEGORIES
    ]

    def vital_series(*names: str) -> list[dict]:
        return [
            {"label": name if name == "CLS" else f"{name} (ms)", "data": [entry.metrics.get(name) for entry in entries]}
            for name in names
        ]

    rows = []
    for entry in reversed(entries):
        cells = "".join(
            f'<td class="{score_band(entry.scores[category])}">{entry.scores[category]:.0f}</td>'
            if category in entry.scores else "<td>N/A</td>"
            for category in VALID_CATEGORIES
        )
        rows.append(f"""
            <tr>
                <td>{_display_time(entry.timestamp)}</td>
                <td>{html.escape(entry.url)}</td>
                <td>{html.escape(entry.device)}</td>
                {cells}
            </tr>""")
    header_cells = "".join(f"<th>{CATEGORY_NAMES[category]}</th>" for category in VALID_CATEGORIES)

    body = f"""
<div class="section">
    <h1>Performance Trend Report</h1>
    <div class="meta">
        <div><strong>URL:</strong> {html.escape(entries[-1].url)}</div>
        <div><strong>Entries:</strong> {len(entries)}</div>
        <div><strong>From:</strong> {labels[0]}</div>
        <div><strong>To:</strong> {labels[-1]}</div>
    </div>
</div>

<div class="section">
    <h2>Lighthouse Score Trend</h2>
    <div class="chart-container"><canvas id="scoreTrendChart"></canvas></div>
</div>

<div class="section">
    <h2>Web Vitals Trend</h2>
    <div class="chart-container"><canvas id="fcpLcpChart"></canvas></div>
    <div class="chart-container"><canvas id="ttiTbtChart"></canvas></div>
    <div class="chart-container"><canvas id="clsTrendChart"></canvas></div>
</div>

<div class="section">
    <h2>History</h2>
    <table class="data-table">
        <thead><tr><th>Time</th><th>URL</th><th>Device</th>{header_cells}</tr></thead>
        <tbody>{"".join(rows)}
        </tbody>
    </table>
</div>"""

    script = f"""{_LINE_CHART_JS}
const labels = {_json_for_script(labels)};
lineChart('scoreTrendChart', labels, {_json_for_script(score_series)}, 'Score', 100);
lineChart('fcpLcpChart', labels, {_json_for_script(vital_series("FCP", "LCP"))}, 'Milliseconds (ms)');
lineChart('ttiTbtChart', labels, {_json_for_script(vital_series("TTI", "TBT"))}, 'Milliseconds (ms)');
lineChart('clsTrendChart', labels, {_json_for_script(vital_series("CLS"))}, 'CLS');"""

    return _page("Performance Trend Report", body, script)


def format_metric_delta(name: str, delta: float) -> str:
    if name == "CLS":
        return f"{delta:+.3f}"
    return f"{delta:+,.0f}ms"


def render_comparison_report(comparison: ComparisonResult) -> str:
    """HTML A/B report of ``comparison.current`` against ``comparison.baseline``."""
    baseline = comparison.baseline
    current = comparison.current

    category_rows = []
    for entry in comparison.categories:
        category_rows.append(f"""
            <tr>
                <td><strong>{html.escape(CATEGORY_NAMES.get(entry.category, entry.category))}</strong></td>
                <td>{entry.baseline:.1f}</td>
                <td>{entry.current:.1f}</td>
                <td><span class="delta {entry.status}">{entry.delta:+.1f}</span></td>
            </tr>""")

    metric_rows = []
    for entry in comparison.metrics:
        full_name = WEB_VITAL_INFO[entry.metric][0]
        metric_rows.append(f"""
            <tr>
                <td><strong>{entry.metric}</strong> ({full_name})</td>
                <td>{format_metric_value(entry.metric, entry.baseline)}</td>
                <td>{format_metric_value(entry.metric, entry.current)}</td>
                <td><span class="delta {entry.status}">{format_metric_delta(entry.metric, entry.absolute)}</span></td>
                <td><span class="delta {entry.status}">{entry.percentage:+.1f}%</span></td>
            </tr>""")

    bar_labels = [CATEGORY_NAMES.get(entry.category, entry.category) for entry in comparison.categories]
    bar_data = {
        "baseline": [entry.baseline for entry in comparison.categories],
        "current": [entry.current for entry in comparison.categories],
    }
    radar_keys = [entry.metric for entry in comparison.metrics]
    baseline_radar = normalize_for_radar(baseline.metrics)
    current_radar = normalize_for_radar(current.metrics)
    radar_data = {
        "baseline": [baseline_radar[key] for key in radar_keys],
        "current": [current_radar[key] for key in radar_keys],
    }

    body = f"""
<div class="section">
    <h1>Performance Comparison Report</h1>
    <div class="meta">
        <div><strong>Baseline:</strong> {html.escape(baseline.url)}</div>
        <div><strong>Current:</strong> {html.escape(current.url)}</div>
        <div><strong>Tested:</strong> {_display_time(current.timestamp)}</div>
        <div><strong>Device:</strong> {html.escape(current.device)}</div>
    </div>
</div>

<div class="section">
    <h2>Summary</h2>
    <div class="summary-stats">
        <div class="delta improvement" id="category-improvements">{comparison.category_improvements} Lighthouse score(s) improved</div>
        <div class="delta regression" id="category-regressions">{comparison.category_regressions} Lighthouse score(s) regressed</div>
        <div class="delta improvement" id="metric-improvements">{comparison.metric_improvements} Web Vital(s) improved</div>
        <div class="delta regression" id="metric-regressions">{comparison.metric_regressions} Web Vital(s) regressed</div>
    </div>
    <div class="chart-container"><canvas id="scoreComparisonChart"></canvas></div>
</div>

<div class="section">
    <h2>Lighthouse Scores</h2>
    <table class="data-table" id="category-table">
        <thead><tr><th>Category</th><th>Baseline</th><th>Current</th><th>Change</th></tr></thead>
        <tbody>{"".join(category_rows)}
        </tbody>
    </table>
</div>

<div class="section">
    <h2>Web Vitals</h2>
    <table class="data-table" id="metric-table">
        <thead><tr><th>Metric</th><th>Baseline</th><th>Current</th><th>Change</th><th>Change %</th></tr></thead>
        <tbody>{"".join(metric_rows)}
        </tbody>
    </table>
    <div class="chart-container"><canvas id="webVitalsRadarChart"></canvas></div>
</div>"""

    script = f"""
const barLabels = {_json_for_script(bar_labels)};
const barData = {_json_for_script(bar_data)};
new Chart(document.getElementById('scoreComparisonChart'), {{
    type: 'bar',
    data: {{
        labels: barLabels,
        datasets: [
            {{ label: 'Baseline', data: barData.baseline, backgroundColor: 'rgba(66, 133, 244, 0.6)', borderColor: 'rgba(66, 133, 244, 1)', borderWidth: 1 }},
            {{ label: 'Current', data: barData.current, backgroundColor: 'rgba(52, 168, 83, 0.6)', borderColor: 'rgba(52, 168, 83, 1)', borderWidth: 1 }}
        ]
    }},
    options: {{
        responsive: true,
        maintainAspectRatio: false,
        scales: {{ y: {{ beginAtZero: true, max: 100, title: {{ display: true, text: 'Score' }} }} }}
    }}
}});

const radarLabels = {_json_for_script(radar_keys)};
const radarData = {_json_for_script(radar_data)};
new Chart(document.getElementById('webVitalsRadarChart'), {{
    type: 'radar',
    data: {{
        labels: radarLabels,
        datasets: [
            {{ label: 'Baseline', data: radarData.baseline, backgroundColor: 'rgba(66, 133, 244, 0.2)', borderColor: 'rgba(66, 133, 244, 1)' }},
            {{ label: 'Current', data: radarData.current, backgroundColor: 'rgba(52, 168, 83, 0.2)', borderColor: 'rgba(52, 168, 83, 1)' }}
        ]
    }},
    options: {{
        responsive: true,
        maintainAspectRatio: false,
        scales: {{ r: {{ suggestedMin: 0, suggestedMax: 100 }} }}
    }}
}});"""

    return _page("Performance Comparison Report", body, script)


def write_report(html_content: str, output_dir: Path | str, prefix: str) -> Path:
    """Write a rendered report as ``<prefix>-<timestamp>.html``. Returns the path."""
    dir_path = Path(output_dir)
    dir_path.mkdir(parents=True, exist_ok=True)
    report_path = dir_path / f"{prefix}-{file_stamp()}.html"
    report_path.write_text(html_content, encoding="utf-8")
    return report_path


# ---------------------------------------------------------------------------
# Subcommand: run
# ---------------------------------------------------------------------------


def _validate_run_args(args: argparse.Namespace) -> None:
    url = validate_url(str(args.url))
    if not url:
        raise ValueError(f"invalid URL: {args.url}")
    args.url = url

    if args.compare:
        compare_url = validate_url(str(args.compare))
        if not compare_url:
            raise ValueError(f"invalid comparison URL: {args.compare}")
        args.compare = compare_url

    if isinstance(args.count, bool) or not isinstance(args.count, int) or args.count < 1:
        raise ValueError(f"count must be a positive integer, got {args.count!r}")
    if args.device not in VALID_DEVICES:
        raise ValueError(f"device must be one of {', '.join(VALID_DEVICES)}, got {args.device!r}")
    if args.engine not in VALID_ENGINES:
        raise ValueError(f"engine must be one of {', '.join(VALID_ENGINES)}, got {args.engine!r}")
    unknown = [category for category in args.categories if category not in VALID_CATEGORIES]
    if unknown:
        raise ValueError(f"unknown categories: {', '.join(unknown)}")


def cmd_run(args: argparse.Namespace, reporter: Reporter) -> None:
    """Audit a URL N times, then write history, detailed, trend and comparison reports."""
    config_path = Path(args.config) if getattr(args, "config", None) else discover_config_path()
    config = load_config(config_path, reporter)
    args = apply_config(args, config, reporter)
    _validate_run_args(args)

    output_dir = Path(args.output_dir)
    reporter.title("Lighthouse Performance Runner")
    reporter.info(f"Auditing {args.url} {args.count} time(s) on {args.device} and averaging the scores...")

    with open_audit_engine(args, reporter) as (audit, session):
        reporter.subtitle(f"Target: {args.url}")
        result, runs = run_audit_series(
            args.url,
            args.count,
            audit,
            reporter,
            device=args.device,
            categories=args.categories,
            output_dir=output_dir,
        )

        if session is not None and not getattr(args, "no_screenshot", False):
            reporter.info("Capturing page screenshot...")
            screenshot_path = capture_screenshot(session, args.url, args.device, output_dir)
            reporter.success(f"{args.device} screenshot saved to: {screenshot_path}")

        if args.save_history:
            history_dir = output_dir / "history"
            history_path = save_history(result, history_dir)
            reporter.info(f"History saved to: {history_path}")
            history = load_history(history_dir, reporter)
            if len(history) > 1:
                trend_path = write_report(render_trend_report(history), output_dir, "trend-report")
                reporter.success(f"Trend report written to: {trend_path}")

        detailed_path = write_report(render_detailed_report(result, runs), output_dir, "detailed-report")
        reporter.success(f"Detailed report written to: {detailed_path}")

        if args.compare:
            reporter.title(f"Comparison run: {args.compare}")
            current = run_comparison_audit(args.compare, audit, args.device, args.categories)
            comparison = compare_results(result, current)
            comparison_path = write_report(render_comparison_report(comparison), output_dir, "comparison-report")
            _print_comparison_summary(reporter, comparison)
            reporter.success(f"Comparison report written to: {comparison_path}")

    reporter.title("Done")
    reporter.info(f"All reports saved to: {output_dir}")

    if getattr(args, "open_browser", False):
        webbrowser.open(detailed_path.resolve().as_uri())


# ---------------------------------------------------------------------------
# Subcommand: trend
# ---------------------------------------------------------------------------


def cmd_trend(args: argparse.Namespace, reporter: Reporter) -> None:
    """Render a trend report from the saved history."""
    output_dir = Path(args.output_dir)
    history = load_history(output_dir / "history", reporter)
    if len(history) < 2:
        reporter.warning(f"a trend report needs at least two history entries, found {len(history)}")
        return

    trend_path = write_report(render_trend_report(history), output_dir, "trend-report")
    reporter.success(f"Trend report written to: {trend_path}")

    if getattr(args, "open_browser", False):
        webbrowser.open(trend_path.resolve().as_uri())


# ---------------------------------------------------------------------------
# Subcommand: compare
# ---------------------------------------------------------------------------


def cmd_compare(args: argparse.Namespace, reporter: Reporter) -> None:
    """Compare two saved history entries."""
    baseline = read_history_entry(Path(args.baseline))
    current = read_history_entry(Path(args.current))
    comparison = compare_results(baseline, current)

    comparison_path = write_report(render_comparison_report(comparison), args.output_dir, "comparison-report")
    _print_comparison_summary(reporter, comparison)
    reporter.success(f"Comparison report written to: {comparison_path}")

    if getattr(args, "open_browser", False):
        webbrowser.open(comparison_path.resolve().as_uri())


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> None:
    parser = build_argument_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(0)

    reporter = Reporter(verbose=args.verbose)

    commands = {
        "run": cmd_run,
        "trend": cmd_trend,
        "compare": cmd_compare,
    }

    handler = commands[args.command]
    try:
        handler(args, reporter)
    except Exception as exc:
        reporter.error("run failed", exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
