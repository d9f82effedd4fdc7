"""
Utility functions: config loading, logging setup, and diagnostics.
"""

import os
import re
import logging
import socket
import psutil
import yaml
from datetime import datetime


LOG_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "logs")
SCREENSHOT_DIR = os.path.join(LOG_DIR, "screenshots")
HTMLDUMP_DIR   = os.path.join(LOG_DIR, "htmldumps")

LOGGER_NAME = "mapcrawl"

DEFAULT_LEADERBOARD_URL = (
    "https://www.mapillary.com/app/leaderboard/Vietnam"
    "?location=Vietnam&lat=20&lng=0&z=1.5"
)
DEFAULT_USER_URL_TEMPLATE = "https://www.mapillary.com/app/user/{username}"

# ${VAR} placeholders in config.yaml are filled from the environment
_ENV_VAR_RE = re.compile(r"\$\{(.*?)\}")


def get_worker_id() -> str:
    """Return a stable machine identifier (hostname) for worker identity."""
    return socket.gethostname()


def system_stats() -> dict:
    """CPU usage (% since the previous call) and available memory, for status lines."""
    memory = psutil.virtual_memory()
    return {
        "cpu_percent": psutil.cpu_percent(interval=None),
        "memory_percent": memory.percent,
        "available_gb": round(memory.available / (1024 ** 3), 2),
    }


def setup_logging() -> logging.Logger:
    """Configure and return the project logger."""
    os.makedirs(LOG_DIR, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = os.path.join(LOG_DIR, f"run_{timestamp}.log")

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)

    # Prevent duplicate handlers on repeated calls
    if logger.handlers:
        return logger

    # Console handler
    ch = logging.StreamHandler()
    ch.setLevel(logging.INFO)
    ch_fmt = logging.Formatter(
        "[%(asctime)s] %(levelname)-8s [%(threadName)s] %(message)s", datefmt="%H:%M:%S"
    )
    ch.setFormatter(ch_fmt)

    # File handler
    fh = logging.FileHandler(log_file, encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh_fmt = logging.Formatter("[%(asctime)s] %(levelname)-8s %(threadName)s %(name)s: %(message)s")
    fh.setFormatter(fh_fmt)

    logger.addHandler(ch)
    logger.addHandler(fh)

    logger.info(f"Log file: {log_file}")
    return logger


def interpolate_env(raw: str) -> str:
    """Replace ${VAR} placeholders with environment values (empty if unset)."""
    return _ENV_VAR_RE.sub(lambda m: os.environ.get(m.group(1), ""), raw)


def _require_int(config: dict, key: str, minimum: int) -> None:
    value = config[key]
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        raise ValueError(f"{key} must be int >= {minimum}, got: {value!r}")


def _require_number(config: dict, key: str, minimum: float) -> None:
    value = config[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < minimum:
        raise ValueError(f"{key} must be a number >= {minimum}, got: {value!r}")


def apply_defaults(config: dict) -> dict:
    """Fill in defaults for every key and validate ranges. Mutates and returns config."""
    # Target site
    config.setdefault("leaderboard_url", DEFAULT_LEADERBOARD_URL)
    template = config.setdefault("user_url_template", DEFAULT_USER_URL_TEMPLATE)
    if "{username}" not in template:
        raise ValueError(
            f"user_url_template must contain '{{username}}', got: {template!r}"
        )
    config.setdefault("leaderboard_limit", 100)
    _require_int(config, "leaderboard_limit", 1)

    # Concurrency gate / consumer count
    config.setdefault("concurrency", 1)
    _require_int(config, "concurrency", 1)

    # Retry / recovery
    config.setdefault("max_attempts", 5)
    _require_int(config, "max_attempts", 1)
    config.setdefault("base_delay", 3.0)
    _require_number(config, "base_delay", 0)

    # Pagination
    config.setdefault("max_steps", 5)
    _require_int(config, "max_steps", 0)
    config.setdefault("detail_wait_attempts", 5)
    _require_int(config, "detail_wait_attempts", 1)
    config.setdefault("detail_wait_delay", 3.0)
    _require_number(config, "detail_wait_delay", 0)

    # Timeouts (milliseconds, passed straight to Playwright)
    config.setdefault("nav_timeout", 60_000)
    config.setdefault("element_timeout", 60_000)
    config.setdefault("step_timeout", 30_000)
    for key in ("nav_timeout", "element_timeout", "step_timeout"):
        _require_int(config, key, 100)

    # Browser
    config.setdefault("headless", False)
    proxy = config.setdefault("proxy", None)
    if proxy is not None:
        if not isinstance(proxy, dict) or not proxy.get("server"):
            raise ValueError("proxy must be a mapping with at least a 'server' key")

    # Human-like pacing
    jitter = config.setdefault("jitter", {})
    if jitter is None:
        jitter = config["jitter"] = {}
    jitter.setdefault("enabled", True)
    jitter.setdefault("scale", 1.0)
    if not isinstance(jitter["scale"], (int, float)) or jitter["scale"] < 0:
        raise ValueError(f"jitter.scale must be a number >= 0, got: {jitter['scale']!r}")

    # Queue / store
    config.setdefault("queue_file", "data/jobs.json")
    config.setdefault("results_file", "data/results.jsonl")
    config.setdefault("stale_timeout", 1800)
    _require_int(config, "stale_timeout", 1)
    config.setdefault("max_deliveries", 3)
    _require_int(config, "max_deliveries", 1)

    # Control plane
    config.setdefault("server_host", "127.0.0.1")
    config.setdefault("server_port", 3000)
    _require_int(config, "server_port", 1)

    config.setdefault("diagnostics", True)
    return config


def load_config(config_path: str = None) -> dict:
    """Load config.yaml, interpolate ${VAR} placeholders and apply safe defaults."""
    if config_path is None:
        config_path = os.path.join(
            os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "config.yaml"
        )

    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        raw = f.read()

    config = yaml.safe_load(interpolate_env(raw)) or {}
    if not isinstance(config, dict):
        raise ValueError(f"Config root must be a mapping: {config_path}")

    proxy = config.get("proxy")
    # An unset ${PROXY_SERVER} leaves an empty server — treat as "no proxy"
    if isinstance(proxy, dict) and not proxy.get("server"):
        config["proxy"] = None

    return apply_defaults(config)


def capture_diagnostics(page, label: str = "error") -> str | None:
    """
    Capture whatever diagnostic data the page still gives us.

    Chain:
      1. Always log page.url
      2. page.screenshot() with a hard 5s timeout
      3. On failure → page.content() → save as .html dump

    Returns the file path of the saved screenshot or HTML dump, or None.
    """
    logger = logging.getLogger(LOGGER_NAME)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    safe_label = re.sub(r"[^\w\-]", "_", label)[:80]

    try:
        current_url = page.url
    except Exception:
        current_url = "<unavailable>"
    logger.debug(f"[diag] {safe_label} url={current_url}")

    # Screenshot (5 second timeout; don't hang on broken pages)
    try:
        os.makedirs(SCREENSHOT_DIR, exist_ok=True)
        filepath = os.path.join(SCREENSHOT_DIR, f"{timestamp}_{safe_label}.png")
        page.screenshot(path=filepath, full_page=False, timeout=5_000)
        logger.info(f"Screenshot saved: {filepath}")
        return filepath
    except Exception as ss_err:
        logger.debug(f"Screenshot failed ({ss_err}) — falling back to HTML dump")

    # HTML dump
    try:
        os.makedirs(HTMLDUMP_DIR, exist_ok=True)
        html_filepath = os.path.join(HTMLDUMP_DIR, f"{timestamp}_{safe_label}.html")
        html_content = page.content()
        with open(html_filepath, "w", encoding="utf-8") as f:
            f.write(html_content)
        logger.info(f"HTML dump saved: {html_filepath}")
        return html_filepath
    except Exception as html_err:
        logger.warning(f"HTML dump also failed: {html_err}")
        return None
