# ── src/readwatch/utility/utils.py ─────────────────────────────────────
from __future__ import annotations

import errno
import logging
import logging.handlers
import os
import secrets
import sys
import yaml
from pathlib import Path
import datetime as dt

# ── locate repo root & default log dir  ────────────────────────────────
def _find_repo_root(start: Path | None = None) -> Path:
    """Walk parents until we see pyproject.toml or .git."""
    here = start or Path(__file__).resolve()
    for p in [here, *here.parents]:
        if (p / "pyproject.toml").exists() or (p / ".git").exists():
            return p
    return Path(__file__).resolve().parents[1]       # site-packages wheel

ROOT      = _find_repo_root()
LOG_ROOT  = ROOT / "logs"
CONF_PATH = ROOT / "config" / "config.yaml"

# ── tiny helpers  ──────────────────────────────────────────────────────
def load_config(path: str | Path = CONF_PATH):
    with Path(path).open() as fh:
        return yaml.safe_load(fh) or {}

def set_module_level(module_name: str, level: int) -> None:
    logging.getLogger(module_name).setLevel(level)

# ── logging  ───────────────────────────────────────────────────────────
SESSION_ENV = "READWATCH_SESSION_ID"
PREFIX      = "readwatch"
FORMAT      = "%(asctime)s  %(levelname)-7s  %(threadName)s  %(name)s:  %(message)s"


def _session_id() -> str:
    sess_id = os.getenv(SESSION_ENV)
    if sess_id:
        return sess_id
    sess_id = f"{dt.datetime.now():%Y%m%d-%H%M%S}-{secrets.token_hex(2)}"
    sys.stderr.write(
        f"⚠️  {SESSION_ENV} not set – using auto session ID {sess_id}\n"
        f"   (export {SESSION_ENV}=YOUR_ID to keep one log across runs)\n"
    )
    return sess_id


def _prune_auto_logs(log_dir: Path, keep: int) -> None:
    """Delete all but the newest *keep* auto-named session logs."""
    logs = sorted(log_dir.glob(f"{PREFIX}_????????-??????-*.log"))   # oldest first
    for old in logs[:max(len(logs) - keep, 0)]:
        try:
            old.unlink()
        except OSError as e:
            sys.stderr.write(f"could not prune {old}: {e}\n")


def _point_latest(logfile: Path) -> None:
    latest = logfile.parent / f"{PREFIX}_latest.log"
    try:
        if latest.is_symlink() or latest.exists():
            latest.unlink()
        latest.symlink_to(logfile.name)          # relative link
    except OSError as e:
        if e.errno not in (errno.EPERM, errno.EACCES, errno.EEXIST):
            raise


def setup_logging(
    log_dir: str | Path | None = None,
    *,
    level: int | None = None,
    console: bool = True,
    force: bool = False,
    rotate_mb: float | None = None,
    backup_count: int = 0,                      # keep everything by default
) -> Path:
    """
    Send the root logger to one session file, 'readwatch_<SESSION_ID>.log'.

    The file is $READWATCH_LOG_FILE when set; otherwise it goes in *log_dir*,
    falling back to $READWATCH_LOG_DIR and then ``logs/`` under the repo.
    The session id is $READWATCH_SESSION_ID, or a fresh
    'YYYYMMDD-HHMMSS-<4-hex>' so every run gets its own file. With
    *backup_count* > 0 only that many auto-named files are kept; explicit
    session logs are never pruned. *rotate_mb* turns on size rotation.
    """
    if os.getenv("READWATCH_LOG_FILE"):
        logfile = Path(os.getenv("READWATCH_LOG_FILE")).expanduser()
        logfile.parent.mkdir(parents=True, exist_ok=True)
    else:
        root_dir = Path(log_dir or os.getenv("READWATCH_LOG_DIR") or LOG_ROOT).expanduser()
        root_dir.mkdir(parents=True, exist_ok=True)
        sess_id = _session_id()
        if backup_count and sess_id.count("-") == 2:    # timestamp-rand pattern
            _prune_auto_logs(root_dir, backup_count)
        logfile = root_dir / f"{PREFIX}_{sess_id}.log"

    root_logger = logging.getLogger()
    if root_logger.handlers and not force:
        return logfile
    root_logger.handlers.clear()
    root_logger.setLevel(level or logging.INFO)
    fmt = logging.Formatter(FORMAT)

    if rotate_mb:
        fh = logging.handlers.RotatingFileHandler(
            logfile, maxBytes=int(rotate_mb * 1024 * 1024), backupCount=backup_count,
            encoding="utf-8", delay=True
        )
    else:
        fh = logging.FileHandler(logfile, mode="a", encoding="utf-8", delay=True)
    fh.setFormatter(fmt)
    root_logger.addHandler(fh)

    if console:
        ch = logging.StreamHandler(sys.stderr)
        ch.setFormatter(fmt)
        root_logger.addHandler(ch)

    # watchdog is chatty at DEBUG
    set_module_level("watchdog", max(level or logging.INFO, logging.INFO))
    _point_latest(logfile)
    root_logger.info("Logging to %s", logfile)
    return logfile


def resolve_path(value: str | Path | None, base: Path) -> Path | None:
    """Expand ~ and make *value* absolute relative to *base*."""
    if value in (None, ""):
        return None
    p = Path(value).expanduser()
    return p if p.is_absolute() else (base / p).resolve()
