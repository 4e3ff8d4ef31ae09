# /vault_sync.py
"""
Vault Sync (one-shot, no UI)
- Keeps one notes vault in step across two cloud-sync backends
  (Google Drive and the iCloud Obsidian container by default).
- Decides which copy changed last by walking each tree: max of mtime/ctime/birthtime
  over every entry that is not ignored.
- Ignores metadata/temp entries (.DS_Store*, ~*) when walking and when syncing.
- Runs rsync newest -> oldest, then oldest -> newest.
  The second pass only runs if the first one succeeded.
- Optional defaults in ~/.vault_sync/config.json (read only, never written).
- Styled console output:
  - RANK light brown
  - SYNC green
  - DRY_RUN orange
  - failures / errors red
- Log file is always plain (no color codes).

Usage
  pip install pathspec colorama
  python vault_sync.py
  python vault_sync.py --first "~/Google Drive" --second "~/Dropbox" --vault Notes --dry-run
"""

from __future__ import annotations

import argparse
import datetime as dt
import errno
import json
import logging
import os
import shlex
import stat
import subprocess
import sys
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Callable, Optional, Sequence, Union

from pathspec import GitIgnoreSpec

try:
    from colorama import init as colorama_init  # type: ignore
except Exception:  # pragma: no cover
    colorama_init = None

APP_DIR = Path.home() / ".vault_sync"
CONFIG_PATH = APP_DIR / "config.json"

DEFAULT_FIRST_ROOT = Path.home() / "Google Drive"
DEFAULT_SECOND_ROOT = Path.home() / "Library" / "Mobile Documents" / "iCloud~md~obsidian" / "Documents"
# Both backends must use the same folder name for the vault.
DEFAULT_VAULT = "Notes"

# Matched against the base name only, case-sensitive.
IGNORE_PATTERNS = [
    # Finder metadata
    ".DS_Store*",
    # Office / editor temp files
    "~*",
]

RSYNC_FLAGS = ("-aE", "--delete")
RSYNC_EXCLUDES = ("**/*.DS_Store*",)

StrPath = Union[str, "os.PathLike[str]"]


# -------------------------
# Errors
# -------------------------

class VaultSyncError(Exception):
    """Base for every failure main() turns into a non-zero exit."""


class InvalidPath(VaultSyncError):
    def __init__(self, path: StrPath, reason: object = None):
        self.path = Path(path)
        self.reason = reason
        detail = f" ({reason})" if reason else ""
        super().__init__(f"The argument {path} is not a valid file or folder directory{detail}")


class TreeReadError(VaultSyncError):
    def __init__(self, path: StrPath, reason: object = None):
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"Could not read {path}: {reason}")


class ExternalToolFailure(VaultSyncError):
    def __init__(
        self,
        argv: Sequence[str],
        returncode: Optional[int],
        stdout: str = "",
        stderr: str = "",
    ):
        self.argv = tuple(argv)
        self.returncode = returncode
        self.stdout = stdout or ""
        self.stderr = stderr or ""
        if returncode is None:
            what = "could not be started"
        elif returncode != 0:
            what = f"exited with status {returncode}"
        else:
            what = "reported errors"
        super().__init__(f"{shlex.join(self.argv)} {what}")


# ENOENT covers both a missing path and an entry that vanished between listing and stat.
MISSING_ERRNOS = {errno.ENOENT, errno.ENOTDIR, errno.EACCES, errno.EPERM, errno.ELOOP}


def _path_error(path: Path, exc: OSError) -> VaultSyncError:
    if exc.errno in MISSING_ERRNOS:
        return InvalidPath(path, exc.strerror or exc)
    return TreeReadError(path, exc.strerror or exc)


# -------------------------
# Console styling
# -------------------------

class Ansi:
    RESET = "\x1b[0m"
    RED = "\x1b[31m"
    GREEN = "\x1b[32m"
    ORANGE = "\x1b[38;5;208m"
    LIGHT_BROWN = "\x1b[33m"


ACTION_COLORS = {
    "RANK": Ansi.LIGHT_BROWN,
    "SYNC": Ansi.GREEN,
    "DRY_RUN": Ansi.ORANGE,
    "SYNC_FAIL": Ansi.RED,
}


def _supports_color(stream) -> bool:
    try:
        return hasattr(stream, "isatty") and stream.isatty()
    except Exception:
        return False


class ColorizingFormatter(logging.Formatter):
    def __init__(self, use_color: bool, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        if not self.use_color:
            return base

        if record.levelno >= logging.ERROR:
            return f"{Ansi.RED}{base}{Ansi.RESET}"

        action = getattr(record, "action", None)
        if action and action in base:
            base = base.replace(action, f"{ACTION_COLORS.get(action, '')}{action}{Ansi.RESET}", 1)
        return base


def _today_log_name(prefix: str = "vault_sync") -> str:
    return f"{prefix}_{dt.date.today().isoformat()}.log"


def setup_logger(log_dir: Path) -> logging.Logger:
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / _today_log_name()

    logger = logging.getLogger("vault_sync")
    logger.setLevel(logging.INFO)
    logger.propagate = False

    if logger.handlers:
        return logger

    if colorama_init:
        colorama_init()

    fmt = "%(asctime)s | %(levelname)s | %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"

    fh = logging.FileHandler(log_path, encoding="utf-8")
    fh.setFormatter(logging.Formatter(fmt=fmt, datefmt=datefmt))
    fh.setLevel(logging.INFO)

    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(logging.INFO)
    ch.setFormatter(ColorizingFormatter(use_color=_supports_color(sys.stdout), fmt=fmt, datefmt=datefmt))

    logger.addHandler(fh)
    logger.addHandler(ch)

    logger.info("Logging to: %s", log_path)
    return logger


def log_action(
    logger: logging.Logger,
    action: str,
    message: str,
    level: int = logging.INFO,
) -> None:
    logger.log(level, f"{action} | {message}", extra={"action": action})


# -------------------------
# Config / CLI
# -------------------------

@dataclass(frozen=True)
class AppConfig:
    first_root: Path
    second_root: Path
    vault_name: str
    log_dir: Path
    rsync_path: str
    extra_excludes: tuple[str, ...]
    workers: int
    dry_run: bool

    @property
    def vault_dirs(self) -> tuple[Path, Path]:
        return self.first_root / self.vault_name, self.second_root / self.vault_name


def parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Sync a notes vault between two cloud-sync folders.")
    p.add_argument("--first", type=str, default=None, help="Folder holding the first copy of the vault.")
    p.add_argument("--second", type=str, default=None, help="Folder holding the second copy of the vault.")
    p.add_argument("--vault", type=str, default=None, help="Vault folder name (same under both folders).")
    p.add_argument("--rsync", type=str, default=None, help="rsync executable to run.")
    p.add_argument(
        "--exclude",
        action="append",
        default=None,
        help="Extra name pattern to ignore when ranking and syncing (repeatable).",
    )
    p.add_argument("--workers", type=int, default=None, help="Threads used to walk each vault.")
    p.add_argument("--log-dir", type=str, default=None, help="Directory for log files.")
    p.add_argument("--config", type=str, default=None, help=f"Config file (default: {CONFIG_PATH}).")
    p.add_argument("--dry-run", action="store_true", help="Log the rsync commands without running them.")
    return p.parse_args(argv)


def load_config_file(path: Path = CONFIG_PATH) -> dict:
    try:
        if path.exists():
            data = json.loads(path.read_text(encoding="utf-8"))
            if isinstance(data, dict):
                return data
    except (OSError, ValueError):
        pass
    return {}


def _saved_str(saved: dict, key: str) -> Optional[str]:
    value = saved.get(key)
    return value if isinstance(value, str) else None


def _saved_excludes(saved: dict) -> list[str]:
    value = saved.get("exclude")
    if isinstance(value, str):
        return [value]
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return value
    return []


def _saved_workers(saved: dict) -> int:
    value = saved.get("workers")
    # bool is an int subclass; "workers": true is not a thread count
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return 1


def build_effective_config(args: argparse.Namespace) -> AppConfig:
    """CLI args win over the config file, which wins over defaults. Bad config values are skipped."""
    saved = load_config_file(Path(args.config).expanduser() if args.config else CONFIG_PATH)

    first = args.first or _saved_str(saved, "first")
    second = args.second or _saved_str(saved, "second")
    vault = args.vault if args.vault is not None else (_saved_str(saved, "vault") or DEFAULT_VAULT)
    log_dir = args.log_dir or _saved_str(saved, "log_dir")
    excludes = args.exclude if args.exclude is not None else _saved_excludes(saved)
    workers = args.workers if args.workers is not None else _saved_workers(saved)

    return AppConfig(
        first_root=Path(first).expanduser() if first else DEFAULT_FIRST_ROOT,
        second_root=Path(second).expanduser() if second else DEFAULT_SECOND_ROOT,
        vault_name=vault,
        log_dir=Path(log_dir).expanduser() if log_dir else APP_DIR / "logs",
        rsync_path=args.rsync or _saved_str(saved, "rsync") or "rsync",
        extra_excludes=tuple(excludes),
        workers=max(1, workers),
        dry_run=bool(args.dry_run),
    )


def _has_sep(text: str) -> bool:
    return "/" in text or os.sep in text or bool(os.altsep and os.altsep in text)


def validate_vault_name(name: str) -> str:
    # anything but one plain folder name would point rsync --delete at a whole backend
    if not name or name in (".", "..") or _has_sep(name):
        raise ValueError(f"Vault name must be a single folder name, got {name!r}.")
    return name


def validate_excludes(patterns: Sequence[str]) -> tuple[str, ...]:
    # ranking matches base names only, so a path pattern would narrow rsync but not the ranking
    for pattern in patterns:
        if not pattern or _has_sep(pattern):
            raise ValueError(f"Exclude patterns must match a single name, got {pattern!r}.")
    return tuple(patterns)


def _is_subpath(child: Path, parent: Path) -> bool:
    try:
        child.resolve().relative_to(parent.resolve())
        return True
    except Exception:
        return False


def validate_vault_dirs(first: Path, second: Path) -> tuple[Path, Path]:
    first = first.expanduser()
    second = second.expanduser()

    if first.resolve() == second.resolve():
        raise ValueError("The two vault folders must be different.")
    if _is_subpath(first, second) or _is_subpath(second, first):
        raise ValueError("One vault folder must NOT be inside the other (rsync --delete would eat it).")
    return first, second


# -------------------------
# Ignore + timestamp resolution
# -------------------------

class IgnoreMatcher:
    def __init__(self, patterns: Sequence[str]):
        self.spec = GitIgnoreSpec.from_lines(patterns)

    def is_ignored(self, name: StrPath) -> bool:
        return self.spec.match_file(os.path.basename(os.fspath(name)))


def _stat_times(st: os.stat_result) -> list[int]:
    """Modification, change and (where the platform keeps one) creation time, in ns."""
    times = [st.st_mtime_ns, st.st_ctime_ns]
    birth_ns = getattr(st, "st_birthtime_ns", None)
    if birth_ns is None:
        birth = getattr(st, "st_birthtime", None)
        if birth is not None:
            birth_ns = int(birth * 1_000_000_000)
    if birth_ns is not None:
        times.append(birth_ns)
    return times


def _stat(path: Path) -> os.stat_result:
    try:
        return path.stat()
    except OSError as e:
        raise _path_error(path, e) from e


def _children(path: Path, ignore: IgnoreMatcher) -> list[Path]:
    try:
        names = os.listdir(path)
    except OSError as e:
        raise _path_error(path, e) from e
    return [path / name for name in names if not ignore.is_ignored(name)]


def _walk_latest(root: Path, ignore: IgnoreMatcher) -> int:
    latest = 0
    seen: set[tuple[int, int]] = set()
    stack = [root]
    while stack:
        path = stack.pop()
        st = _stat(path)
        latest = max(latest, *_stat_times(st))
        if not stat.S_ISDIR(st.st_mode):
            continue
        # symlinked directories can loop back on themselves
        if st.st_ino:
            key = (st.st_dev, st.st_ino)
            if key in seen:
                continue
            seen.add(key)
        stack.extend(_children(path, ignore))
    return latest


def last_modified_time(
    path: StrPath,
    ignore: Optional[IgnoreMatcher] = None,
    workers: int = 1,
) -> int:
    """
    Most recent instant (ns since epoch) anything under `path` was created, modified
    or had its metadata changed. Ignored names never count, nor does anything below them.

    Raises InvalidPath for missing/unreadable entries and TreeReadError for other I/O
    failures. Nothing is cached: every call re-reads the tree.
    """
    ignore = ignore or IgnoreMatcher(IGNORE_PATTERNS)
    root = Path(path)
    if workers <= 1:
        return _walk_latest(root, ignore)

    st = _stat(root)
    times = _stat_times(st)
    if not stat.S_ISDIR(st.st_mode):
        return max(times)
    children = _children(root, ignore)
    with ThreadPoolExecutor(max_workers=workers) as pool:
        times.extend(pool.map(partial(_walk_latest, ignore=ignore), children))
    return max(times)


# -------------------------
# Ranking + rsync commands
# -------------------------

Resolver = Callable[[StrPath], int]


def rank_with_times(paths: Sequence[StrPath], resolver: Resolver = last_modified_time) -> list[tuple[StrPath, int]]:
    scored = [(p, resolver(p)) for p in paths]
    # sorted() is stable with reverse=True, so ties keep argument order
    return sorted(scored, key=lambda item: item[1], reverse=True)


def rank_by_last_modified(*paths: StrPath, resolver: Resolver = last_modified_time) -> list[StrPath]:
    return [p for p, _ in rank_with_times(paths, resolver)]


def with_trailing_sep(path: StrPath) -> str:
    """rsync copies the *contents* of a source that ends in a separator."""
    text = os.fspath(path)
    seps = os.sep + (os.altsep or "")
    return text.rstrip(seps) + os.sep


@dataclass(frozen=True)
class SyncInvocation:
    source: str
    destination: str
    argv: tuple[str, ...]

    def reversed(self) -> SyncInvocation:
        return SyncInvocation(
            source=self.destination,
            destination=self.source,
            argv=self.argv[:-2] + (self.destination, self.source),
        )


def rsync_invocation(
    source: StrPath,
    destination: StrPath,
    rsync: str = "rsync",
    excludes: Sequence[str] = RSYNC_EXCLUDES,
) -> SyncInvocation:
    src = with_trailing_sep(source)
    dst = with_trailing_sep(destination)
    argv = [rsync, *RSYNC_FLAGS]
    for pattern in excludes:
        argv += ["--exclude", pattern]
    argv += [src, dst]
    return SyncInvocation(source=src, destination=dst, argv=tuple(argv))


@dataclass(frozen=True)
class SyncPlan:
    ranked: tuple[StrPath, ...]
    timestamps: tuple[int, ...]
    invocations: tuple[SyncInvocation, ...]


def build_sync_plan(
    path_a: StrPath,
    path_b: StrPath,
    resolver: Resolver = last_modified_time,
    rsync: str = "rsync",
    excludes: Sequence[str] = RSYNC_EXCLUDES,
) -> SyncPlan:
    # Newest first so its recent edits win, then back again so files that only
    # exist in the older copy are pulled over. Same-file edits on both sides are
    # not reconciled: the newer tree's copy wins.
    ranked = rank_with_times([path_a, path_b], resolver)
    first = rsync_invocation(ranked[0][0], ranked[1][0], rsync=rsync, excludes=excludes)
    return SyncPlan(
        ranked=tuple(p for p, _ in ranked),
        timestamps=tuple(t for _, t in ranked),
        invocations=(first, first.reversed()),
    )


# -------------------------
# Running the plan
# -------------------------

def run_plan(
    plan: SyncPlan,
    env: dict[str, str],
    logger: logging.Logger,
    runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    dry_run: bool = False,
) -> None:
    total = len(plan.invocations)
    for n, inv in enumerate(plan.invocations, start=1):
        if dry_run:
            log_action(logger, "DRY_RUN", f"pass {n}/{total} {shlex.join(inv.argv)}")
            continue

        log_action(logger, "SYNC", f"pass {n}/{total} {inv.source} -> {inv.destination}")
        try:
            result = runner(list(inv.argv), capture_output=True, text=True, env=env, check=False)
        except OSError as e:
            raise ExternalToolFailure(inv.argv, None, stderr=str(e)) from e

        if result.stdout:
            logger.info(result.stdout.rstrip())
        if result.returncode != 0 or result.stderr:
            raise ExternalToolFailure(inv.argv, result.returncode, result.stdout, result.stderr)


def _fmt_ns(ns: int) -> str:
    return dt.datetime.fromtimestamp(ns / 1_000_000_000).strftime("%Y-%m-%d %H:%M:%S")


# -------------------------
# Main
# -------------------------

def main(
    argv: Optional[list[str]] = None,
    runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
) -> int:
    args = parse_args(argv if argv is not None else sys.argv[1:])
    cfg = build_effective_config(args)

    logger = setup_logger(cfg.log_dir)

    try:
        validate_vault_name(cfg.vault_name)
        excludes = validate_excludes(cfg.extra_excludes)
        first, second = validate_vault_dirs(*cfg.vault_dirs)
        logger.info("First : %s", first)
        logger.info("Second: %s", second)
    except ValueError as e:
        logger.error("Config error: %s", e)
        return 2

    ignore = IgnoreMatcher([*IGNORE_PATTERNS, *excludes])
    resolver = partial(last_modified_time, ignore=ignore, workers=cfg.workers)

    try:
        plan = build_sync_plan(
            first,
            second,
            resolver=resolver,
            rsync=cfg.rsync_path,
            excludes=(*RSYNC_EXCLUDES, *excludes),
        )
    except (InvalidPath, TreeReadError) as e:
        logger.error("Path error: %s", e)
        return 2

    for n, (path, ns) in enumerate(zip(plan.ranked, plan.timestamps), start=1):
        log_action(logger, "RANK", f"{n}. {path} (last change {_fmt_ns(ns)})")

    try:
        run_plan(plan, env=dict(os.environ), logger=logger, runner=runner, dry_run=cfg.dry_run)
    except ExternalToolFailure as e:
        if e.stderr:
            logger.error(e.stderr.rstrip())
        log_action(logger, "SYNC_FAIL", str(e), level=logging.ERROR)
        return 1

    logger.info("Success!")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
