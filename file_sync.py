# /file_sync.py
r"""
File Sync (no UI)
- Watches a source folder and mirrors the files it selects into an output folder.
- Full sync on startup, then follows create / modify / delete / rename events.
- Selection is by file name: ignore regexes first, then include regexes
  (nothing is mirrored unless an include rule matches).
  Optional gitignore-style path rules (ignorePaths) skip whole subtrees.
- Editor friendly:
  - copies wait a settle delay so the writer can finish its save burst
  - a change for a file that is already being copied is dropped
  - locked files are retried every 500ms for up to 3s
- Deleting a source file deletes its mirror and removes the folder it leaves empty.
- Settings come from FileSync-UserConfig.json / FileSync-ProjectConfig.json,
  searched from the start folder upward. User values win over project values.
- Console commands while running:
  - sync   copy every selected file again
  - clear  delete every mirrored file
  - exit   stop watching

Config file (either name):
  {
    "srcFiles": [".*\\.txt$"],
    "ignoreFiles": ["^\\."],
    "ignorePaths": ["node_modules/"],
    "outputFolder": "../mirror"
  }

Usage
  pip install watchdog pathspec colorama
  python file_sync.py
  python file_sync.py --root "/project" --output "/mirror" --log-dir logs
"""

from __future__ import annotations

import argparse
import datetime as dt
import enum
import errno
import functools
import json
import logging
import os
import queue
import re
import sys
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, Optional, TextIO, Union

from colorama import init as colorama_init
from pathspec import PathSpec
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

LOGGER_NAME = "file_sync"

USER_CONFIG_NAME = "FileSync-UserConfig.json"
PROJECT_CONFIG_NAME = "FileSync-ProjectConfig.json"
SETTINGS_FIELDS = ("srcFiles", "ignoreFiles", "ignorePaths", "outputFolder")

# Seconds. Copies wait FILE_WATCH_DELAY so the program that saved the file gets there first.
FILE_WATCH_DELAY = 1.0
RETRY_DELAY = 0.5
MAX_RETRY_TIME = 3.0
MAX_WORKERS = 8

PathLike = Union[str, "os.PathLike[str]"]


# -------------------------
# Console styling
# -------------------------

class Ansi:
    RESET = "\x1b[0m"
    RED = "\x1b[31m"
    GREEN = "\x1b[32m"
    CYAN = "\x1b[36m"
    ORANGE = "\x1b[38;5;208m"
    WHITE = "\x1b[97m"
    LIGHT_BROWN = "\x1b[33m"


ACTION_COLORS = {
    "COPY": Ansi.GREEN,
    "DELETE": Ansi.ORANGE,
    "RMDIR": Ansi.LIGHT_BROWN,
    "RETRY": Ansi.ORANGE,
    "SKIP": Ansi.WHITE,
    "SYNC": Ansi.CYAN,
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
        is_dir = getattr(record, "is_dir", None)
        path_text = getattr(record, "path_text", None)

        if action and action in base:
            action_color = ACTION_COLORS.get(action, "")
            if record.levelno >= logging.WARNING:
                action_color = Ansi.ORANGE
            if action_color:
                base = base.replace(action, f"{action_color}{action}{Ansi.RESET}", 1)

        if path_text and path_text in base:
            pcolor = Ansi.LIGHT_BROWN if is_dir else Ansi.WHITE
            base = base.replace(path_text, f"{pcolor}{path_text}{Ansi.RESET}")

        return base


def _today_log_name(prefix: str = "file_sync") -> str:
    return f"{prefix}_{dt.date.today().isoformat()}.log"


def setup_logger(log_dir: Optional[Path] = None) -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.INFO)
    logger.propagate = False

    if logger.handlers:
        return logger

    colorama_init()

    fmt = "%(asctime)s | %(levelname)s | %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"

    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(logging.INFO)
    ch.setFormatter(ColorizingFormatter(use_color=_supports_color(sys.stdout), fmt=fmt, datefmt=datefmt))
    logger.addHandler(ch)

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        log_path = log_dir / _today_log_name()
        fh = logging.FileHandler(log_path, encoding="utf-8")
        fh.setFormatter(logging.Formatter(fmt=fmt, datefmt=datefmt))
        fh.setLevel(logging.INFO)
        logger.addHandler(fh)
        logger.info("Logging to: %s", log_path)

    return logger


def log_action(
    logger: logging.Logger,
    action: str,
    message: str,
    path: Optional[Path] = None,
    is_dir: Optional[bool] = None,
    level: int = logging.INFO,
) -> None:
    extra = {"action": action}
    if path is not None:
        extra["path_text"] = str(path)
        extra["is_dir"] = bool(is_dir) if is_dir is not None else (path.exists() and path.is_dir())
    logger.log(level, f"{action} | {message}", extra=extra)


# -------------------------
# Errors
# -------------------------

class FileSyncError(Exception):
    """Base class for errors raised by the sync system."""


class ConfigError(FileSyncError):
    pass


class WatchSubscriptionError(FileSyncError):
    """The watched folder could not be subscribed to; startup is aborted."""


class RetryExhaustedError(OSError):
    """A transient I/O failure outlasted the retry ceiling."""


# -------------------------
# Paths
# -------------------------

_SEPARATOR_RUN = re.compile(r"/{2,}")
_DRIVE = re.compile(r"^[A-Za-z]:$")


def sanitize(path: PathLike) -> str:
    return _SEPARATOR_RUN.sub("/", os.fspath(path).replace("\\", "/"))


def ancestors(path: PathLike) -> Iterator[str]:
    """
    Yield the sanitized path, then each parent folder, nearest first.
    The bare root ("/") and bare drives ("C:") are never yielded.
    """
    current = sanitize(path).rstrip("/")
    while current and not _DRIVE.match(current):
        yield current
        cut = current.rfind("/")
        if cut <= 0:
            return
        current = current[:cut]


def _is_subpath(child: Path, parent: Path) -> bool:
    try:
        child.relative_to(parent)
        return True
    except ValueError:
        return False


def validate_paths(root: Path, output_root: Path) -> Path:
    root = root.expanduser().resolve()

    if not root.exists() or not root.is_dir():
        raise ConfigError(f"Watched folder does not exist or is not a folder: {root}")
    if root == output_root:
        raise ConfigError("Watched and output folders must be different.")
    if _is_subpath(root, output_root):
        raise ConfigError("Watched folder must NOT be inside the output folder (would cause confusion).")

    return root


# -------------------------
# Settings
# -------------------------

@dataclass(frozen=True)
class SyncSettings:
    source_include_patterns: tuple[str, ...]
    ignore_patterns: tuple[str, ...]
    output_root: Path
    ignore_paths: tuple[str, ...] = ()

    @classmethod
    def from_config(cls, data: dict, base_dir: Path) -> "SyncSettings":
        output = data.get("outputFolder")
        if not output:
            raise ConfigError("No outputFolder configured (set it in a config file or pass --output).")
        if not isinstance(output, str):
            raise ConfigError(f"outputFolder must be a string, got {type(output).__name__}")

        output_root = Path(output).expanduser()
        if not output_root.is_absolute():
            output_root = Path(base_dir) / output_root

        return cls(
            source_include_patterns=_pattern_list(data, "srcFiles"),
            ignore_patterns=_pattern_list(data, "ignoreFiles"),
            output_root=output_root.resolve(),
            ignore_paths=_pattern_list(data, "ignorePaths"),
        )

    def to_config(self) -> dict:
        return {
            "srcFiles": list(self.source_include_patterns),
            "ignoreFiles": list(self.ignore_patterns),
            "ignorePaths": list(self.ignore_paths),
            "outputFolder": sanitize(self.output_root),
        }


def _pattern_list(data: dict, key: str) -> tuple[str, ...]:
    value = data.get(key)
    if value is None:
        return ()
    if not isinstance(value, list) or not all(isinstance(p, str) for p in value):
        raise ConfigError(f"{key} must be a list of strings")
    return tuple(value)


def find_config_files(start_dir: PathLike) -> tuple[Optional[Path], Optional[Path]]:
    user_path: Optional[Path] = None
    project_path: Optional[Path] = None

    for folder in ancestors(start_dir):
        if user_path is None and (Path(folder) / USER_CONFIG_NAME).is_file():
            user_path = Path(folder) / USER_CONFIG_NAME
        if project_path is None and (Path(folder) / PROJECT_CONFIG_NAME).is_file():
            project_path = Path(folder) / PROJECT_CONFIG_NAME
        if user_path is not None and project_path is not None:
            break

    return user_path, project_path


def load_config_file(path: Path) -> dict:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise ConfigError(f"Could not read config {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config {path} must contain a JSON object")
    return data


def combine_settings(user_path: Optional[Path], project_path: Optional[Path]) -> dict:
    """
    Merge the two config files field by field.
    Precedence per field: user value, then project value, then the default.
    """
    user = load_config_file(user_path) if user_path else {}
    project = load_config_file(project_path) if project_path else {}

    combined = {}
    for name in SETTINGS_FIELDS:
        if user.get(name) is not None:
            combined[name] = user[name]
        elif project.get(name) is not None:
            combined[name] = project[name]
    return combined


def load_settings(
    start_dir: Path,
    output_override: Optional[str] = None,
    logger: Optional[logging.Logger] = None,
) -> tuple[SyncSettings, Path]:
    logger = logger or logging.getLogger(LOGGER_NAME)
    user_path, project_path = find_config_files(start_dir)

    if user_path is not None:
        logger.info("FOUND user config at:    %s", user_path)
    if project_path is not None:
        logger.info("FOUND project config at: %s", project_path)

    # A project config pins the watched folder to its own location.
    listen_dir = project_path.parent if project_path is not None else Path(start_dir)

    data = combine_settings(user_path, project_path)
    if output_override:
        data["outputFolder"] = output_override

    settings = SyncSettings.from_config(data, listen_dir)
    logger.info("Settings: %s", json.dumps(settings.to_config(), indent=2))
    return settings, listen_dir


# -------------------------
# Inclusion filter
# -------------------------

@functools.lru_cache(maxsize=None)
def _compile_rule(pattern: str) -> Optional[re.Pattern]:
    try:
        return re.compile(pattern)
    except re.error as e:
        logging.getLogger(LOGGER_NAME).error("Invalid file pattern %r will never match: %s", pattern, e)
        return None


def _matches_any(file_name: str, patterns: tuple[str, ...]) -> bool:
    for pattern in patterns:
        rule = _compile_rule(pattern)
        if rule is not None and rule.search(file_name):
            return True
    return False


def should_sync(file_name: str, settings: SyncSettings) -> bool:
    if _matches_any(file_name, settings.ignore_patterns):
        return False
    return _matches_any(file_name, settings.source_include_patterns)


# -------------------------
# Retrying I/O
# -------------------------

_TRANSIENT_WINERRORS = {
    32,  # ERROR_SHARING_VIOLATION
    33,  # ERROR_LOCK_VIOLATION
}
_TRANSIENT_ERRNOS = {errno.EACCES, errno.EPERM, errno.EBUSY, errno.EAGAIN, errno.ETXTBSY}


def is_transient_io_error(exc: BaseException) -> bool:
    if not isinstance(exc, OSError):
        return False
    if getattr(exc, "winerror", None) in _TRANSIENT_WINERRORS:
        return True
    return exc.errno in _TRANSIENT_ERRNOS


def _read_bytes(path: Path) -> bytes:
    with open(path, "rb") as f:
        return f.read()


def _write_bytes(path: Path, data: bytes) -> None:
    with open(path, "wb") as f:
        f.write(data)


def _retry_io(
    operation: Callable[[], object],
    doing: str,
    path: Path,
    retry_delay: float,
    max_retry_time: float,
    logger: logging.Logger,
):
    elapsed = 0.0
    while True:
        try:
            result = operation()
        except OSError as e:
            if not is_transient_io_error(e):
                raise
            elapsed += retry_delay
            if elapsed >= max_retry_time:
                raise RetryExhaustedError(e.errno, f"gave up {doing} after {elapsed:.1f}s: {e}", os.fspath(path)) from e
            log_action(
                logger,
                "RETRY",
                f"{type(e).__name__}: {e} (retrying {doing} in {int(retry_delay * 1000)}ms)...",
                path=path,
                is_dir=False,
                level=logging.WARNING,
            )
            time.sleep(retry_delay)
            continue

        if elapsed > 0:
            log_action(logger, "RETRY", f"Done {doing}! {path}", path=path, is_dir=False)
        return result


def read_all_with_retry(
    path: Path,
    retry_delay: float = RETRY_DELAY,
    max_retry_time: float = MAX_RETRY_TIME,
    logger: Optional[logging.Logger] = None,
) -> bytes:
    """
    Read the whole file, retrying while it is locked by another program.
    Raises RetryExhaustedError once the retry ceiling is reached; any
    non-transient error (e.g. FileNotFoundError) is raised immediately.
    """
    return _retry_io(
        lambda: _read_bytes(path),
        "reading",
        path,
        retry_delay,
        max_retry_time,
        logger or logging.getLogger(LOGGER_NAME),
    )


def write_all_with_retry(
    path: Path,
    data: bytes,
    retry_delay: float = RETRY_DELAY,
    max_retry_time: float = MAX_RETRY_TIME,
    logger: Optional[logging.Logger] = None,
) -> bool:
    """
    Replace the file's contents, retrying while it is locked.
    Best effort: returns False after logging once the retry ceiling is reached.
    """
    logger = logger or logging.getLogger(LOGGER_NAME)
    try:
        _retry_io(lambda: _write_bytes(path, data), "writing", path, retry_delay, max_retry_time, logger)
    except RetryExhaustedError as e:
        log_action(logger, "RETRY", f"Giving up writing {path} | {e}", path=path, is_dir=False, level=logging.ERROR)
        return False
    return True


# -------------------------
# Empty folder pruning
# -------------------------

def _is_empty_dir(folder: Path) -> bool:
    with os.scandir(folder) as entries:
        return next(entries, None) is None


def prune_empty_ancestors(start_dir: PathLike, logger: Optional[logging.Logger] = None) -> Optional[Path]:
    """
    Remove the farthest empty folder in the unbroken run of empty folders
    starting at `start_dir`. Stops at the first folder that has any entry.
    Returns the removed folder, or None.
    """
    logger = logger or logging.getLogger(LOGGER_NAME)

    last_empty: Optional[Path] = None
    for folder in ancestors(start_dir):
        try:
            empty = _is_empty_dir(Path(folder))
        except FileNotFoundError:
            break
        if not empty:
            break
        last_empty = Path(folder)

    if last_empty is None:
        return None

    # rmdir, never rmtree: only a folder that is still empty may go.
    os.rmdir(last_empty)
    log_action(logger, "RMDIR", f"Removed empty folder {last_empty}", path=last_empty, is_dir=True)
    return last_empty


# -------------------------
# In-flight registry
# -------------------------

class InFlightRegistry:
    """
    Source paths with a create/update copy in progress, mapped to when it began.
    Safe to share between threads; add() is an atomic test-and-insert.
    """

    def __init__(self):
        self._started: dict[str, dt.datetime] = {}
        self._guard = threading.Lock()

    def add(self, path: PathLike) -> bool:
        key = sanitize(path)
        with self._guard:
            if key in self._started:
                return False
            self._started[key] = dt.datetime.now()
            return True

    def discard(self, path: PathLike) -> None:
        key = sanitize(path)
        with self._guard:
            self._started.pop(key, None)

    def started_at(self, path: PathLike) -> Optional[dt.datetime]:
        key = sanitize(path)
        with self._guard:
            return self._started.get(key)

    def __contains__(self, path: PathLike) -> bool:
        return self.started_at(path) is not None

    def __len__(self) -> int:
        with self._guard:
            return len(self._started)


# -------------------------
# Watchdog events
# -------------------------

@dataclass(frozen=True)
class FileChange:
    path: Path
    should_exist: bool
    action: str


def _event_path(raw) -> Path:
    return Path(os.fsdecode(raw))


class ChangeForwarder(FileSystemEventHandler):
    """Turns watchdog callbacks into FileChange messages; does no I/O itself."""

    def __init__(self, post: Callable[[FileChange], None]):
        self.post = post

    def on_created(self, event: FileSystemEvent):
        if not event.is_directory:
            self.post(FileChange(_event_path(event.src_path), True, "Copying new file"))

    def on_modified(self, event: FileSystemEvent):
        if not event.is_directory:
            self.post(FileChange(_event_path(event.src_path), True, "Updating existing file"))

    def on_deleted(self, event: FileSystemEvent):
        if not event.is_directory:
            self.post(FileChange(_event_path(event.src_path), False, "Deleting file"))

    def on_moved(self, event: FileSystemEvent):
        if event.is_directory:
            return
        self.post(FileChange(_event_path(event.src_path), False, "Deleting file"))
        self.post(FileChange(_event_path(event.dest_path), True, "Copying new file"))


# -------------------------
# Sync system
# -------------------------

class SyncState(enum.Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class Command(enum.Enum):
    SYNC = "sync"
    CLEAR = "clear"


@dataclass
class _CommandRequest:
    command: Command
    future: Future
    delay: float = 0.0
    startup: bool = False


_STOP = object()


class FileSyncSystem:
    """
    Watches one folder and keeps a filtered mirror of it under settings.output_root.

    Watchdog only posts FileChange messages. A single dispatcher thread takes
    them off the queue one at a time, together with the manual sync/clear
    commands, so none of them interleave. Copies run on a worker pool after the
    settle delay; a path already being copied is not copied twice.
    """

    def __init__(
        self,
        logger: Optional[logging.Logger] = None,
        settle_delay: float = FILE_WATCH_DELAY,
        retry_delay: float = RETRY_DELAY,
        max_retry_time: float = MAX_RETRY_TIME,
        max_workers: int = MAX_WORKERS,
    ):
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self.settle_delay = settle_delay
        self.retry_delay = retry_delay
        self.max_retry_time = max_retry_time
        self.max_workers = max_workers

        self.in_flight = InFlightRegistry()
        self.root: Optional[Path] = None
        self.settings: Optional[SyncSettings] = None

        self._cancel = threading.Event()
        self._path_rules: Optional[PathSpec] = None
        self._queue: queue.Queue = queue.Queue()
        self._observer = None
        self._dispatcher: Optional[threading.Thread] = None
        self._workers: Optional[ThreadPoolExecutor] = None
        self._running: Optional[threading.Thread] = None
        self._tree_lock = threading.Lock()

        self._state = SyncState.IDLE
        self._state_guard = threading.Lock()

    # -- state --

    @property
    def state(self) -> SyncState:
        with self._state_guard:
            return self._state

    def _set_state(self, state: SyncState, expected: Optional[tuple[SyncState, ...]] = None) -> bool:
        with self._state_guard:
            if expected is not None and self._state not in expected:
                return False
            self._state = state
        self.logger.debug("State: %s", state.value)
        return True

    # -- lifecycle --

    def start_listening(
        self,
        root: PathLike,
        settings: SyncSettings,
        cancellation: Optional[threading.Event] = None,
    ) -> threading.Thread:
        if self._running is not None and self._running.is_alive():
            self.logger.warning("Already listening on %s; start request ignored", self.root)
            return self._running

        self._set_state(SyncState.STARTING)
        self.root = Path(root).expanduser().resolve()
        self.settings = settings
        self._cancel = cancellation if cancellation is not None else threading.Event()
        self._path_rules = PathSpec.from_lines("gitwildmatch", settings.ignore_paths)
        self._queue = queue.Queue()

        # Queued before the observer starts, so every watch event is handled after the initial sync.
        self._post_command(Command.SYNC, delay=self.settle_delay, startup=True)

        try:
            if not self.root.is_dir():
                raise FileNotFoundError(errno.ENOENT, "watched folder does not exist", str(self.root))
            observer = Observer()
            observer.schedule(ChangeForwarder(self._queue.put), str(self.root), recursive=True)
            observer.start()
        except Exception as e:
            self._set_state(SyncState.STOPPED)
            raise WatchSubscriptionError(f"Could not watch {self.root}: {e}") from e
        self._observer = observer

        self._workers = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="file-sync-copy")
        self._dispatcher = threading.Thread(target=self._dispatch_loop, name="file-sync-dispatch", daemon=True)
        self._dispatcher.start()

        self._running = threading.Thread(target=self._supervise, name="file-sync-supervisor", daemon=True)
        self._running.start()

        log_action(self.logger, "SYNC", f"Listening on {self.root} -> {settings.output_root}", path=self.root, is_dir=True)
        return self._running

    def stop_listening(self, timeout: Optional[float] = None) -> None:
        if self._running is None:
            return
        self._set_state(SyncState.STOPPING, expected=(SyncState.STARTING, SyncState.RUNNING))
        self._cancel.set()
        self._running.join(timeout)

    def _supervise(self) -> None:
        self._cancel.wait()
        self._set_state(SyncState.STOPPING, expected=(SyncState.STARTING, SyncState.RUNNING))
        self.logger.info("Stopping watcher...")

        try:
            self._observer.stop()
            self._observer.join(timeout=10)
        except Exception as e:
            self.logger.error("Error stopping watcher: %s", e)

        # Drain whatever is queued, then let running copies finish.
        self._queue.put(_STOP)
        self._dispatcher.join()
        self._reject_leftovers()
        self._workers.shutdown(wait=True)
        self._observer = None

        self._set_state(SyncState.STOPPED)
        self.logger.info("Stopped.")

    # -- manual commands --

    def sync_all(self) -> Future:
        """Copy every selected file. Resolves to the number of files handled."""
        return self._post_command(Command.SYNC)

    def clear_all(self) -> Future:
        """Delete the mirror of every selected file. Resolves to the number of files handled."""
        return self._post_command(Command.CLEAR)

    def _post_command(self, command: Command, delay: float = 0.0, startup: bool = False) -> Future:
        request = _CommandRequest(command, Future(), delay, startup)
        # Checked and queued under the state guard: once STOPPING is set, nothing lands behind _STOP.
        with self._state_guard:
            if not startup and self._state not in (SyncState.STARTING, SyncState.RUNNING):
                raise RuntimeError(f"Cannot {command.value}: sync system is {self._state.value}")
            self._queue.put(request)
        return request.future

    def _reject_leftovers(self) -> None:
        while True:
            try:
                message = self._queue.get_nowait()
            except queue.Empty:
                return
            if isinstance(message, _CommandRequest) and not message.future.done():
                message.future.set_exception(RuntimeError(f"{message.command.value} dropped: sync system stopped"))

    # -- dispatcher --

    def _dispatch_loop(self) -> None:
        while True:
            message = self._queue.get()
            if message is _STOP:
                return
            if isinstance(message, _CommandRequest):
                self._run_command(message)
            else:
                self._handle_change(message)

    def _run_command(self, request: _CommandRequest) -> None:
        try:
            if request.delay > 0 and self._cancel.wait(request.delay):
                result = 0
            else:
                result = self._walk_tree(request.command)
        except Exception as e:
            self.logger.exception("%s failed", request.command.value)
            request.future.set_exception(e)
        else:
            request.future.set_result(result)

        if request.startup:
            self._set_state(SyncState.RUNNING, expected=(SyncState.STARTING,))

    def _walk_tree(self, command: Command) -> int:
        should_exist = command is Command.SYNC
        action = "Copying existing file" if should_exist else "Deleting synced file"
        log_action(self.logger, "SYNC", f"{command.value}: start", path=self.root, is_dir=True)

        count = 0
        for path in sorted(self.root.rglob("*")):
            if not path.is_file() or not self._in_scope(path):
                continue
            if should_exist:
                self._request_copy(path, 0, action)
            else:
                self._remove_mirror(path, action)
            count += 1

        log_action(self.logger, "SYNC", f"{command.value}: done ({count} files)", path=self.root, is_dir=True)
        return count

    def _handle_change(self, change: FileChange) -> None:
        try:
            if not self._in_scope(change.path):
                return
            if change.should_exist:
                self._request_copy(change.path, self.settle_delay, change.action)
            else:
                self._remove_mirror(change.path, change.action)
        except Exception:
            self.logger.exception("Error handling change for %s", change.path)

    def _in_scope(self, path: Path) -> bool:
        try:
            rel = path.relative_to(self.root)
        except ValueError:
            return False
        # The mirror may live inside the watched folder; its own files never count.
        if _is_subpath(path, self.settings.output_root):
            return False
        if self._path_rules.match_file(rel.as_posix()):
            return False
        return should_sync(path.name, self.settings)

    def _mirror_path(self, src: Path) -> Path:
        return self.settings.output_root / src.relative_to(self.root)

    def _relative(self, src: Path) -> str:
        return sanitize(src.relative_to(self.root))

    # -- file operations --

    def _request_copy(self, src: Path, delay: float, action: str) -> None:
        if not self.in_flight.add(src):
            self.logger.debug("Dropping duplicate change for %s (copy already in flight)", src)
            return

        if delay <= 0:
            self._copy_registered(src, 0, action)
            return
        try:
            self._workers.submit(self._copy_registered, src, delay, action)
        except RuntimeError:
            self.in_flight.discard(src)
            raise

    def _copy_registered(self, src: Path, delay: float, action: str) -> None:
        try:
            if delay > 0:
                time.sleep(delay)

            dst = self._mirror_path(src)
            log_action(self.logger, "COPY", f"{action} ({self._relative(src)})", path=dst, is_dir=False)

            try:
                data = read_all_with_retry(src, self.retry_delay, self.max_retry_time, self.logger)
            except FileNotFoundError:
                log_action(self.logger, "SKIP", f"Source gone before copy: {src}", path=src, is_dir=False)
                return
            except RetryExhaustedError as e:
                log_action(self.logger, "SKIP", f"Copy skipped, source unreadable | {e}", path=src, is_dir=False, level=logging.WARNING)
                return

            with self._tree_lock:
                dst.parent.mkdir(parents=True, exist_ok=True)
                write_all_with_retry(dst, data, self.retry_delay, self.max_retry_time, self.logger)
        except Exception:
            self.logger.exception("Error copying %s", src)
        finally:
            self.in_flight.discard(src)

    def _remove_mirror(self, src: Path, action: str) -> None:
        try:
            dst = self._mirror_path(src)
            log_action(self.logger, "DELETE", f"{action} ({self._relative(src)})", path=dst, is_dir=False)
            with self._tree_lock:
                dst.unlink(missing_ok=True)
                prune_empty_ancestors(dst.parent, self.logger)
        except Exception:
            self.logger.exception("Error deleting mirror of %s", src)


# -------------------------
# Console commands
# -------------------------

class CommandLoop(threading.Thread):
    """Reads sync / clear / exit, one per line, until cancelled or end of input."""

    def __init__(
        self,
        system: FileSyncSystem,
        cancellation: threading.Event,
        stream: Optional[TextIO] = None,
        logger: Optional[logging.Logger] = None,
    ):
        super().__init__(name="file-sync-commands", daemon=True)
        self.system = system
        self.cancellation = cancellation
        self.stream = stream if stream is not None else sys.stdin
        self.logger = logger or logging.getLogger(LOGGER_NAME)

    def run(self) -> None:
        while not self.cancellation.is_set():
            line = self.stream.readline()
            if not line:
                return

            command = line.strip()
            if command == "exit":
                self.logger.info("Exit requested")
                self.cancellation.set()
            elif command in ("sync", "clear"):
                try:
                    pending = self.system.sync_all() if command == "sync" else self.system.clear_all()
                except RuntimeError as e:
                    self.logger.warning("%s ignored: %s", command, e)
                    return
                try:
                    pending.result()
                except Exception as e:
                    self.logger.error("%s failed: %s", command, e)


# -------------------------
# Main
# -------------------------

def parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Mirror matching files from a watched folder into an output folder.")
    p.add_argument("--root", type=str, default=None, help="Folder to start in; config files are searched from here upward. Defaults to the current folder.")
    p.add_argument("--output", type=str, default=None, help="Output folder (overrides outputFolder from config).")
    p.add_argument("--log-dir", type=str, default=None, help="Directory for log files. Console only when omitted.")
    p.add_argument("--settle-delay", type=float, default=None, help=f"Seconds to wait before copying a changed file (default {FILE_WATCH_DELAY}).")
    p.add_argument("--no-commands", action="store_true", help="Do not read sync/clear/exit commands from stdin.")
    return p.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv if argv is not None else sys.argv[1:])
    logger = setup_logger(Path(args.log_dir).expanduser() if args.log_dir else None)

    start_dir = Path(args.root or os.getcwd()).expanduser().resolve()
    logger.info("File Sync starting in %s ...", sanitize(start_dir))
    output_override = str(Path(args.output).expanduser().resolve()) if args.output else None

    try:
        settings, listen_dir = load_settings(start_dir, output_override, logger=logger)
        listen_dir = validate_paths(listen_dir, settings.output_root)
    except ConfigError as e:
        logger.error("Config error: %s", e)
        return 2

    settle_delay = FILE_WATCH_DELAY if args.settle_delay is None else max(0.0, args.settle_delay)
    system = FileSyncSystem(logger=logger, settle_delay=settle_delay)
    cancellation = threading.Event()

    try:
        handle = system.start_listening(listen_dir, settings, cancellation)
    except WatchSubscriptionError as e:
        logger.error("%s", e)
        return 1

    if not args.no_commands:
        CommandLoop(system, cancellation, logger=logger).start()
        logger.info("Commands: sync | clear | exit")

    try:
        while handle.is_alive():
            handle.join(0.5)
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        system.stop_listening()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
