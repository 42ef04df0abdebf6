import os
import sys
import json
import time
import errno
import shutil
import logging
import argparse
import datetime
import tempfile
import threading
import subprocess
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Dict, Any, Callable, Iterable, Tuple

import filelock
import psutil


# Color codes for better terminal output
class Colors:
    RED = '\033[91m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    BLUE = '\033[94m'
    MAGENTA = '\033[95m'
    CYAN = '\033[96m'
    WHITE = '\033[97m'
    BOLD = '\033[1m'
    UNDERLINE = '\033[4m'
    END = '\033[0m'


logger = logging.getLogger("rotator")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"

# On-disk layout under <backupRoot>
LOG_FILE = "log.log"
FINGERPRINT_FILE = "fingerprints.json"
LOCK_FILE = ".rotator.lock"
RECOVERY_SLOT_NAME = "latest recovered"
PLACEHOLDER_SLOT_NAME = "0"
RESTORE_TMP_MARKER = ".pre-restore-"

# Robocopy-compatible result bits
COPY_OK = 0
COPY_FILES_COPIED = 1
COPY_EXTRAS_REMOVED = 2
COPY_FAILED = 8
COPY_FATAL = 16

Fingerprint = Dict[str, int]
Fingerprints = Dict[str, Fingerprint]


class RotatorError(Exception):
    """Base class for save rotator failures."""


class ConfigError(RotatorError):
    """Raised when the configuration holds unusable values."""


class RestoreError(RotatorError):
    """Raised when a restore cannot start or has to abort."""


class GameActiveError(RestoreError):
    """Raised when a restore is attempted while the game is running."""


class LockTimeoutError(RotatorError):
    """Raised when the backup-root lock cannot be acquired in time."""


class ConsoleFormatter(logging.Formatter):
    """Render log records with the terminal color palette"""

    LEVEL_STYLES = {
        logging.DEBUG: ("·", Colors.WHITE, False),
        logging.INFO: ("ℹ", Colors.BLUE, False),
        logging.WARNING: ("⚠", Colors.YELLOW, True),
        logging.ERROR: ("✗", Colors.RED, True),
    }

    def format(self, record: logging.LogRecord) -> str:
        if getattr(record, "success", False):
            symbol, color, bold = "✓", Colors.GREEN, True
        else:
            symbol, color, bold = self.LEVEL_STYLES.get(record.levelno, ("✗", Colors.RED, True))
        prefix = Colors.BOLD if bold else ""
        return f"{prefix}{color}{symbol} {record.getMessage()}{Colors.END}"


def setup_logging(backup_root: Optional[Path] = None, console: bool = True,
                  level: int = logging.INFO) -> None:
    """Route the rotator logger to <backup_root>/log.log and optionally the terminal"""
    logger.setLevel(level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    if backup_root is not None:
        backup_root = Path(backup_root)
        try:
            backup_root.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(backup_root / LOG_FILE, mode="a", encoding="utf-8")
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
            logger.addHandler(file_handler)
        except OSError as e:
            print(f"{Colors.YELLOW}⚠ Cannot open log file under {backup_root}: {e}{Colors.END}")

    if console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(ConsoleFormatter())
        logger.addHandler(console_handler)


def print_colored(text: str, color: str = Colors.WHITE, bold: bool = False, end: str = "\n"):
    """Print colored text to terminal"""
    prefix = Colors.BOLD if bold else ""
    print(f"{prefix}{color}{text}{Colors.END}", end=end)


def print_header(text: str):
    """Print a formatted header"""
    print_colored(f"\n{'='*50}", Colors.CYAN)
    print_colored(f" {text} ", Colors.CYAN, bold=True)
    print_colored(f"{'='*50}", Colors.CYAN)


def print_success(text: str):
    """Log a success message"""
    logger.info(text, extra={"success": True})


def print_error(text: str):
    """Log an error message"""
    logger.error(text)


def print_warning(text: str):
    """Log a warning message"""
    logger.warning(text)


def print_info(text: str):
    """Log an informational message"""
    logger.info(text)


def format_file_size(size_bytes: int) -> str:
    """Format file size in human readable format"""
    if size_bytes == 0:
        return "0B"
    size_names = ["B", "KB", "MB", "GB", "TB"]
    i = 0
    size = float(size_bytes)
    while size >= 1024.0 and i < len(size_names) - 1:
        size /= 1024.0
        i += 1
    return f"{size:.1f}{size_names[i]}"


def format_age(seconds: float) -> str:
    """Format an age in seconds the way backup listings show it"""
    seconds = max(0, int(seconds))
    if seconds >= 86400:
        return f"{seconds // 86400} days ago"
    if seconds >= 3600:
        return f"{seconds // 3600} hours ago"
    if seconds >= 60:
        return f"{seconds // 60} minutes ago"
    return "Just now"


def get_directory_size(path: Path) -> int:
    """Calculate total size of directory"""
    total_size = 0
    try:
        for dirpath, dirnames, filenames in os.walk(path):
            for filename in filenames:
                file_path = os.path.join(dirpath, filename)
                if os.path.exists(file_path):
                    total_size += os.path.getsize(file_path)
    except (OSError, FileNotFoundError):
        pass
    return total_size


def safe_rmtree(path):
    """Safely remove directory tree with Windows compatibility"""
    def handle_remove_readonly(func, path, exc_info):
        """Error handler for Windows read-only files"""
        exc = exc_info[1] if isinstance(exc_info, tuple) else exc_info
        if getattr(exc, 'errno', None) == errno.EACCES:
            os.chmod(path, 0o777)
            func(path)
        else:
            raise exc

    # onexc exists on Python 3.12+, onerror before that
    if sys.version_info >= (3, 12):
        shutil.rmtree(path, onexc=handle_remove_readonly)
    else:
        shutil.rmtree(path, onerror=handle_remove_readonly)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

DEFAULT_CONFIG_PATH = Path(__file__).parent / "rotator_config.json"

DEFAULT_TRACKED_FILES = (
    "map_p.bin",
    "map_t.bin",
    "map_meta.bin",
    "map_zone.bin",
    "players.db",
    "vehicles.db",
)

DEFAULT_SETTINGS: Dict[str, Any] = {
    "save_root": "~/Zomboid/Saves",
    "backup_root": "~/Zomboid/Backups",
    "save_frequency": 10,
    "save_count": 5,
    "tracked_files": list(DEFAULT_TRACKED_FILES),
    "failure_threshold": COPY_FAILED,
    "game_processes": ["ProjectZomboid64.exe", "ProjectZomboid32.exe", "ProjectZomboid64"],
    "copier": "auto",
    "copy_threads": 8,
    "copy_retries": 3,
    "retry_delay": 0.5,
    "skip_locked_files": False,
    "lock_timeout": 30,
}

COPIER_CHOICES = ("auto", "robocopy", "python")


def expand_path(path_str: str) -> str:
    """Expand environment variables and user paths"""
    # Expand environment variables
    expanded = os.path.expandvars(path_str)
    # Expand user home directory
    expanded = os.path.expanduser(expanded)
    return expanded


def load_rotator_config(config_path: Path) -> Dict[str, Any]:
    """Load rotator configuration from JSON file, writing defaults when missing"""
    config_path = Path(config_path)
    try:
        if config_path.exists():
            with open(config_path, 'r', encoding='utf-8') as f:
                raw = json.load(f)
            if not isinstance(raw, dict):
                raise ValueError("top-level JSON value must be an object")
            return {**DEFAULT_SETTINGS, **raw}
        else:
            default_config = dict(DEFAULT_SETTINGS)
            save_rotator_config(config_path, default_config)
            return default_config
    except (OSError, ValueError) as e:
        print_error(f"Failed to load config file: {e}")
        return dict(DEFAULT_SETTINGS)


def save_rotator_config(config_path: Path, config: Dict[str, Any]):
    """Save rotator configuration to JSON file"""
    try:
        with open(config_path, 'w', encoding='utf-8') as f:
            json.dump(config, f, indent=2, ensure_ascii=False)
    except OSError as e:
        print_error(f"Failed to save config file: {e}")


@dataclass(frozen=True)
class RotatorConfig:
    """Immutable configuration snapshot consumed by the monitor and restore paths.

    ``save_frequency`` is stored in minutes as written in the config file; every
    elapsed-time comparison and sleep uses ``save_frequency_seconds``.
    """
    save_root: Path
    backup_root: Path
    save_frequency: float = 10.0
    save_count: int = 5
    tracked_files: Tuple[str, ...] = DEFAULT_TRACKED_FILES
    failure_threshold: int = COPY_FAILED
    game_processes: Tuple[str, ...] = ()
    copier: str = "auto"
    copy_threads: int = 8
    copy_retries: int = 3
    retry_delay: float = 0.5
    skip_locked_files: bool = False
    lock_timeout: float = 30.0

    @property
    def save_frequency_seconds(self) -> float:
        return self.save_frequency * 60.0

    @property
    def fingerprint_path(self) -> Path:
        return self.backup_root / FINGERPRINT_FILE

    @property
    def log_path(self) -> Path:
        return self.backup_root / LOG_FILE

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "RotatorConfig":
        settings = {**DEFAULT_SETTINGS, **raw}
        try:
            save_frequency = float(settings["save_frequency"])
            save_count = int(settings["save_count"])
            failure_threshold = int(settings["failure_threshold"])
            copy_threads = int(settings["copy_threads"])
            copy_retries = int(settings["copy_retries"])
            retry_delay = float(settings["retry_delay"])
            lock_timeout = float(settings["lock_timeout"])
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid numeric setting: {e}") from e

        if not settings.get("save_root") or not settings.get("backup_root"):
            raise ConfigError("save_root and backup_root are required")
        if save_frequency <= 0:
            raise ConfigError("save_frequency must be greater than 0 minutes")
        if save_count < 1:
            raise ConfigError("save_count must be at least 1")
        if failure_threshold < 1:
            raise ConfigError("failure_threshold must be at least 1")

        tracked_files = settings.get("tracked_files")
        if isinstance(tracked_files, str) or not tracked_files:
            raise ConfigError("tracked_files must be a non-empty list of file names")

        copier = str(settings.get("copier", "auto")).lower()
        if copier not in COPIER_CHOICES:
            raise ConfigError(f"copier must be one of {', '.join(COPIER_CHOICES)}")

        game_processes = settings.get("game_processes") or []
        if isinstance(game_processes, str):
            game_processes = [game_processes]

        return cls(
            save_root=Path(expand_path(str(settings["save_root"]))),
            backup_root=Path(expand_path(str(settings["backup_root"]))),
            save_frequency=save_frequency,
            save_count=save_count,
            tracked_files=tuple(str(name) for name in tracked_files),
            failure_threshold=failure_threshold,
            game_processes=tuple(str(name) for name in game_processes),
            copier=copier,
            copy_threads=max(1, copy_threads),
            copy_retries=max(0, copy_retries),
            retry_delay=max(0.0, retry_delay),
            skip_locked_files=bool(settings.get("skip_locked_files", False)),
            lock_timeout=lock_timeout,
        )


def monitor_config_file(config_path: Path, callback_func: Callable[[], None],
                        interval: float = 1.0,
                        stop_event: Optional[threading.Event] = None) -> Optional[threading.Thread]:
    """Monitor config file for changes and call callback when modified"""
    config_path = Path(config_path)
    if not config_path.exists():
        return None

    stop_event = stop_event or threading.Event()
    last_modified = config_path.stat().st_mtime

    def monitor_loop():
        nonlocal last_modified
        while not stop_event.wait(interval):
            try:
                if config_path.exists():
                    current_modified = config_path.stat().st_mtime
                    if current_modified != last_modified:
                        last_modified = current_modified
                        print_info("Config file changed - reloading...")
                        callback_func()
            except Exception as e:
                print_warning(f"Config watcher error: {e}")

    monitor_thread = threading.Thread(target=monitor_loop, name="config-watcher", daemon=True)
    monitor_thread.start()
    return monitor_thread


# ---------------------------------------------------------------------------
# Save instances and slots
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SaveInstance:
    """A (world, save) pair with its live directory and backup slot tree."""
    world: str
    name: str
    save_root: Path
    backup_root: Path

    @property
    def key(self) -> str:
        return f"{self.world}/{self.name}"

    @property
    def live_dir(self) -> Path:
        return Path(self.save_root) / self.world / self.name

    @property
    def backup_dir(self) -> Path:
        return Path(self.backup_root) / self.world / self.name

    @property
    def recovery_dir(self) -> Path:
        return self.backup_dir / RECOVERY_SLOT_NAME

    @property
    def placeholder_dir(self) -> Path:
        return self.backup_dir / PLACEHOLDER_SLOT_NAME

    def slot_dir(self, index: int) -> Path:
        return self.backup_dir / str(index)


@dataclass
class SlotInfo:
    path: Path
    label: str
    mtime: float
    index: Optional[int] = None
    is_recovery: bool = False
    is_empty: bool = False

    @property
    def modified(self) -> datetime.datetime:
        return datetime.datetime.fromtimestamp(self.mtime)


def _is_hidden(name: str) -> bool:
    return name.startswith(".")


def _slot_mtime(path: Path) -> float:
    try:
        return path.stat().st_mtime
    except OSError:
        return 0.0


def _is_empty_dir(path: Path) -> bool:
    try:
        return not any(path.iterdir())
    except OSError:
        return False


def list_save_instances(save_root, backup_root) -> List[SaveInstance]:
    """Discover <save_root>/<world>/<save> directories, two levels deep only.

    Dot-prefixed directories are skipped, which keeps the temporary siblings
    left by a restore out of the monitor's view.
    """
    save_root = Path(save_root)
    instances: List[SaveInstance] = []
    try:
        worlds = sorted(p for p in save_root.iterdir() if p.is_dir() and not _is_hidden(p.name))
    except FileNotFoundError:
        print_warning(f"Save root does not exist: {save_root}")
        return instances

    for world in worlds:
        try:
            saves = sorted(p for p in world.iterdir() if p.is_dir() and not _is_hidden(p.name))
        except OSError as e:
            print_warning(f"Cannot read world '{world.name}': {e}")
            continue
        for save in saves:
            instances.append(SaveInstance(world.name, save.name, save_root, Path(backup_root)))
    return instances


def numbered_slots(instance: SaveInstance, capacity: Optional[int] = None) -> Dict[int, Path]:
    """Map slot index to directory for the numbered slots of an instance"""
    slots: Dict[int, Path] = {}
    try:
        entries = list(instance.backup_dir.iterdir())
    except FileNotFoundError:
        return slots
    for entry in entries:
        if not entry.is_dir() or not entry.name.isdigit():
            continue
        index = int(entry.name)
        if index < 1:
            continue
        if capacity is not None and index > capacity:
            continue
        slots[index] = entry
    return slots


def list_slots(instance: SaveInstance) -> List[SlotInfo]:
    """List restorable slots: the recovery slot first, then numbered slots newest first"""
    slots: List[SlotInfo] = []
    recovery = instance.recovery_dir
    if recovery.is_dir():
        slots.append(SlotInfo(
            path=recovery,
            label=RECOVERY_SLOT_NAME,
            mtime=_slot_mtime(recovery),
            is_recovery=True,
            is_empty=_is_empty_dir(recovery),
        ))

    numbered = [
        SlotInfo(path=path, label=f"Slot {index}", mtime=_slot_mtime(path),
                 index=index, is_empty=_is_empty_dir(path))
        for index, path in numbered_slots(instance).items()
    ]
    numbered.sort(key=lambda s: (-s.mtime, s.index))
    return slots + numbered


def find_leftover_restore_dirs(save_root) -> List[Path]:
    """Find live-save copies preserved by restores that failed"""
    save_root = Path(save_root)
    leftovers: List[Path] = []
    try:
        worlds = [p for p in save_root.iterdir() if p.is_dir() and not _is_hidden(p.name)]
    except FileNotFoundError:
        return leftovers
    for world in sorted(worlds):
        try:
            for entry in sorted(world.iterdir()):
                if entry.is_dir() and _is_hidden(entry.name) and RESTORE_TMP_MARKER in entry.name:
                    leftovers.append(entry)
        except OSError:
            continue
    return leftovers


def find_leftover_placeholders(backup_root) -> List[Path]:
    """Find recovery data parked by a restore that did not finish"""
    backup_root = Path(backup_root)
    leftovers: List[Path] = []
    for placeholder in sorted(backup_root.glob(f"*/*/{PLACEHOLDER_SLOT_NAME}")):
        if placeholder.is_dir() and not _is_hidden(placeholder.parent.name):
            leftovers.append(placeholder)
    return leftovers


# ---------------------------------------------------------------------------
# Fingerprints and change detection
# ---------------------------------------------------------------------------

class FingerprintStore:
    """Whole-document store of the last observed fingerprint per save instance.

    The store does no locking itself; callers serialize read-modify-write
    cycles with backup_root_lock.
    """

    def __init__(self, path):
        self.path = Path(path)

    def load(self) -> Fingerprints:
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            print_warning(f"Fingerprint store unreadable, treating as empty: {e}")
            return {}

        if not isinstance(data, dict):
            print_warning("Fingerprint store is not a mapping, treating as empty")
            return {}

        fingerprints: Fingerprints = {}
        for key, value in data.items():
            if not isinstance(value, dict):
                continue
            try:
                fingerprints[str(key)] = {
                    str(name): int(stamp)
                    for name, stamp in value.items()
                    if isinstance(stamp, (int, float)) and not isinstance(stamp, bool)
                }
            except (ValueError, OverflowError) as e:
                # NaN and Infinity parse as JSON but are not timestamps
                print_warning(f"Ignoring malformed fingerprint for {key}: {e}")
        return fingerprints

    def save(self, fingerprints: Fingerprints) -> None:
        """Atomically replace the backing document"""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_fd, temp_path = tempfile.mkstemp(
            dir=str(self.path.parent),
            prefix=".fingerprints.",
            suffix=".json.tmp",
        )
        try:
            with os.fdopen(temp_fd, 'w', encoding='utf-8') as f:
                json.dump(fingerprints, f, indent=2, sort_keys=True)
            os.replace(temp_path, self.path)
        except Exception:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise


def compute_signature(path, tracked_files: Iterable[str]) -> Fingerprint:
    """Record each tracked file's mtime in nanoseconds, 0 when absent"""
    path = Path(path)
    signature: Fingerprint = {}
    for name in tracked_files:
        try:
            signature[name] = (path / name).stat().st_mtime_ns
        except FileNotFoundError:
            signature[name] = 0
    return signature


def has_changed(old: Optional[Fingerprint], new: Fingerprint) -> bool:
    """Compare two fingerprints over the union of their keys"""
    if old is None:
        return True
    return any(old.get(name) != new.get(name) for name in set(old) | set(new))


# ---------------------------------------------------------------------------
# Slot rotation
# ---------------------------------------------------------------------------

def choose_slot(existing_slots: Iterable[int], slot_mtimes: Dict[int, float], capacity: int) -> int:
    """Pick the slot to write next.

    Below capacity the lowest unused index in 1..capacity is returned (count + 1
    for contiguous slots). At capacity the slot with the oldest mtime is
    evicted, lowest index first on ties.
    """
    if capacity < 1:
        raise ValueError("capacity must be at least 1")
    existing = sorted({index for index in existing_slots if 1 <= index <= capacity})
    if len(existing) < capacity:
        for index in range(1, capacity + 1):
            if index not in existing:
                return index
    return min(existing, key=lambda index: (slot_mtimes.get(index, 0.0), index))


def rotation_due(newest_slot_mtime: Optional[float], now: float, frequency_seconds: float) -> bool:
    """True when the most recently written slot is at least one save interval old"""
    if newest_slot_mtime is None:
        return True
    return now - newest_slot_mtime >= frequency_seconds


# ---------------------------------------------------------------------------
# Tree copy
# ---------------------------------------------------------------------------

def copy_succeeded(result_code: int, failure_threshold: int) -> bool:
    return result_code < failure_threshold


class TreeCopier:
    """Mirror src into dst and return a robocopy-style result code."""

    def copy(self, src, dst) -> int:
        raise NotImplementedError


class RobocopyCopier(TreeCopier):
    def __init__(self, threads: int = 8, retries: int = 3, wait_seconds: int = 1,
                 executable: str = "robocopy"):
        self.threads = max(1, min(128, threads))
        self.retries = max(0, retries)
        self.wait_seconds = max(0, wait_seconds)
        self.executable = executable

    def build_command(self, src, dst) -> List[str]:
        return [
            self.executable, str(src), str(dst),
            "/MIR", f"/MT:{self.threads}",
            f"/R:{self.retries}", f"/W:{self.wait_seconds}",
            "/NFL", "/NDL", "/NJH", "/NJS", "/NP",
        ]

    def copy(self, src, dst) -> int:
        try:
            completed = subprocess.run(self.build_command(src, dst), capture_output=True,
                                       text=True, check=False)
        except OSError as e:
            print_error(f"Failed to start {self.executable}: {e}")
            return COPY_FATAL
        return completed.returncode


class PythonTreeCopier(TreeCopier):
    """Portable mirror copy: only changed files are transferred, extras are removed."""

    def __init__(self, threads: int = 8, retries: int = 3, retry_delay: float = 0.5,
                 skip_locked_files: bool = False):
        self.threads = max(1, threads)
        self.retries = retries
        self.retry_delay = retry_delay
        self.skip_locked_files = skip_locked_files

    @staticmethod
    def _is_same_file(src: Path, dst: Path) -> bool:
        try:
            if not dst.is_file() or dst.is_symlink():
                return False
            s_stat = src.stat()
            d_stat = dst.stat()
        except OSError:
            return False
        return s_stat.st_size == d_stat.st_size and s_stat.st_mtime_ns == d_stat.st_mtime_ns

    def _safe_copy(self, src: Path, dst: Path) -> bool:
        """Copy a single file with retries; False when every attempt failed."""
        last_err = None
        for attempt in range(1, max(1, self.retries) + 1):
            try:
                shutil.copy2(src, dst)
                return True
            except OSError as e:
                last_err = e
                if attempt < self.retries:
                    time.sleep(self.retry_delay * attempt)
        if self.skip_locked_files:
            print_warning(f"Skipping locked file: {src} -> {dst} ({last_err})")
        else:
            print_error(f"Failed to copy {src} -> {dst}: {last_err}")
        return False

    @staticmethod
    def _remove_extras(src_dir: Path, dst_dir: Path, dirs: List[str], files: List[str]) -> bool:
        removed = False
        if not dst_dir.is_dir():
            return removed
        for entry in dst_dir.iterdir():
            if entry.name in dirs and entry.is_dir() and not entry.is_symlink():
                continue
            if entry.name in files and entry.is_file():
                continue
            if entry.is_dir() and not entry.is_symlink():
                safe_rmtree(entry)
            else:
                entry.unlink()
            removed = True
        return removed

    def copy(self, src, dst) -> int:
        src = Path(src)
        dst = Path(dst)
        if not src.is_dir():
            print_error(f"Copy source is not a directory: {src}")
            return COPY_FATAL
        try:
            dst.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            print_error(f"Cannot create copy destination {dst}: {e}")
            return COPY_FATAL

        code = COPY_OK
        pending: List[Tuple[Path, Path]] = []
        try:
            for root, dirs, files in os.walk(src):
                root_path = Path(root)
                target_root = dst / root_path.relative_to(src)
                if self._remove_extras(root_path, target_root, dirs, files):
                    code |= COPY_EXTRAS_REMOVED
                for name in dirs:
                    (target_root / name).mkdir(exist_ok=True)
                for name in files:
                    source_file = root_path / name
                    target_file = target_root / name
                    if not self._is_same_file(source_file, target_file):
                        pending.append((source_file, target_file))
        except OSError as e:
            print_error(f"Failed to mirror {src} -> {dst}: {e}")
            return code | COPY_FATAL

        if not pending:
            return code

        abort = threading.Event()

        def copy_one(pair: Tuple[Path, Path]) -> bool:
            if abort.is_set():
                return False
            ok = self._safe_copy(*pair)
            if not ok and not self.skip_locked_files:
                abort.set()
            return ok

        with ThreadPoolExecutor(max_workers=self.threads) as pool:
            results = list(pool.map(copy_one, pending))

        if any(results):
            code |= COPY_FILES_COPIED
        if not all(results):
            code |= COPY_FAILED
        return code


def make_copier(config: RotatorConfig) -> TreeCopier:
    """Pick the tree-copy primitive for this platform and configuration"""
    use_robocopy = config.copier == "robocopy" or (
        config.copier == "auto" and shutil.which("robocopy") is not None)
    if use_robocopy:
        return RobocopyCopier(threads=config.copy_threads, retries=config.copy_retries,
                              wait_seconds=int(round(config.retry_delay)) or 1)
    return PythonTreeCopier(threads=config.copy_threads, retries=config.copy_retries,
                            retry_delay=config.retry_delay,
                            skip_locked_files=config.skip_locked_files)


# ---------------------------------------------------------------------------
# Game activity and locking
# ---------------------------------------------------------------------------

class ProcessActivityProbe:
    """Report whether one of the configured game processes is running."""

    def __init__(self, process_names: Iterable[str]):
        self.process_names = {name.lower() for name in process_names}

    def __call__(self) -> bool:
        if not self.process_names:
            return False
        for proc in psutil.process_iter(['name']):
            try:
                name = proc.info.get('name') or ""
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
            if name.lower() in self.process_names:
                return True
        return False


@contextmanager
def backup_root_lock(backup_root, timeout: float):
    """Hold the advisory lock shared by the monitor and restores"""
    backup_root = Path(backup_root)
    backup_root.mkdir(parents=True, exist_ok=True)
    lock = filelock.FileLock(str(backup_root / LOCK_FILE), timeout=timeout)
    try:
        lock.acquire()
    except filelock.Timeout as e:
        raise LockTimeoutError(f"Backup root is busy (lock held longer than {timeout:g}s)") from e
    try:
        yield
    finally:
        lock.release()


# ---------------------------------------------------------------------------
# Restore
# ---------------------------------------------------------------------------

@dataclass
class RestoreResult:
    success: bool
    result_code: int
    live_dir: Path
    recovery_path: Optional[Path] = None
    preserved_path: Optional[Path] = None
    placeholder_path: Optional[Path] = None


class RestoreOrchestrator:
    """Replace a live save with a backup slot without losing the current state.

    The live directory is first mirrored into the recovery slot, then renamed
    aside, and only removed once the slot copy reports success.
    """

    def __init__(self, config: RotatorConfig, copier: TreeCopier,
                 is_game_active: Optional[Callable[[], bool]] = None):
        self.config = config
        self.copier = copier
        self.is_game_active = is_game_active

    def restore(self, instance: SaveInstance, slot_path) -> RestoreResult:
        slot_path = Path(slot_path)
        if self.is_game_active is not None and self.is_game_active():
            raise GameActiveError("The game is running; close it before restoring")
        if not slot_path.is_dir():
            raise RestoreError(f"Backup slot does not exist: {slot_path}")
        if slot_path.parent.resolve() != instance.backup_dir.resolve() \
                or slot_path.name == PLACEHOLDER_SLOT_NAME:
            raise RestoreError(f"'{slot_path}' is not a backup slot of {instance.key}")

        with backup_root_lock(self.config.backup_root, self.config.lock_timeout):
            return self._run_protocol(instance, slot_path)

    def _preserved_path(self, live_dir: Path) -> Path:
        timestamp = datetime.datetime.now().strftime("%Y%m%d_%H%M%S")
        candidate = live_dir.parent / f".{live_dir.name}{RESTORE_TMP_MARKER}{timestamp}"
        counter = 1
        while candidate.exists():
            candidate = live_dir.parent / f".{live_dir.name}{RESTORE_TMP_MARKER}{timestamp}_{counter}"
            counter += 1
        return candidate

    def _undo_relocation(self, placeholder: Optional[Path], recovery_dir: Path):
        if placeholder is None or not placeholder.exists():
            return
        try:
            if recovery_dir.exists():
                safe_rmtree(recovery_dir)
            os.replace(placeholder, recovery_dir)
        except OSError as e:
            print_error(f"Could not move recovery slot back from {placeholder}: {e}")

    def _run_protocol(self, instance: SaveInstance, slot_path: Path) -> RestoreResult:
        threshold = self.config.failure_threshold
        live_dir = instance.live_dir
        recovery_dir = instance.recovery_dir
        source = slot_path
        placeholder = None
        print_info(f"Restoring {instance.key} from '{slot_path.name}'")

        # The recovery slot is about to be refilled from the live save, so move
        # the data being restored out of its way first.
        if slot_path.name == RECOVERY_SLOT_NAME:
            placeholder = instance.placeholder_dir
            if placeholder.exists():
                raise RestoreError(
                    f"A previous restore left recovery data in {placeholder}; "
                    f"move it back to '{RECOVERY_SLOT_NAME}' or remove it before restoring")
            try:
                os.replace(slot_path, placeholder)
            except OSError as e:
                raise RestoreError(f"Cannot relocate recovery slot: {e}") from e
            source = placeholder
            print_info(f"Moved '{RECOVERY_SLOT_NAME}' to placeholder '{placeholder.name}'")

        protected = False
        if live_dir.is_dir():
            code = self.copier.copy(live_dir, recovery_dir)
            print_info(f"Protect copy {live_dir} -> {recovery_dir}: result code {code}")
            if not copy_succeeded(code, threshold):
                self._undo_relocation(placeholder, recovery_dir)
                raise RestoreError(f"Could not protect the live save (result code {code}); restore aborted")
            protected = True
        else:
            print_warning(f"Live directory missing, skipping protection copy: {live_dir}")

        preserved = None
        try:
            if live_dir.exists():
                preserved = self._preserved_path(live_dir)
                os.replace(live_dir, preserved)
            live_dir.mkdir(parents=True)
        except OSError as e:
            if preserved is not None and preserved.exists() and not live_dir.exists():
                os.replace(preserved, live_dir)
            self._undo_relocation(placeholder, recovery_dir)
            raise RestoreError(f"Cannot swap out live directory {live_dir}: {e}") from e

        code = self.copier.copy(source, live_dir)
        print_info(f"Restore copy {source} -> {live_dir}: result code {code}")
        if not copy_succeeded(code, threshold):
            if preserved is not None:
                print_error(f"Restore of {instance.key} failed (result code {code}); "
                            f"previous live save kept at {preserved}")
            else:
                print_error(f"Restore of {instance.key} failed (result code {code})")
            if placeholder is not None:
                # The live state is safe in the preserved sibling; hand the
                # recovery slot back its own data so the restore can be retried
                self._undo_relocation(placeholder, recovery_dir)
                protected = False
            return RestoreResult(
                success=False,
                result_code=code,
                live_dir=live_dir,
                recovery_path=recovery_dir if protected else None,
                preserved_path=preserved,
                placeholder_path=placeholder if placeholder is not None and placeholder.exists() else None,
            )

        if preserved is not None:
            try:
                safe_rmtree(preserved)
            except OSError as e:
                print_warning(f"Could not remove temporary directory {preserved}: {e}")

        if placeholder is not None and placeholder.exists():
            if recovery_dir.exists():
                safe_rmtree(placeholder)
            else:
                # Nothing replaced it, so the restored data goes back to being the recovery slot
                os.replace(placeholder, recovery_dir)

        print_success(f"Restored {instance.key} from '{slot_path.name}'")
        return RestoreResult(
            success=True,
            result_code=code,
            live_dir=live_dir,
            recovery_path=recovery_dir if protected else None,
        )


# ---------------------------------------------------------------------------
# Backup monitor
# ---------------------------------------------------------------------------

@dataclass
class MonitorReport:
    active: bool = False
    scanned: int = 0
    changed: List[str] = field(default_factory=list)
    backed_up: Dict[str, int] = field(default_factory=dict)
    rate_limited: List[str] = field(default_factory=list)
    failed: Dict[str, int] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)


class BackupMonitor:
    IDLE = "idle"
    SCANNING = "scanning"
    STOPPED = "stopped"

    def __init__(self, config: RotatorConfig, copier: TreeCopier,
                 is_game_active: Callable[[], bool],
                 clock: Callable[[], float] = time.time):
        self.config = config
        self.copier = copier
        self.is_game_active = is_game_active
        self.clock = clock
        self.store = FingerprintStore(config.fingerprint_path)
        self.state = self.IDLE

    def run_once(self, stop_event: Optional[threading.Event] = None,
                 force: bool = False) -> MonitorReport:
        """Run one scan over every save instance while the game is active"""
        report = MonitorReport()
        if not force and not self.is_game_active():
            self.state = self.IDLE
            return report

        report.active = True
        self.state = self.SCANNING
        try:
            for instance in list_save_instances(self.config.save_root, self.config.backup_root):
                if stop_event is not None and stop_event.is_set():
                    print_info("Stop requested, ending scan early")
                    break
                report.scanned += 1
                try:
                    with backup_root_lock(self.config.backup_root, self.config.lock_timeout):
                        self._process_instance(instance, report)
                except LockTimeoutError as e:
                    print_warning(f"{instance.key}: {e}; retrying next cycle")
                    report.skipped.append(instance.key)
                except OSError as e:
                    print_warning(f"{instance.key}: I/O error, retrying next cycle ({e})")
                    report.skipped.append(instance.key)
        finally:
            self.state = self.IDLE
        return report

    def _process_instance(self, instance: SaveInstance, report: MonitorReport):
        key = instance.key
        if not instance.live_dir.is_dir():
            print_warning(f"{key}: live directory disappeared, skipping")
            report.skipped.append(key)
            return

        fingerprints = self.store.load()
        current = compute_signature(instance.live_dir, self.config.tracked_files)
        if not has_changed(fingerprints.get(key), current):
            return
        report.changed.append(key)

        capacity = self.config.save_count
        slots = numbered_slots(instance, capacity)
        filled = {index: path for index, path in slots.items() if not _is_empty_dir(path)}
        reserved = sorted(set(slots) - set(filled))
        mtimes = {index: _slot_mtime(path) for index, path in filled.items()}

        if reserved:
            slot = reserved[0]
        else:
            slot = choose_slot(slots.keys(), mtimes, capacity)
        slot_dir = instance.slot_dir(slot)

        now = self.clock()
        newest = max(mtimes.values()) if mtimes else None
        if not rotation_due(newest, now, self.config.save_frequency_seconds):
            slot_dir.mkdir(parents=True, exist_ok=True)
            print_info(f"{key}: changed, but the newest slot is {now - newest:.0f}s old; "
                       f"slot {slot} reserved, copy deferred")
            report.rate_limited.append(key)
            return

        print_info(f"{key}: changes detected, backing up to slot {slot}")
        code = self.copier.copy(instance.live_dir, slot_dir)
        print_info(f"{key}: copy to slot {slot} finished with result code {code}")
        if not copy_succeeded(code, self.config.failure_threshold):
            print_error(f"{key}: backup to slot {slot} failed (result code {code}); will retry")
            report.failed[key] = code
            # A partial copy must not pass for a snapshot; an empty slot is
            # reserved and gets the retry
            if slot_dir.exists():
                safe_rmtree(slot_dir)
            slot_dir.mkdir(parents=True)
            return

        stamp = self.clock()
        os.utime(slot_dir, (stamp, stamp))
        fingerprints[key] = current
        self.store.save(fingerprints)
        report.backed_up[key] = slot
        print_success(f"{key}: slot {slot} updated")

    def run(self, stop_event: threading.Event):
        """Poll until stop_event is set, sleeping one save interval between scans"""
        print_info(f"Backup monitor started: every {self.config.save_frequency:g} min, "
                   f"{self.config.save_count} slots per save")
        while not stop_event.is_set():
            try:
                self.run_once(stop_event)
            except Exception as e:
                print_error(f"Monitor cycle failed: {e}")
            if stop_event.wait(self.config.save_frequency_seconds):
                break
        self.state = self.STOPPED
        print_info("Backup monitor stopped")


class MonitorService:
    """Own the monitor thread; configuration changes rebuild the monitor."""

    def __init__(self, config: RotatorConfig,
                 copier_factory: Callable[[RotatorConfig], TreeCopier] = make_copier,
                 probe_factory: Optional[Callable[[RotatorConfig], Callable[[], bool]]] = None,
                 clock: Callable[[], float] = time.time):
        self.config = config
        self.copier_factory = copier_factory
        self.probe_factory = probe_factory or (lambda cfg: ProcessActivityProbe(cfg.game_processes))
        self.clock = clock
        self.monitor: Optional[BackupMonitor] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event: Optional[threading.Event] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def state(self) -> str:
        if not self.is_running or self.monitor is None:
            return BackupMonitor.STOPPED
        return self.monitor.state

    def start(self):
        if self.is_running:
            return
        self._stop_event = threading.Event()
        self.monitor = BackupMonitor(self.config, self.copier_factory(self.config),
                                     self.probe_factory(self.config), clock=self.clock)
        self._thread = threading.Thread(target=self.monitor.run, args=(self._stop_event,),
                                        name="backup-monitor", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> bool:
        """Signal the loop to stop; True once the thread has exited"""
        if self._thread is None:
            return True
        self._stop_event.set()
        self._thread.join(timeout)
        if self._thread.is_alive():
            print_warning("Backup monitor is still finishing a copy")
            return False
        self._thread = None
        return True

    def restart(self, config: RotatorConfig):
        print_info("Restarting backup monitor with new configuration")
        self.stop()
        self.config = config
        self.start()


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------

def find_instance(config: RotatorConfig, target: str) -> SaveInstance:
    """Resolve a WORLD/SAVE argument to a save instance with backups"""
    world, _, name = target.strip().strip("/").partition("/")
    if not world or not name:
        raise RestoreError(f"Expected WORLD/SAVE, got '{target}'")
    instance = SaveInstance(world, name, config.save_root, config.backup_root)
    if not instance.backup_dir.is_dir():
        raise RestoreError(f"No backups found for {instance.key}")
    return instance


def resolve_slot(instance: SaveInstance, slot_arg: str) -> Path:
    slot_arg = slot_arg.strip()
    if slot_arg.lower() in ("recovered", RECOVERY_SLOT_NAME):
        return instance.recovery_dir
    if slot_arg.isdigit() and int(slot_arg) >= 1:
        return instance.slot_dir(int(slot_arg))
    raise RestoreError(f"Unknown slot '{slot_arg}' (use a slot number or 'recovered')")


def print_slots(instance: SaveInstance, slots: List[SlotInfo], numbered: bool = False):
    now = time.time()
    for i, slot in enumerate(slots, 1):
        prefix = f"{i:2d}. " if numbered else "    "
        print_colored(prefix, Colors.CYAN, bold=True, end="")
        print_colored(f"{slot.label}", Colors.WHITE, bold=True, end="")
        if slot.is_empty:
            print_colored("  (empty)", Colors.YELLOW)
            continue
        print_colored(f"  📅 {slot.modified.strftime('%Y-%m-%d %H:%M:%S')} "
                      f"({format_age(now - slot.mtime)})", Colors.BLUE, end="")
        print_colored(f" - {format_file_size(get_directory_size(slot.path))}", Colors.MAGENTA)


def list_command(config: RotatorConfig):
    """Print every save instance with its backup slots"""
    instances = list_save_instances(config.save_root, config.backup_root)
    if not instances:
        print_warning("No save instances found.")
        return
    print_header("Save Instances")
    for instance in instances:
        print_colored(f"🌍 {instance.key}", Colors.GREEN, bold=True)
        slots = list_slots(instance)
        if slots:
            print_slots(instance, slots)
        else:
            print_colored("    (no backups yet)", Colors.YELLOW)


def select_slot(instance: SaveInstance) -> Optional[Path]:
    """Interactive slot selection"""
    slots = list_slots(instance)
    if not slots:
        print_warning(f"No backups available for {instance.key}.")
        return None
    print_header(f"Backups of {instance.key}")
    print_slots(instance, slots, numbered=True)
    try:
        choice = input(f"\n{Colors.YELLOW}Enter backup number to restore (1-{len(slots)}) or 'q' to quit: {Colors.END}")
        if choice.lower() == 'q':
            return None
        choice = int(choice) - 1
        if 0 <= choice < len(slots):
            return slots[choice].path
        print_error("Invalid choice.")
    except ValueError:
        print_error("Invalid input.")
    return None


def restore_command(config: RotatorConfig, target: str, slot_arg: Optional[str],
                    skip_confirmation: bool = False) -> int:
    instance = find_instance(config, target)
    slot_path = resolve_slot(instance, slot_arg) if slot_arg else select_slot(instance)
    if slot_path is None:
        print_info("Restore cancelled.")
        return 1

    if not skip_confirmation:
        print_warning("This will replace the live save; the current state goes to "
                      f"'{RECOVERY_SLOT_NAME}'.")
        confirm = input(f"\n{Colors.YELLOW}Restore {instance.key} from '{slot_path.name}'? (y/N): {Colors.END}")
        if confirm.lower() != 'y':
            print_info("Restoration cancelled.")
            return 1

    orchestrator = RestoreOrchestrator(config, make_copier(config),
                                       ProcessActivityProbe(config.game_processes))
    result = orchestrator.restore(instance, slot_path)
    return 0 if result.success else 1


def once_command(config: RotatorConfig, force: bool = False) -> int:
    monitor = BackupMonitor(config, make_copier(config), ProcessActivityProbe(config.game_processes))
    report = monitor.run_once(force=force)
    if not report.active:
        print_info("Game is not running; nothing to do (use --force to scan anyway).")
        return 0
    print_info(f"Scanned {report.scanned} save(s): {len(report.backed_up)} backed up, "
               f"{len(report.rate_limited)} deferred, {len(report.failed)} failed")
    return 1 if report.failed else 0


def monitor_command(config: RotatorConfig, config_path: Path) -> int:
    service = MonitorService(config)
    watcher_stop = threading.Event()

    def reload_config():
        try:
            new_config = RotatorConfig.from_dict(load_rotator_config(config_path))
        except ConfigError as e:
            print_error(f"Ignoring invalid config change: {e}")
            return
        if new_config.backup_root != service.config.backup_root:
            setup_logging(new_config.backup_root)
        service.restart(new_config)

    monitor_config_file(config_path, reload_config, stop_event=watcher_stop)
    service.start()
    print_info("Monitoring saves. Press Ctrl+C to stop.")
    try:
        while service.is_running:
            time.sleep(1)
    finally:
        watcher_stop.set()
        service.stop()
    return 0


def status_command(config: RotatorConfig, config_path: Path) -> int:
    print_info(f"Config file: {config_path}")
    print_info(f"Save root: {config.save_root}")
    print_info(f"Backup root: {config.backup_root}")
    print_info(f"Save frequency: {config.save_frequency:g} min, slots per save: {config.save_count}")
    print_info(f"Tracked files: {', '.join(config.tracked_files)}")
    if ProcessActivityProbe(config.game_processes)():
        print_warning("Game is running")
    else:
        print_info("Game is not running")
    for leftover in find_leftover_restore_dirs(config.save_root):
        print_warning(f"Previous live save kept by a failed restore: {leftover}")
    for leftover in find_leftover_placeholders(config.backup_root):
        print_warning(f"Recovery data parked by an unfinished restore: {leftover}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="💾 Save Slot Rotator - rotating backups for game saves",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python rotator.py --monitor                        # Back up changed saves while the game runs
  python rotator.py --once --force                   # One scan, even if the game is closed
  python rotator.py --list                           # List saves and their slots
  python rotator.py --restore World/MySave --slot 2  # Restore slot 2
  python rotator.py --restore World/MySave --slot recovered
        """
    )

    parser.add_argument("--config", help="Path to config file (default: rotator_config.json next to this script)")
    parser.add_argument("--list", action="store_true", help="List save instances and backup slots")
    parser.add_argument("--monitor", action="store_true", help="Run the backup monitor until Ctrl+C")
    parser.add_argument("--once", action="store_true", help="Run a single monitor scan")
    parser.add_argument("--force", action="store_true", help="With --once, scan even if the game is not running")
    parser.add_argument("--restore", metavar="WORLD/SAVE", help="Restore a save from one of its slots")
    parser.add_argument("--slot", help="Slot number or 'recovered' (prompted when omitted)")
    parser.add_argument("-y", "--yes", action="store_true", help="Skip the restore confirmation")
    parser.add_argument("--status", action="store_true", help="Show configuration and leftover restore directories")

    args = parser.parse_args(argv)

    config_path = Path(args.config) if args.config else DEFAULT_CONFIG_PATH
    try:
        config = RotatorConfig.from_dict(load_rotator_config(config_path))
    except ConfigError as e:
        setup_logging(console=True)
        print_error(f"Invalid configuration in {config_path}: {e}")
        return 1

    setup_logging(config.backup_root, console=True)
    print_header("💾 Save Slot Rotator")

    try:
        if args.restore:
            return restore_command(config, args.restore, args.slot, args.yes)
        if args.once:
            return once_command(config, args.force)
        if args.monitor:
            return monitor_command(config, config_path)
        if args.list:
            list_command(config)
            return 0
        return status_command(config, config_path)
    except KeyboardInterrupt:
        print_success("\nStopped.")
        return 0
    except RotatorError as e:
        print_error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
