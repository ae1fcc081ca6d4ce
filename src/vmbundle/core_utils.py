"""
Core utility functions for vmbundle.

Console output helpers, logging setup, file removal and trash handling,
and small formatting helpers shared by the controller and the CLI.
"""
import os
import sys
import shutil
import logging
import tempfile
from datetime import datetime, timezone
from urllib.parse import quote

import questionary
from rich.console import Console
from rich.panel import Panel
from rich.logging import RichHandler

from .config import CONFIG, GIB

console = Console(soft_wrap=True)
# Create a dedicated console for printing errors to stderr
error_console = Console(stderr=True, style="bold red", soft_wrap=True)

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# --- Text and Styling ---

def print_header(text):
    """Prints a styled header to the console."""
    console.print(Panel(f"[bold cyan]{text}[/]", expand=False, border_style="blue"))

def print_info(text):
    """Prints an informational message to the console."""
    console.print(text, style="cyan", markup=False, highlight=False)

def print_success(text):
    """Prints a success message to the console."""
    console.print(text, style="green", markup=False, highlight=False)

def print_warning(text):
    """Prints a warning message to stderr."""
    error_console.print(text, style="yellow", markup=False, highlight=False)

def print_error(text):
    """Prints an error message to stderr."""
    error_console.print(text, markup=False, highlight=False)

def print_line(text):
    """Prints plain text without styling or markup."""
    console.print(text, markup=False, highlight=False)


def confirm(message, default=False):
    """
    Asks a yes/no question with questionary.

    Returns False if the user cancels the prompt with ESC or Ctrl+C.
    """
    try:
        answer = questionary.confirm(message, default=default).ask()
    except (KeyboardInterrupt, EOFError):
        return False
    return bool(answer)


# --- Logging ---

def setup_logging(verbose=False, log_dir=None):
    """
    Configures the 'vmbundle' logger.

    A file handler is attached under the log directory. With verbose output a
    RichHandler is also added on stderr. Calling this twice does not duplicate
    handlers.
    """
    root = logging.getLogger('vmbundle')
    level = getattr(logging, str(CONFIG.get('LOG_LEVEL', 'INFO')).upper(), logging.INFO)
    root.setLevel(logging.DEBUG if verbose else level)

    if not any(isinstance(h, logging.FileHandler) for h in root.handlers):
        log_dir = log_dir or CONFIG['LOG_DIR']
        try:
            os.makedirs(log_dir, exist_ok=True)
            file_handler = logging.FileHandler(
                os.path.join(log_dir, 'vmbundle.log'),
                encoding='utf-8'
            )
        except OSError as e:
            # Logging to disk is optional; the command still runs.
            print_warning(f"Could not open log file in {log_dir}: {e}")
        else:
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
            root.addHandler(file_handler)

    if verbose and not any(isinstance(h, RichHandler) for h in root.handlers):
        rich_handler = RichHandler(console=Console(stderr=True), show_path=False)
        rich_handler.setLevel(logging.DEBUG)
        root.addHandler(rich_handler)

    return root


# --- Time and formatting ---

def utc_now():
    """Current UTC time truncated to whole seconds."""
    return datetime.now(timezone.utc).replace(microsecond=0)


def format_timestamp(value):
    """Formats a datetime as ISO-8601 UTC with a 'Z' suffix."""
    return value.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


def parse_timestamp(text):
    """Parses an ISO-8601 timestamp, accepting a trailing 'Z'."""
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    value = datetime.fromisoformat(text)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def gib_to_bytes(gib):
    return int(gib) * GIB


def format_gib(num_bytes):
    """Formats a byte count as GiB with one decimal."""
    return f"{num_bytes / GIB:.1f} GiB"


def expand_path(path):
    """Expands '~' and returns a normalized absolute path."""
    return os.path.normpath(os.path.abspath(os.path.expanduser(path)))


# --- File operations ---

def find_first_existing_path(paths):
    """Finds the first existing file path from a list of candidates."""
    for path in paths:
        if os.path.exists(path):
            return path
    return None


def write_file_atomic(path, data, mode=0o644):
    """
    Writes bytes to path through a temp file in the same directory.

    The destination is replaced with os.replace so readers never observe a
    partially written file.
    """
    parent = os.path.dirname(os.path.abspath(path))
    fd, tmp_path = tempfile.mkstemp(prefix=f".{os.path.basename(path)}.tmp-", dir=parent)
    try:
        with os.fdopen(fd, 'wb') as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    finally:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)


def remove_file(path):
    """
    Removes a file, best effort.

    A missing file counts as removed. Other failures are logged and reported
    through the return value so they never mask an earlier error.
    """
    try:
        os.remove(path)
        return True
    except FileNotFoundError:
        return True
    except OSError as e:
        logger.warning(f"Could not remove file {path}: {e}")
        return False


def remove_dir(path):
    """Removes a directory and its contents, best effort."""
    try:
        shutil.rmtree(path)
        return True
    except FileNotFoundError:
        return True
    except OSError as e:
        logger.warning(f"Could not remove directory {path}: {e}")
        return False


def trash_dir():
    """Returns the current user's trash directory for this platform."""
    if sys.platform == 'darwin':
        return os.path.join(os.path.expanduser('~'), '.Trash')
    data_home = os.environ.get('XDG_DATA_HOME') or os.path.join(os.path.expanduser('~'), '.local', 'share')
    return os.path.join(data_home, 'Trash')


def move_to_trash(path):
    """
    Moves a file or directory into the user's trash.

    On Linux the freedesktop.org layout is used: the item goes to
    Trash/files and a matching Trash/info/<name>.trashinfo record is written
    so desktop file managers can restore it.

    Returns:
        str: The path of the item inside the trash
    """
    path = os.path.abspath(path)
    base = trash_dir()
    freedesktop = sys.platform != 'darwin'
    files_dir = os.path.join(base, 'files') if freedesktop else base
    info_dir = os.path.join(base, 'info')
    os.makedirs(files_dir, exist_ok=True)
    if freedesktop:
        os.makedirs(info_dir, exist_ok=True)

    name = os.path.basename(path)
    stem, ext = os.path.splitext(name)
    candidate = name
    counter = 1
    while os.path.lexists(os.path.join(files_dir, candidate)) or (
            freedesktop and os.path.exists(os.path.join(info_dir, candidate + '.trashinfo'))):
        counter += 1
        candidate = f"{stem} {counter}{ext}"

    info_path = None
    if freedesktop:
        info_path = os.path.join(info_dir, candidate + '.trashinfo')
        deletion_date = datetime.now().strftime('%Y-%m-%dT%H:%M:%S')
        with open(info_path, 'w', encoding='utf-8') as f:
            f.write("[Trash Info]\n")
            f.write(f"Path={quote(path)}\n")
            f.write(f"DeletionDate={deletion_date}\n")

    destination = os.path.join(files_dir, candidate)
    try:
        shutil.move(path, destination)
    except OSError:
        if info_path:
            remove_file(info_path)
        raise
    logger.info(f"Moved {path} to trash at {destination}")
    return destination
