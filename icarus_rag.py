#!/usr/bin/env python3
"""Icarus RAG v1.0.0 - local document retrieval for Ollama chat.

Indexes the documents under your chosen folders and splices the passages
that best match a chat message into the prompt sent to a local Ollama server:
  python icarus_rag.py index --dir ~/Documents     # Incremental index of a folder
  python icarus_rag.py reindex                     # Clear and rebuild the index
  python icarus_rag.py search "blue green deploy"  # Show matching passages
  python icarus_rag.py read team/handbook.txt      # Full text of a cited source
  python icarus_rag.py chat "How do we deploy?"    # Streamed chat with document context
  python icarus_rag.py status                      # Index statistics
  python icarus_rag.py watch                       # Keep the index fresh in the background
  python icarus_rag.py models                      # List installed Ollama models
  python icarus_rag.py pull qwen3:4b               # Install a model with progress
  python icarus_rag.py show qwen3:4b               # Model capabilities and context length

Key Features:
• Incremental indexing: only files whose modification time or size changed are re-read
• Formats: text, Markdown, JSON, CSV, Mermaid, PDF, DOCX, DOC, XLSX/XLS, EML, MSG
• Lexical scoring: whole-word and substring term overlap with a sensitivity threshold
• Streaming chat relay with "sources found" notifications for citations
• Atomic JSON persistence of the chunk store
"""

# Standard library imports
import argparse
import csv
import html
import io
import json
import logging
import os
import re
import struct
import sys
import tempfile
import threading
import time
import warnings
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager, suppress
from dataclasses import dataclass, field
from email import policy
from email.parser import BytesParser
from enum import Enum
from pathlib import Path
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Optional,
    Set,
    Tuple,
)

# Third-party imports
import docx
import extract_msg
import olefile
import openpyxl
import PyPDF2
import requests
import xlrd
import yaml

# Version information
__version__ = "1.0.0"

# Constants
DEFAULT_MIN_CHUNK_LENGTH = 50  # Passages must be longer than this many characters
DEFAULT_TOP_K = 3
DEFAULT_SENSITIVITY = 70
DEFAULT_PREVIEW_CHARS = 200
DEFAULT_SNIPPET_CHARS = 100  # Context kept around a search hit
DEFAULT_WORKERS = 1
DEFAULT_DEBOUNCE_SECONDS = 1.0
STARTUP_DELAY_SECONDS = 5
STARTUP_STALE_SECONDS = 60  # Index on startup when the last pass is older than this
CHECK_INTERVAL_SECONDS = 60 * 60  # Background check cadence
MAX_INDEX_AGE_SECONDS = 24 * 60 * 60  # Background re-index once the index is this old
DEFAULT_OLLAMA_URL = "http://localhost:11434"
DEFAULT_MODEL = "qwen3:4b"
DEFAULT_HTTP_TIMEOUT = 300  # Seconds; model pulls and cold model loads are slow
DEFAULT_CONNECT_TIMEOUT = 10  # Seconds; streamed chats have no read timeout
DEFAULT_CONTEXT_LENGTH = 40000
MIN_CONTEXT_LENGTH = 512
MAX_CONTEXT_LENGTH = 32768
DEFAULT_DATA_DIR = "~/.icarus"
DATABASE_FILENAME = "rag-database.json"
SETTINGS_FILENAME = "settings.json"
CONFIG_FILENAME = "icarus_config.yaml"

# File type constants
TEXT_EXTENSIONS = [".md", ".txt", ".json", ".csv", ".mmd"]
SUPPORTED_EXTENSIONS = [
    ".md", ".txt", ".json", ".csv", ".mmd", ".pdf", ".docx", ".doc",
    ".xlsx", ".xls", ".pptx", ".ppt", ".eml", ".msg",
]

# Model capability hints used by show_model
THINKING_MODEL_HINTS = ("deepseek", "r1", "qwen3", "o1", "intuitive-thinker", "chain-of-thought")
THINKING_FAMILIES = ("deepseek", "qwen3", "o1")
VISION_MODEL_HINTS = (
    "llava", "minicpm", "moondream", "bakllava", "vision", "visual", "qwen2-vl",
    "qwen2.5-vision", "qwen-vl", "gemma2-vision", "gemma-vision", "pixtral",
    "internvl", "cogvlm",
)
VISION_FAMILIES = (
    "llava", "minicpm", "moondream", "vision", "qwen-vl", "qwen2-vl", "gemma2",
    "pixtral", "internvl", "cogvlm",
)

# Legacy Word binary format offsets (File Information Block)
WORD_FIB_IDENT = 0xA5EC
WORD_FIB_FLAGS_OFFSET = 0x000A
WORD_FIB_CCP_TEXT_OFFSET = 0x004C
WORD_FIB_CLX_OFFSET = 0x01A2
WORD_FLAG_ENCRYPTED = 0x0100
WORD_FLAG_TABLE_STREAM = 0x0200
WORD_PIECE_COMPRESSED = 0x40000000

# Loggers of parsing libraries that are noisy about features they skip
NOISY_LIBRARY_LOGGERS = ("PyPDF2", "pypdf", "openpyxl", "xlrd", "extract_msg", "olefile")

DEFAULT_SYSTEM_PROMPT = (
    "You are Icarus, a expert chatbot versed in Amazon Web Services writing practices. "
    "Ask the user for clarifying questions."
)

# Configure UTF-8 encoding for cross-platform compatibility
if sys.platform == "win32":
    os.environ.setdefault("PYTHONIOENCODING", "utf-8")
    for stream in (sys.stdout, sys.stderr):
        if hasattr(stream, "reconfigure"):
            with suppress(AttributeError, OSError):
                stream.reconfigure(encoding="utf-8")


def get_symbols() -> Dict[str, str]:
    """Get appropriate symbols based on terminal encoding support."""
    encoding = getattr(sys.stdout, "encoding", None) or "ascii"
    try:
        "🔍📋✅👋".encode(encoding)
    except (UnicodeEncodeError, LookupError):
        return {
            "search": "[Search]",
            "found": "[Found]",
            "success": "[Success]",
            "bye": "[Bye]",
        }
    return {"search": "🔍", "found": "📋", "success": "✅", "bye": "👋"}


SYMBOLS = get_symbols()

# Pre-compiled regex patterns for performance
PARAGRAPH_BREAK_PATTERN = re.compile(r"\n\s*\n")
HTML_TAG_PATTERN = re.compile(r"<[^>]+>")
BLANK_RUN_PATTERN = re.compile(r"\n{3,}")
WORD_FIELD_CODE_PATTERN = re.compile(r"\x13[^\x13\x14\x15]*\x14?")
WORD_CONTROL_PATTERN = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")
NUM_CTX_PATTERN = re.compile(r"num_ctx[^\d]*(\d+)")
CONTEXT_PATTERN = re.compile(r"context[^\d]*(\d+)")
LIBRARY_NOISE_PATTERN = re.compile(
    r"Unsupported|field\.type|form element|Setting up fake worker|TT: undefined function|"
    r"Multiple definitions in dictionary|Xref table not zero-indexed|startxref|"
    r"wrong pointing object|Workbook contains no default style|"
    r"extension is not supported|Data Validation",
    re.IGNORECASE,
)
WINDOWS_PATH_PATTERN = re.compile(r'[A-Za-z]:[\\\/][^\\\/\s]*[\\\/]')
UNIX_PATH_PATTERN = re.compile(r'\/[^\/\s]*\/')
FILE_URL_PATTERN = re.compile(r'\bfile:\/\/[^\s]*')
QUERY_PUNCTUATION = "\"'`.,;:!?()[]{}<>"


def sanitize_error_message(error_msg: str) -> str:
    """Sanitize error messages to prevent information leakage."""
    sanitized = WINDOWS_PATH_PATTERN.sub('', error_msg)
    sanitized = UNIX_PATH_PATTERN.sub('/', sanitized)
    sanitized = FILE_URL_PATTERN.sub('[FILE_PATH]', sanitized)
    return sanitized


def log_error(message: str, error: Optional[Exception] = None, *, quiet: bool = False) -> None:
    """Centralized error logging with consistent formatting."""
    if quiet:
        return

    if error:
        sanitized_error = sanitize_error_message(str(error))
        print(f"ERROR: {message}: {sanitized_error}")
    else:
        print(f"ERROR: {message}")


def log_warning(message: str, error: Optional[Exception] = None, *, quiet: bool = False) -> None:
    """Centralized warning logging with consistent formatting."""
    if quiet:
        return

    if error:
        sanitized_error = sanitize_error_message(str(error))
        print(f"Warning: {message}: {sanitized_error}")
    else:
        print(f"Warning: {message}")


def log_info(message: str, *, quiet: bool = False) -> None:
    """Progress output, silenced by --quiet."""
    if not quiet:
        print(message)


def handle_file_error(file_path: Path, operation: str, error: Exception, *, quiet: bool = False) -> None:
    """Standardized file operation error handling."""
    if isinstance(error, (FileNotFoundError, PermissionError)):
        log_error(f"Cannot {operation} {file_path} - {type(error).__name__}", quiet=quiet)
    elif isinstance(error, UnicodeDecodeError):
        log_error(f"Cannot {operation} {file_path} - encoding issue", quiet=quiet)
    else:
        log_error(f"Cannot {operation} {file_path}", error, quiet=quiet)


class IcarusError(Exception):
    """Base class for errors surfaced to callers of the engine."""


class IndexingInProgressError(IcarusError):
    """A second indexing pass was requested while one is running."""


class ModelServerError(IcarusError):
    """The Ollama server is unreachable or answered with an error."""


class StreamProtocolError(IcarusError):
    """An NDJSON stream ended without its terminal line."""


EventSink = Callable[[str, Dict[str, Any]], None]


def _noop_emit(event: str, payload: Dict[str, Any]) -> None:
    """Default event sink for callers that do not observe the engine."""


def now_ms() -> int:
    return int(time.time() * 1000)


def file_fingerprint(file_path: Path) -> Tuple[int, int]:
    """Return (mtime in epoch ms, size in bytes) for change detection."""
    stats = os.stat(file_path)
    return stats.st_mtime_ns // 1_000_000, stats.st_size


def clamp_sensitivity(value: Any) -> int:
    """Coerce a sensitivity setting into the 0-100 range."""
    try:
        number = int(value)
    except (TypeError, ValueError):
        return DEFAULT_SENSITIVITY
    return max(0, min(100, number))


def _dedupe_directories(directories: Iterable[str]) -> List[str]:
    result: List[str] = []
    for directory in directories:
        if directory and str(directory).strip() and str(directory) not in result:
            result.append(str(directory))
    return result


def write_json_atomic(path: Path, payload: Any) -> None:
    """Write JSON to a temp file beside ``path`` and rename it into place.

    A crash mid-write leaves the previous good copy untouched.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2, ensure_ascii=False)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_name, path)
    except BaseException:
        with suppress(OSError):
            os.unlink(temp_name)
        raise


# Configuration

def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load optional configuration file."""
    default_config = {
        "storage": {
            "data_dir": DEFAULT_DATA_DIR,
            "database_file": DATABASE_FILENAME,
            "settings_file": SETTINGS_FILENAME,
        },
        "indexing": {
            "min_chunk_length": DEFAULT_MIN_CHUNK_LENGTH,
            "workers": DEFAULT_WORKERS,
            "debounce_seconds": DEFAULT_DEBOUNCE_SECONDS,
            "startup_delay_seconds": STARTUP_DELAY_SECONDS,
            "startup_stale_seconds": STARTUP_STALE_SECONDS,
            "check_interval_seconds": CHECK_INTERVAL_SECONDS,
            "max_age_seconds": MAX_INDEX_AGE_SECONDS,
        },
        "retrieval": {
            "top_k": DEFAULT_TOP_K,
            "preview_chars": DEFAULT_PREVIEW_CHARS,
        },
        "ollama": {
            "base_url": DEFAULT_OLLAMA_URL,
            "default_model": DEFAULT_MODEL,
            "timeout": DEFAULT_HTTP_TIMEOUT,
            "connect_timeout": DEFAULT_CONNECT_TIMEOUT,
        },
    }

    config_file = Path(config_path or CONFIG_FILENAME)
    if config_file.exists():
        try:
            with open(config_file, "r", encoding="utf-8") as f:
                user_config = yaml.safe_load(f) or {}
            if not isinstance(user_config, dict):
                raise ValueError("top level must be a mapping")
            _merge_configs(default_config, user_config)
        except (OSError, yaml.YAMLError, ValueError) as e:
            log_warning(f"Invalid config file {config_file.name}, using defaults", e)

    return default_config


def _merge_configs(default: Dict[str, Any], user: Dict[str, Any]) -> None:
    """Recursively merge user config into default config."""
    for key, value in user.items():
        if (
            key in default
            and isinstance(default[key], dict)
            and isinstance(value, dict)
        ):
            _merge_configs(default[key], value)
        else:
            default[key] = value


def default_settings() -> Dict[str, Any]:
    """Settings written by the chat client, with every field defined."""
    return {
        "showThinking": False,
        "ragEnabled": False,
        "ragDirectories": [],
        "ragSensitivity": DEFAULT_SENSITIVITY,
        "selectedModel": "",
        "systemPrompt": DEFAULT_SYSTEM_PROMPT,
        "temperature": 0.7,
        "contextLength": DEFAULT_CONTEXT_LENGTH,
        "topP": 0.9,
        "topK": 40,
        "repeatPenalty": 1.1,
    }


def load_settings(settings_path: Path, *, quiet: bool = False) -> Dict[str, Any]:
    """Load settings.json, filling defaults for anything missing."""
    settings = default_settings()
    if not settings_path.exists():
        return settings

    try:
        with open(settings_path, "r", encoding="utf-8") as settings_file:
            saved = json.load(settings_file)
    except (json.JSONDecodeError, OSError) as err:
        log_warning(f"Could not read settings at {settings_path.name}; using defaults", err, quiet=quiet)
        return settings

    if not isinstance(saved, dict):
        log_warning(f"Settings at {settings_path.name} are not an object; using defaults", quiet=quiet)
        return settings

    settings.update(saved)
    # Older clients stored a single directory
    legacy_directory = settings.pop("ragDirectory", None)
    if legacy_directory and not saved.get("ragDirectories"):
        settings["ragDirectories"] = [legacy_directory]
        log_info("Migrated legacy RAG directory setting", quiet=quiet)
    if not isinstance(settings.get("ragDirectories"), list):
        settings["ragDirectories"] = []
    return settings


def save_settings(settings_path: Path, settings: Dict[str, Any]) -> None:
    """Persist settings.json."""
    write_json_atomic(settings_path, settings)


# Data model

@dataclass
class Chunk:
    """One retrievable passage plus the provenance used for change detection."""

    content: str
    file: str
    last_modified: int
    indexed: int
    size: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content": self.content,
            "file": self.file,
            "lastModified": self.last_modified,
            "indexed": self.indexed,
            "size": self.size,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Chunk":
        """Build a chunk from its persisted form, rejecting malformed entries."""
        if not isinstance(data, dict):
            raise ValueError("chunk entry is not an object")
        content = data.get("content")
        source = data.get("file")
        if not isinstance(content, str) or not content:
            raise ValueError("chunk entry has no content")
        if not isinstance(source, str) or not source:
            raise ValueError("chunk entry has no file")
        numbers = []
        for key in ("lastModified", "indexed", "size"):
            value = data.get(key)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"chunk entry field {key} is not a number")
            numbers.append(int(value))
        return cls(content, source, *numbers)


@dataclass
class IndexSettings:
    """Process-wide retrieval settings shared by the scheduler, scorer and proxy."""

    directories: List[str] = field(default_factory=list)
    sensitivity: int = DEFAULT_SENSITIVITY
    last_indexed: int = 0
    is_indexing: bool = False
    enabled: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def __post_init__(self) -> None:
        self.directories = _dedupe_directories(self.directories)
        self.sensitivity = clamp_sensitivity(self.sensitivity)

    @classmethod
    def from_user_settings(cls, user_settings: Dict[str, Any]) -> "IndexSettings":
        return cls(
            directories=list(user_settings.get("ragDirectories") or []),
            sensitivity=user_settings.get("ragSensitivity", DEFAULT_SENSITIVITY),
            enabled=bool(user_settings.get("ragEnabled", False)),
        )

    def try_begin(self) -> bool:
        """Claim the indexing flag; False when a pass already holds it."""
        with self._lock:
            if self.is_indexing:
                return False
            self.is_indexing = True
            return True

    def finish(self) -> None:
        with self._lock:
            self.is_indexing = False

    def update(
        self,
        directories: Optional[Iterable[str]] = None,
        sensitivity: Optional[int] = None,
        enabled: Optional[bool] = None,
    ) -> bool:
        """Apply new values. Returns True if the directory set or enabled flag changed."""
        changed = False
        if directories is not None:
            new_directories = _dedupe_directories(directories)
            if set(new_directories) != set(self.directories):
                changed = True
            self.directories = new_directories
        if sensitivity is not None:
            self.sensitivity = clamp_sensitivity(sensitivity)
        if enabled is not None and bool(enabled) != self.enabled:
            self.enabled = bool(enabled)
            changed = True
        return changed


# Directory walker and change detector

def walk_directory(root: Path, *, quiet: bool = False) -> List[Path]:
    """List every file below ``root`` in a stable order.

    Symlinked directories are not descended into. A missing root yields an
    empty list and unreadable subdirectories are skipped.
    """
    root_path = Path(root).expanduser()
    if not root_path.is_dir():
        log_warning(f"Directory not found, skipping: {root_path}", quiet=quiet)
        return []

    def _on_error(error: OSError) -> None:
        log_warning(f"Cannot read directory {error.filename}", error, quiet=quiet)

    files: List[Path] = []
    for current, dirnames, filenames in os.walk(root_path, onerror=_on_error):
        dirnames.sort()
        for name in sorted(filenames):
            files.append(Path(current) / name)
    return files


def relative_source(file_path: Path, root: Path) -> str:
    """Stored chunk path: relative to the root it was found under, '/' separated."""
    return Path(file_path).relative_to(Path(root).expanduser()).as_posix()


def needs_reindex(file_path: Path, existing_chunks: List[Chunk], *, quiet: bool = False) -> bool:
    """Decide whether the chunks stored for ``file_path`` are stale."""
    try:
        mtime, size = file_fingerprint(file_path)
    except OSError as error:
        handle_file_error(Path(file_path), "stat", error, quiet=quiet)
        return False

    if not existing_chunks:
        return True
    return any(
        chunk.last_modified != mtime or chunk.size != size
        for chunk in existing_chunks
    )


# Chunker

def chunk_text(text: str, min_length: int = DEFAULT_MIN_CHUNK_LENGTH) -> List[str]:
    """Split extracted text into paragraph passages longer than ``min_length``."""
    passages = [
        passage.strip()
        for passage in PARAGRAPH_BREAK_PATTERN.split(text)
        if len(passage.strip()) > min_length
    ]
    if not passages and len(text.strip()) > min_length:
        passages = [text.strip()]
    return passages


# Format extractors

_noise_lock = threading.Lock()
_noise_depth = 0
_noise_catcher: Optional[warnings.catch_warnings] = None
_noise_handlers: List[logging.Handler] = []


def _is_library_record(name: str) -> bool:
    return any(name == prefix or name.startswith(prefix + ".") for prefix in NOISY_LIBRARY_LOGGERS)


class _LibraryNoiseFilter(logging.Filter):
    """Drop known-harmless chatter from parsing libraries, keep real errors.

    Attached to handlers rather than loggers: libraries such as PyPDF2 create
    per-module loggers on first use, and logger filters never see records
    propagated up from a child.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= logging.ERROR or not _is_library_record(record.name):
            return True
        return not LIBRARY_NOISE_PATTERN.search(record.getMessage())


_NOISE_FILTER = _LibraryNoiseFilter()


def _library_handlers() -> List[logging.Handler]:
    loggers = [logging.getLogger()] + [
        candidate
        for name, candidate in list(logging.root.manager.loggerDict.items())
        if isinstance(candidate, logging.Logger) and _is_library_record(name)
    ]
    handlers: List[logging.Handler] = []
    for logger in loggers:
        handlers.extend(h for h in logger.handlers if h not in handlers)
    if logging.lastResort is not None and logging.lastResort not in handlers:
        handlers.append(logging.lastResort)
    return handlers


@contextmanager
def suppress_library_noise() -> Iterator[None]:
    """Silence noisy parser warnings for the duration of one extraction.

    Scopes nest and may overlap across extraction threads; the filters are
    installed by the first scope in and removed by the last scope out.
    """
    global _noise_depth, _noise_catcher, _noise_handlers
    with _noise_lock:
        if _noise_depth == 0:
            _noise_catcher = warnings.catch_warnings()
            _noise_catcher.__enter__()
            warnings.filterwarnings("ignore", message=f".*(?:{LIBRARY_NOISE_PATTERN.pattern})")
            _noise_handlers = _library_handlers()
            for handler in _noise_handlers:
                handler.addFilter(_NOISE_FILTER)
        _noise_depth += 1
    try:
        yield
    finally:
        with _noise_lock:
            _noise_depth -= 1
            if _noise_depth == 0:
                for handler in _noise_handlers:
                    handler.removeFilter(_NOISE_FILTER)
                _noise_handlers = []
                if _noise_catcher is not None:
                    _noise_catcher.__exit__(None, None, None)
                    _noise_catcher = None


def read_text_file(file_path: Path) -> str:
    """Read a text file as UTF-8, falling back to latin-1 for older files."""
    try:
        with open(file_path, "r", encoding="utf-8") as file:
            return file.read()
    except UnicodeDecodeError:
        with open(file_path, "r", encoding="latin-1") as file:
            return file.read()


class Extractor:
    """Turns one file into plain text that starts with a self-describing header."""

    label = "Document"
    binary = True

    def header(self, file_path: Path) -> str:
        return f"{self.label}: {file_path.name}"

    def extract(self, file_path: Path) -> str:
        raise NotImplementedError


class PlainTextExtractor(Extractor):
    binary = False

    def __init__(self, label: str) -> None:
        self.label = label

    def extract(self, file_path: Path) -> str:
        return f"{self.header(file_path)}\n\n{read_text_file(file_path)}"


class JsonExtractor(Extractor):
    """Pretty-prints JSON; keeps the raw text when it does not parse."""

    label = "JSON File"
    binary = False

    def extract(self, file_path: Path) -> str:
        raw = read_text_file(file_path)
        try:
            body = json.dumps(json.loads(raw), indent=2, ensure_ascii=False)
        except json.JSONDecodeError:
            body = raw
        return f"{self.header(file_path)}\n\n{body}"


class CsvExtractor(Extractor):
    """Surfaces the header row as a column list ahead of the data."""

    label = "CSV File"
    binary = False

    def extract(self, file_path: Path) -> str:
        raw = read_text_file(file_path)
        lines = raw.splitlines()
        if not lines:
            return f"{self.header(file_path)}\n\n{raw}"
        headers = next(csv.reader([lines[0]]), [])
        columns = ", ".join(column.strip().replace('"', "") for column in headers)
        return f"{self.header(file_path)}\nColumns: {columns}\n\nData:\n{raw}"


class PdfExtractor(Extractor):
    label = "PDF Document"

    def extract(self, file_path: Path) -> str:
        with open(file_path, "rb") as file:
            reader = PyPDF2.PdfReader(file)
            pages = []
            for number, page in enumerate(reader.pages, 1):
                page_text = page.extract_text() or ""
                if page_text.strip():
                    pages.append(f"Page {number}:\n{page_text.strip()}")
        body = "\n\n".join(pages) or "No extractable text found in this PDF."
        return f"{self.header(file_path)}\n\n{body}"


class DocxExtractor(Extractor):
    label = "DOCX Document"

    def extract(self, file_path: Path) -> str:
        document = docx.Document(str(file_path))
        text_parts = []

        for paragraph in document.paragraphs:
            if paragraph.text.strip():
                text_parts.append(paragraph.text.strip())

        for table in document.tables:
            for row in table.rows:
                row_text = [cell.text.strip() for cell in row.cells if cell.text.strip()]
                if row_text:
                    text_parts.append(" | ".join(row_text))

        return f"{self.header(file_path)}\n\n" + "\n\n".join(text_parts)


class DocExtractor(Extractor):
    """Word 97-2003 binary documents, read through the piece table."""

    label = "DOC Document"

    def extract(self, file_path: Path) -> str:
        with olefile.OleFileIO(str(file_path)) as ole:
            word_stream = ole.openstream("WordDocument").read()
            if struct.unpack_from("<H", word_stream, 0)[0] != WORD_FIB_IDENT:
                raise ValueError("not a Word 97-2003 document")
            flags = struct.unpack_from("<H", word_stream, WORD_FIB_FLAGS_OFFSET)[0]
            if flags & WORD_FLAG_ENCRYPTED:
                raise ValueError("document is encrypted")
            table_name = "1Table" if flags & WORD_FLAG_TABLE_STREAM else "0Table"
            table_stream = ole.openstream(table_name).read()

        fc_clx, lcb_clx = struct.unpack_from("<II", word_stream, WORD_FIB_CLX_OFFSET)
        ccp_text = struct.unpack_from("<I", word_stream, WORD_FIB_CCP_TEXT_OFFSET)[0]
        text = self._read_pieces(word_stream, table_stream[fc_clx:fc_clx + lcb_clx])[:ccp_text]

        text = WORD_FIELD_CODE_PATTERN.sub("", text).replace("\x15", "")
        text = text.replace("\x07", "\t").replace("\x0b", "\n").replace("\x0c", "\r")
        text = WORD_CONTROL_PATTERN.sub("", text)
        paragraphs = [paragraph.strip() for paragraph in text.split("\r") if paragraph.strip()]
        return f"{self.header(file_path)}\n\n" + "\n\n".join(paragraphs)

    @staticmethod
    def _read_pieces(word_stream: bytes, clx: bytes) -> str:
        position = 0
        # Skip property modifiers (Prc) that precede the piece table
        while position < len(clx) and clx[position] == 0x01:
            position += 3 + struct.unpack_from("<H", clx, position + 1)[0]
        if position >= len(clx) or clx[position] != 0x02:
            raise ValueError("piece table not found")

        lcb = struct.unpack_from("<I", clx, position + 1)[0]
        plc = clx[position + 5:position + 5 + lcb]
        count = (len(plc) - 4) // 12
        positions = struct.unpack_from(f"<{count + 1}I", plc, 0)

        parts = []
        for index in range(count):
            fc = struct.unpack_from("<I", plc, 4 * (count + 1) + 8 * index + 2)[0]
            length = positions[index + 1] - positions[index]
            if fc & WORD_PIECE_COMPRESSED:
                start = (fc & ~WORD_PIECE_COMPRESSED) // 2
                parts.append(word_stream[start:start + length].decode("cp1252", errors="replace"))
            else:
                parts.append(word_stream[fc:fc + 2 * length].decode("utf-16-le", errors="replace"))
        return "".join(parts)


def _format_cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def rows_to_csv(rows: Iterable[Iterable[Any]]) -> str:
    """Render spreadsheet rows as CSV, dropping empty rows and trailing blanks."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    for row in rows:
        cells = [_format_cell(value) for value in row]
        while cells and not cells[-1]:
            cells.pop()
        if cells:
            writer.writerow(cells)
    return buffer.getvalue()


class ExcelExtractor(Extractor):
    """One "Sheet: <name>" section per non-empty worksheet."""

    label = "Excel Document"

    def extract(self, file_path: Path) -> str:
        if file_path.suffix.lower() == ".xls":
            sheets = self._read_xls(file_path)
        else:
            sheets = self._read_xlsx(file_path)

        sections = []
        for name, rows in sheets:
            csv_data = rows_to_csv(rows)
            if csv_data.strip():
                sections.append(f"Sheet: {name}\n{csv_data.rstrip()}")
        return f"{self.header(file_path)}\n\n" + "\n\n".join(sections)

    @staticmethod
    def _read_xlsx(file_path: Path) -> List[Tuple[str, List[Tuple[Any, ...]]]]:
        workbook = openpyxl.load_workbook(str(file_path), read_only=True, data_only=True)
        try:
            return [
                (worksheet.title, list(worksheet.iter_rows(values_only=True)))
                for worksheet in workbook.worksheets
            ]
        finally:
            workbook.close()

    @staticmethod
    def _read_xls(file_path: Path) -> List[Tuple[str, List[List[Any]]]]:
        book = xlrd.open_workbook(str(file_path))
        try:
            return [
                (sheet.name, [sheet.row_values(index) for index in range(sheet.nrows)])
                for sheet in book.sheets()
            ]
        finally:
            book.release_resources()


class EmlExtractor(Extractor):
    label = "Email"

    def extract(self, file_path: Path) -> str:
        with open(file_path, "rb") as handle:
            message = BytesParser(policy=policy.default).parse(handle)

        body = ""
        body_part = message.get_body(preferencelist=("plain", "html"))
        if body_part is not None:
            body = body_part.get_content()
            if body_part.get_content_type() == "text/html":
                body = html.unescape(HTML_TAG_PATTERN.sub(" ", body))
        body = BLANK_RUN_PATTERN.sub("\n\n", body.strip())

        return (
            f"{self.header(file_path)}\n\n"
            f"From: {message.get('From', '')}\n"
            f"To: {message.get('To', '')}\n"
            f"Date: {message.get('Date', '')}\n"
            f"Subject: {message.get('Subject', '')}\n\n"
            f"{body}"
        )


class MsgExtractor(Extractor):
    label = "Outlook Message"

    def extract(self, file_path: Path) -> str:
        message = extract_msg.Message(str(file_path))
        try:
            subject = message.subject or "No Subject"
            sender = message.sender or "Unknown Sender"
            body = message.body or "No Body Content"
        finally:
            message.close()
        return f"{self.header(file_path)}\n\nFrom: {sender}\nSubject: {subject}\n\n{body.strip()}"


class PowerPointExtractor(Extractor):
    """Placeholder: slide text extraction is not implemented."""

    label = "PowerPoint Document"

    def __init__(self, quiet: bool = False) -> None:
        self.quiet = quiet

    def extract(self, file_path: Path) -> str:
        log_warning(f"PowerPoint text extraction not implemented, indexing placeholder for {file_path}", quiet=self.quiet)
        return (
            f"{self.header(file_path)}\n\n"
            "Note: PowerPoint text extraction is not yet fully implemented. "
            "Consider exporting slides to PDF or text format for better indexing."
        )


class ExtractorRegistry:
    """Maps file extensions to extractors and isolates extraction failures."""

    def __init__(self, quiet: bool = False) -> None:
        self.quiet = quiet
        self._extractors: Dict[str, Extractor] = {}

    @classmethod
    def with_default_formats(cls, quiet: bool = False) -> "ExtractorRegistry":
        registry = cls(quiet=quiet)
        registry.register(".txt", PlainTextExtractor("Text File"))
        registry.register(".md", PlainTextExtractor("Markdown File"))
        registry.register(".mmd", PlainTextExtractor("Mermaid Diagram"))
        registry.register(".json", JsonExtractor())
        registry.register(".csv", CsvExtractor())
        registry.register(".pdf", PdfExtractor())
        registry.register(".docx", DocxExtractor())
        registry.register(".doc", DocExtractor())
        registry.register(".xlsx", ExcelExtractor())
        registry.register(".xls", ExcelExtractor())
        registry.register(".eml", EmlExtractor())
        registry.register(".msg", MsgExtractor())
        powerpoint = PowerPointExtractor(quiet=quiet)
        registry.register(".pptx", powerpoint)
        registry.register(".ppt", powerpoint)
        return registry

    def register(self, extension: str, extractor: Extractor) -> None:
        extension = extension.lower()
        if not extension.startswith("."):
            extension = f".{extension}"
        self._extractors[extension] = extractor

    @property
    def supported_extensions(self) -> List[str]:
        return sorted(self._extractors)

    def supports(self, file_path: Path) -> bool:
        return Path(file_path).suffix.lower() in self._extractors

    def extractor_for(self, file_path: Path) -> Optional[Extractor]:
        return self._extractors.get(Path(file_path).suffix.lower())

    def extract(self, file_path: Path, extension: Optional[str] = None) -> str:
        """Extract text; never raises for a bad file.

        Text formats that fail contribute nothing. Binary formats that fail
        yield a placeholder so the file is still recorded in the index.
        """
        file_path = Path(file_path)
        extension = (extension or file_path.suffix).lower()
        label = extension.lstrip(".").upper()
        extractor = self._extractors.get(extension)
        if extractor is None:
            return f"{label} Document: {file_path.name}\n\nUnsupported file format for text extraction."

        try:
            with suppress_library_noise():
                return extractor.extract(file_path)
        except Exception as error:
            log_error(f"Could not extract text from {file_path} ({extension})", error, quiet=self.quiet)
            if not extractor.binary:
                return ""
            return f"{label} Document: {file_path.name}\n\nError: Could not extract text content from this file."


# Chunk store

class ChunkStore:
    """In-memory chunk list with JSON persistence.

    Every access goes through one re-entrant lock; readers take ``snapshot()``
    copies so an indexing pass never exposes a half-updated list.
    """

    def __init__(self, path: Path, quiet: bool = False) -> None:
        self.path = Path(path)
        self.quiet = quiet
        self._chunks: List[Chunk] = []
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._chunks)

    def snapshot(self) -> Tuple[Chunk, ...]:
        with self._lock:
            return tuple(self._chunks)

    def add(self, chunks: Iterable[Chunk]) -> None:
        with self._lock:
            self._chunks.extend(chunks)

    def clear(self) -> None:
        with self._lock:
            self._chunks = []

    def files(self) -> List[str]:
        """Distinct source files, in first-seen order."""
        with self._lock:
            return list(dict.fromkeys(chunk.file for chunk in self._chunks))

    def chunks_for_file(self, source: str) -> List[Chunk]:
        with self._lock:
            return [chunk for chunk in self._chunks if chunk.file == source]

    def group_by_file(self) -> Dict[str, List[Chunk]]:
        grouped: Dict[str, List[Chunk]] = {}
        with self._lock:
            for chunk in self._chunks:
                grouped.setdefault(chunk.file, []).append(chunk)
        return grouped

    def latest_indexed(self) -> int:
        with self._lock:
            return max((chunk.indexed for chunk in self._chunks), default=0)

    def remove_chunks_for_file(self, source: str) -> int:
        with self._lock:
            before = len(self._chunks)
            self._chunks = [chunk for chunk in self._chunks if chunk.file != source]
            removed = before - len(self._chunks)
        if removed:
            log_info(f"Removed {removed} old chunks for {source}", quiet=self.quiet)
        return removed

    def replace_file(self, source: str, chunks: List[Chunk]) -> int:
        """Swap the chunks of one file in a single locked step."""
        with self._lock:
            removed = self.remove_chunks_for_file(source)
            self._chunks.extend(chunks)
        return removed

    def remove_chunks_for_missing_files(self, resolve: Callable[[str], Optional[Path]]) -> List[str]:
        """Purge chunks whose source no longer resolves to an existing file."""
        missing = [source for source in self.files() if resolve(source) is None]
        if missing:
            gone = set(missing)
            with self._lock:
                before = len(self._chunks)
                self._chunks = [chunk for chunk in self._chunks if chunk.file not in gone]
                removed = before - len(self._chunks)
            log_info(f"Removed {removed} chunks for {len(missing)} deleted files", quiet=self.quiet)
        return missing

    def persist(self) -> None:
        with self._lock:
            payload = [chunk.to_dict() for chunk in self._chunks]
        write_json_atomic(self.path, payload)
        log_info(f"Index saved to: {self.path} ({len(payload)} chunks)", quiet=self.quiet)

    def load(self) -> int:
        """Load the persisted index; missing or malformed files load as empty."""
        chunks: List[Chunk] = []
        if not self.path.exists():
            log_info("No existing index found, starting fresh", quiet=self.quiet)
        else:
            try:
                with open(self.path, "r", encoding="utf-8") as handle:
                    data = json.load(handle)
                if not isinstance(data, list):
                    raise ValueError("index file is not a JSON array")
                chunks = [Chunk.from_dict(entry) for entry in data]
            except (OSError, ValueError) as error:
                log_warning(f"Could not read index at {self.path.name}; starting fresh", error, quiet=self.quiet)
                chunks = []

        with self._lock:
            self._chunks = chunks
        return len(chunks)


# Retrieval scorer

@dataclass
class ScoredChunk:
    chunk: Chunk
    score: float
    matched_terms: int


def tokenize_query(query: str) -> List[str]:
    """Lowercase whitespace-separated terms longer than two characters."""
    terms = []
    for raw in query.lower().split():
        term = raw.strip(QUERY_PUNCTUATION)
        if len(term) > 2:
            terms.append(term)
    return terms


def score_content(content: str, terms: List[str]) -> Tuple[int, int]:
    """Score lowercase ``content`` against query terms.

    A term found as a whole word earns 3 points, as a bare substring 1 point.
    Covering more than one term adds a bonus of 2 points per matched term.
    """
    score = 0
    matched_terms = 0
    for term in terms:
        if term not in content:
            continue
        matched_terms += 1
        if re.search(rf"\b{re.escape(term)}\b", content):
            score += 3
        else:
            score += 1
    if matched_terms > 1:
        score += matched_terms * 2
    return score, matched_terms


def search(
    query: str,
    chunks: Iterable[Chunk],
    sensitivity: int,
    top_k: int = DEFAULT_TOP_K,
) -> List[ScoredChunk]:
    """Rank chunks against ``query`` and keep the best ``top_k`` above the threshold.

    ``sensitivity`` is the share (0-100) of the best achievable score of
    5 points per term that a chunk must reach, never less than 1 point.
    """
    terms = tokenize_query(query)
    if not terms:
        return []

    max_possible_score = len(terms) * 5
    min_score = max(1.0, (clamp_sensitivity(sensitivity) / 100) * max_possible_score)

    scored = []
    for chunk in tuple(chunks):
        score, matched_terms = score_content(chunk.content.lower(), terms)
        if score >= min_score:
            scored.append(ScoredChunk(chunk, score, matched_terms))

    scored.sort(key=lambda item: item.score, reverse=True)
    return scored[:top_k]


def extract_snippet(content: str, query: str, context_chars: int = DEFAULT_SNIPPET_CHARS) -> str:
    """Cut a window of ``content`` around the first match of ``query``.

    The whole query is looked for first, then the earliest single query term.
    Without any match the snippet is the start of the content. Ellipses mark
    the sides where text was cut.
    """
    lowered = content.lower()
    needle = query.lower().strip()
    index = lowered.find(needle) if needle else -1
    if index < 0:
        hits = [(lowered.find(term), term) for term in tokenize_query(query)]
        hits = [hit for hit in hits if hit[0] >= 0]
        if hits:
            index, needle = min(hits)
    if index < 0:
        return content[:context_chars] + ("..." if len(content) > context_chars else "")

    half = context_chars // 2
    start = max(0, index - half)
    end = min(len(content), index + len(needle) + half)
    return ("..." if start > 0 else "") + content[start:end] + ("..." if end < len(content) else "")


# Ollama client

class OllamaClient:
    """Thin client for the parts of the Ollama HTTP API the chat client uses."""

    def __init__(
        self,
        base_url: str = DEFAULT_OLLAMA_URL,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        default_model: str = DEFAULT_MODEL,
        emit: Optional[EventSink] = None,
        session: Optional[requests.Session] = None,
        quiet: bool = False,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.connect_timeout = connect_timeout
        self.default_model = default_model
        self.emit = emit or _noop_emit
        self.session = session or requests.Session()
        self.quiet = quiet

    def close(self) -> None:
        self.session.close()

    def _request(self, method: str, path: str, timeout: Any = None, **kwargs: Any) -> requests.Response:
        try:
            response = self.session.request(
                method, f"{self.base_url}{path}", timeout=timeout or self.timeout, **kwargs
            )
        except requests.RequestException as error:
            raise ModelServerError(f"Ollama not reachable at {self.base_url}: {error}") from error
        if not response.ok:
            status = response.status_code
            response.close()
            raise ModelServerError(f"Ollama request {method} {path} failed with HTTP {status}")
        return response

    def iter_ndjson(self, response: requests.Response) -> Iterator[Dict[str, Any]]:
        """Yield each JSON object of a streamed NDJSON body."""
        try:
            for line in response.iter_lines():
                if not line or not line.strip():
                    continue
                try:
                    parsed = json.loads(line)
                except ValueError:
                    log_warning(f"Skipping unparseable stream line: {line[:80]!r}", quiet=self.quiet)
                    continue
                if isinstance(parsed, dict):
                    yield parsed
        except requests.RequestException as error:
            raise ModelServerError(f"Stream from {self.base_url} interrupted: {error}") from error
        finally:
            response.close()

    def list_models(self) -> List[Dict[str, Any]]:
        response = self._request("GET", "/api/tags")
        try:
            return response.json().get("models") or []
        except ValueError as error:
            raise ModelServerError("Ollama returned an invalid model list") from error

    def pull_model(self, name: str) -> Dict[str, Any]:
        """Install a model, relaying every progress line as ``pull-progress``."""
        response = self._request("POST", "/api/pull", json={"name": name}, stream=True)
        for progress in self.iter_ndjson(response):
            self.emit("pull-progress", progress)
            if progress.get("error"):
                raise ModelServerError(f"Pull of {name} failed: {progress['error']}")
            if progress.get("status") == "success":
                return {"success": True, "model": name}
        raise StreamProtocolError(f"Pull of {name} ended before reporting success")

    def ensure_default_model(self) -> bool:
        """Pull the default model when it is missing. Returns True if it was installed."""
        models = self.list_models()
        if any(self.default_model in model.get("name", "") for model in models):
            return False
        log_info(f"Installing default model {self.default_model}", quiet=self.quiet)
        self.emit("pull-progress", {
            "status": "pulling",
            "message": f"Installing default model: {self.default_model}...",
        })
        self.pull_model(self.default_model)
        return True

    def show_model(self, name: str) -> Dict[str, Any]:
        """Model metadata plus capability flags and a usable context length."""
        response = self._request("POST", "/api/show", json={"name": name})
        try:
            info = response.json()
        except ValueError as error:
            raise ModelServerError(f"Ollama returned invalid metadata for {name}") from error

        lowered = name.lower()
        family = str((info.get("details") or {}).get("family") or "").lower()
        supports_thinking = any(hint in lowered for hint in THINKING_MODEL_HINTS) or (
            bool(family) and any(hint in family for hint in THINKING_FAMILIES)
        )
        supports_vision = any(hint in lowered for hint in VISION_MODEL_HINTS) or (
            bool(family) and any(hint in family for hint in VISION_FAMILIES)
        )

        context_length = DEFAULT_CONTEXT_LENGTH
        parameters = info.get("parameters")
        if parameters:
            parameters = str(parameters).lower()
            match = NUM_CTX_PATTERN.search(parameters) or CONTEXT_PATTERN.search(parameters)
            if match:
                context_length = int(match.group(1))
            context_length = max(MIN_CONTEXT_LENGTH, min(MAX_CONTEXT_LENGTH, context_length))

        return {
            **info,
            "supportsThinking": supports_thinking,
            "supportsVision": supports_vision,
            "contextLength": context_length,
        }

    def stream_chat(self, payload: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
        # Connect timeout only; a thinking phase can be silent for minutes.
        response = self._request(
            "POST", "/api/chat", timeout=(self.connect_timeout, None), json=payload, stream=True
        )
        yield from self.iter_ndjson(response)


# Chat augmentation proxy

class ChatProxy:
    """Adds document context to outgoing chats and relays the streamed reply."""

    def __init__(
        self,
        store: ChunkStore,
        settings: IndexSettings,
        client: OllamaClient,
        emit: Optional[EventSink] = None,
        top_k: int = DEFAULT_TOP_K,
        preview_chars: int = DEFAULT_PREVIEW_CHARS,
        quiet: bool = False,
    ) -> None:
        self.store = store
        self.settings = settings
        self.client = client
        self.emit = emit or _noop_emit
        self.top_k = top_k
        self.preview_chars = preview_chars
        self.quiet = quiet

    def _preview(self, content: str) -> str:
        if len(content) > self.preview_chars:
            return content[:self.preview_chars] + "..."
        return content

    def augment(
        self, messages: List[Dict[str, Any]], rag_enabled: bool
    ) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
        """Return the messages to send and the sources that were injected."""
        enhanced = list(messages)
        if not rag_enabled or len(self.store) == 0:
            return enhanced, []

        user_index = next(
            (index for index in range(len(enhanced) - 1, -1, -1) if enhanced[index].get("role") == "user"),
            None,
        )
        if user_index is None:
            return enhanced, []

        query = str(enhanced[user_index].get("content") or "")
        results = search(query, self.store.snapshot(), self.settings.sensitivity, self.top_k)
        if not results:
            log_info(f"No document context found for query: {query[:100]}", quiet=self.quiet)
            return enhanced, []

        context = "\n\n".join(f"[From {item.chunk.file}]: {item.chunk.content}" for item in results)
        enhanced.insert(user_index, {
            "role": "system",
            "content": (
                "Here is relevant information from the user's documents to help answer their question:"
                f"\n\n{context}\n\n"
                "Please use this information to provide a more accurate and informed response."
            ),
        })

        sources = [
            {
                "file": item.chunk.file,
                "content": self._preview(item.chunk.content),
                "lastModified": item.chunk.last_modified,
            }
            for item in results
        ]
        self.emit("sources-found", {"sources": sources, "query": query})
        self.emit("matching-documents", {
            "documents": sources,
            "searchTerms": tokenize_query(query),
            "totalMatches": len(results),
        })
        return enhanced, sources

    def chat(self, request: Dict[str, Any], rag_enabled: Optional[bool] = None) -> Dict[str, Any]:
        """Stream one chat turn; returns the aggregated reply once the server is done.

        Raises ModelServerError when the server fails and StreamProtocolError
        when the stream closes without a ``done`` line.
        """
        request = dict(request)
        flag = request.pop("ragEnabled", False)
        if rag_enabled is None:
            rag_enabled = bool(flag)

        messages, _ = self.augment(list(request.get("messages") or []), rag_enabled)
        payload = {
            **request,
            "messages": messages,
            "stream": True,
            "think": request.get("think", False),
            "options": request.get("options") or {},
        }

        content_parts: List[str] = []
        thinking_parts: List[str] = []
        for parsed in self.client.stream_chat(payload):
            self.emit("chat-stream", parsed)
            if parsed.get("error"):
                raise ModelServerError(f"Chat failed: {parsed['error']}")
            message = parsed.get("message") or {}
            if message.get("content"):
                content_parts.append(message["content"])
            if message.get("thinking"):
                thinking_parts.append(message["thinking"])
            if parsed.get("done"):
                return {"message": {"content": "".join(content_parts), "thinking": "".join(thinking_parts)}}

        raise StreamProtocolError("Chat stream ended without a done signal")


# Indexing scheduler

class IndexerState(Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    PROCESSING = "processing"
    PERSISTING = "persisting"
    ERROR = "error"


@dataclass
class PendingFile:
    path: Path
    source: str


@dataclass
class IndexReport:
    """Outcome of one indexing pass."""

    processed: int = 0
    unchanged: int = 0
    failed: int = 0
    removed_files: List[str] = field(default_factory=list)
    document_count: int = 0
    last_indexed: int = 0
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "unchanged": self.unchanged,
            "failed": self.failed,
            "removedFiles": list(self.removed_files),
            "documentCount": self.document_count,
            "lastIndexed": self.last_indexed,
            "message": self.message,
        }


class IndexingScheduler:
    """Runs indexing passes on demand, on settings change and on a timer."""

    def __init__(
        self,
        store: ChunkStore,
        settings: IndexSettings,
        registry: ExtractorRegistry,
        config: Optional[Dict[str, Any]] = None,
        emit: Optional[EventSink] = None,
        clock: Optional[Callable[[], int]] = None,
        quiet: bool = False,
    ) -> None:
        indexing = (config or load_config())["indexing"]
        self.store = store
        self.settings = settings
        self.registry = registry
        self.emit = emit or _noop_emit
        self.clock = clock or now_ms
        self.quiet = quiet

        self.min_chunk_length = int(indexing.get("min_chunk_length", DEFAULT_MIN_CHUNK_LENGTH))
        self.workers = max(1, int(indexing.get("workers", DEFAULT_WORKERS)))
        self.debounce_seconds = float(indexing.get("debounce_seconds", DEFAULT_DEBOUNCE_SECONDS))
        self.startup_delay = float(indexing.get("startup_delay_seconds", STARTUP_DELAY_SECONDS))
        self.check_interval = float(indexing.get("check_interval_seconds", CHECK_INTERVAL_SECONDS))
        self.startup_stale_ms = int(indexing.get("startup_stale_seconds", STARTUP_STALE_SECONDS)) * 1000
        self.max_age_ms = int(indexing.get("max_age_seconds", MAX_INDEX_AGE_SECONDS)) * 1000

        self.state = IndexerState.IDLE
        self.last_error: Optional[str] = None
        # Fingerprints of files that produced no chunks, so they are not re-read every pass
        self._empty_files: Dict[str, Tuple[int, int]] = {}
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._debounce_timer: Optional[threading.Timer] = None
        self._timer_lock = threading.Lock()

    # Status reporting

    def _emit_status(self, is_indexing: bool, message: str, progress: Optional[int] = None) -> None:
        payload: Dict[str, Any] = {
            "isIndexing": is_indexing,
            "message": message,
            "documentCount": len(self.store),
            "lastIndexed": self.settings.last_indexed,
        }
        if progress is not None:
            payload["indexingProgress"] = progress
        self.emit("indexing-status", payload)

    def status(self) -> Dict[str, Any]:
        return {
            "isIndexing": self.settings.is_indexing,
            "state": self.state.value,
            "documentCount": len(self.store),
            "fileCount": len(self.store.files()),
            "lastIndexed": self.settings.last_indexed,
            "directories": list(self.settings.directories),
            "sensitivity": self.settings.sensitivity,
            "enabled": self.settings.enabled,
            "lastError": self.last_error,
        }

    # Passes

    def resolve_source(self, source: str) -> Optional[Path]:
        """Find the file behind a stored relative path in the configured roots."""
        if os.path.isabs(source):
            return Path(source) if os.path.exists(source) else None
        for directory in self.settings.directories:
            candidate = Path(directory).expanduser() / source
            if candidate.exists():
                return candidate
        return None

    def _known_empty(self, pending: PendingFile) -> bool:
        fingerprint = self._empty_files.get(pending.source)
        if fingerprint is None:
            return False
        try:
            return file_fingerprint(pending.path) == fingerprint
        except OSError:
            return False

    def scan(self) -> Tuple[List[PendingFile], List[Path]]:
        """Partition supported files under every root into changed and unchanged."""
        existing = self.store.group_by_file()
        claimed: Set[str] = set()
        changed: List[PendingFile] = []
        unchanged: List[Path] = []

        for directory in self.settings.directories:
            root = Path(directory).expanduser()
            log_info(f"Scanning directory for changes: {root}", quiet=self.quiet)
            for file_path in walk_directory(root, quiet=self.quiet):
                if not self.registry.supports(file_path):
                    continue
                source = relative_source(file_path, root)
                if source in claimed:
                    log_warning(f"Skipping {file_path}: {source} is already indexed from another directory", quiet=self.quiet)
                    continue
                claimed.add(source)

                pending = PendingFile(file_path, source)
                if needs_reindex(file_path, existing.get(source, []), quiet=self.quiet) and not self._known_empty(pending):
                    changed.append(pending)
                else:
                    unchanged.append(file_path)

        return changed, unchanged

    def _process_file(self, pending: PendingFile) -> Tuple[PendingFile, List[Chunk], Optional[Exception]]:
        """Extract and chunk one file. Runs on pool threads; never touches the store."""
        try:
            last_modified, size = file_fingerprint(pending.path)
            text = self.registry.extract(pending.path, pending.path.suffix.lower())
            indexed = self.clock()
            chunks = [
                Chunk(passage, pending.source, last_modified, indexed, size)
                for passage in chunk_text(text, self.min_chunk_length)
            ]
            return pending, chunks, None
        except Exception as error:
            return pending, [], error

    def _process_all(self, changed: List[PendingFile]) -> Iterator[Tuple[PendingFile, List[Chunk], Optional[Exception]]]:
        if self.workers == 1 or len(changed) < 2:
            for pending in changed:
                yield self._process_file(pending)
            return
        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            yield from pool.map(self._process_file, changed)

    def run_pass(self, announce: Optional[str] = None) -> IndexReport:
        """Run one incremental pass over every configured directory.

        ``announce`` is emitted as a starting status once the pass owns the
        indexing flag, never for a rejected request.
        """
        if not self.settings.try_begin():
            raise IndexingInProgressError("An indexing pass is already running")
        try:
            if announce:
                self._emit_status(True, announce)
            return self._run_pass()
        except Exception as error:
            self.state = IndexerState.ERROR
            self.last_error = sanitize_error_message(str(error))
            log_error("Indexing pass failed", error, quiet=self.quiet)
            self._emit_status(False, f"Indexing failed: {self.last_error}")
            raise
        finally:
            self.state = IndexerState.IDLE
            self.settings.finish()

    def _run_pass(self) -> IndexReport:
        start_time = time.time()
        report = IndexReport()
        self.last_error = None

        self.state = IndexerState.SCANNING
        report.removed_files = self.store.remove_chunks_for_missing_files(self.resolve_source)
        for source in report.removed_files:
            self._empty_files.pop(source, None)
        changed, unchanged = self.scan()
        report.unchanged = len(unchanged)
        log_info(
            f"Found {len(changed) + len(unchanged)} documents: "
            f"{len(changed)} to process, {len(unchanged)} unchanged",
            quiet=self.quiet,
        )

        self.state = IndexerState.PROCESSING
        total = len(changed)
        for done, (pending, chunks, error) in enumerate(self._process_all(changed), 1):
            if error is not None:
                report.failed += 1
                self.store.remove_chunks_for_file(pending.source)
                handle_file_error(pending.path, "index", error, quiet=self.quiet)
            else:
                self.store.replace_file(pending.source, chunks)
                report.processed += 1
                if chunks:
                    self._empty_files.pop(pending.source, None)
                else:
                    log_info(f"No indexable text in {pending.source}", quiet=self.quiet)
                    with suppress(OSError):
                        self._empty_files[pending.source] = file_fingerprint(pending.path)
            log_info(f"[{done}/{total}] {pending.source}: {len(chunks)} chunks", quiet=self.quiet)
            self._emit_status(True, f"Processing: {pending.path.name}...", round(done / total * 100))

        self.state = IndexerState.PERSISTING
        self.settings.last_indexed = self.clock()
        try:
            self.store.persist()
        except OSError as error:
            log_error("Failed to save index after indexing", error, quiet=self.quiet)

        report.document_count = len(self.store)
        report.last_indexed = self.settings.last_indexed
        if report.processed or report.failed:
            report.message = f"Updated {report.processed} files, {report.document_count} total documents indexed"
        elif unchanged:
            report.message = "All files are up to date"
        else:
            report.message = "No supported files found in selected directories"

        log_info(f"{report.message} ({time.time() - start_time:.1f}s)", quiet=self.quiet)
        self._emit_status(False, report.message, 100)
        return report

    def clear_index(self) -> None:
        """Drop every chunk and persist the empty index."""
        if not self.settings.try_begin():
            raise IndexingInProgressError("Cannot clear the index while indexing")
        try:
            self.store.clear()
            self._empty_files.clear()
            self.settings.last_indexed = 0
            self.store.persist()
        finally:
            self.settings.finish()
        self._emit_status(False, "RAG database cleared")

    # Triggers

    def trigger_now(self) -> IndexReport:
        """Manual request; raises when nothing is configured or a pass is running."""
        if not self.settings.directories:
            raise ValueError("No directories configured")
        return self.run_pass(announce="Starting to index all directories...")

    def _run_triggered(self, reason: str) -> Optional[IndexReport]:
        """Automatic trigger: logs instead of raising so the host keeps running."""
        if not self.settings.directories or self.settings.is_indexing:
            return None
        log_info(f"Auto-indexing RAG directories ({reason}): {', '.join(self.settings.directories)}", quiet=self.quiet)
        try:
            return self.run_pass()
        except IndexingInProgressError:
            return None
        except Exception as error:
            log_error(f"Auto-indexing failed ({reason})", error, quiet=self.quiet)
            return None

    def check_startup(self) -> Optional[IndexReport]:
        if self.clock() - self.settings.last_indexed > self.startup_stale_ms:
            return self._run_triggered("startup")
        return None

    def check_stale(self) -> Optional[IndexReport]:
        if self.clock() - self.settings.last_indexed > self.max_age_ms:
            return self._run_triggered("daily check")
        return None

    def apply_settings(
        self,
        directories: Optional[Iterable[str]] = None,
        sensitivity: Optional[int] = None,
        enabled: Optional[bool] = None,
        schedule: bool = True,
    ) -> bool:
        """Update settings; a changed directory set or enabled flag schedules a pass."""
        changed = self.settings.update(directories=directories, sensitivity=sensitivity, enabled=enabled)
        if changed and schedule and self.settings.enabled and self.settings.directories:
            self._schedule_debounced()
        return changed

    def _schedule_debounced(self) -> None:
        with self._timer_lock:
            if self._debounce_timer is not None:
                self._debounce_timer.cancel()
            self._debounce_timer = threading.Timer(
                self.debounce_seconds, self._run_triggered, args=("settings change",)
            )
            self._debounce_timer.daemon = True
            self._debounce_timer.start()

    def _background_loop(self) -> None:
        if self._stop_event.wait(self.startup_delay):
            return
        self.check_startup()
        while not self._stop_event.wait(self.check_interval):
            self.check_stale()

    def start(self) -> None:
        """Start the startup check and the periodic staleness check."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._background_loop, name="icarus-indexer", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        with self._timer_lock:
            if self._debounce_timer is not None:
                self._debounce_timer.cancel()
                self._debounce_timer = None
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None


# Orchestrator

class IcarusRAG:
    """Main orchestrator: wires settings, store, extractors, scheduler and chat."""

    def __init__(
        self,
        data_dir: Optional[str] = None,
        config_path: Optional[str] = None,
        emit: Optional[EventSink] = None,
        clock: Optional[Callable[[], int]] = None,
        session: Optional[requests.Session] = None,
        quiet: bool = False,
    ) -> None:
        self.quiet = quiet
        self.config = load_config(config_path)
        storage = self.config["storage"]
        self.data_dir = Path(data_dir or storage["data_dir"]).expanduser().resolve()
        self.settings_path = self.data_dir / storage["settings_file"]
        self.emit = emit or _noop_emit

        self.user_settings = load_settings(self.settings_path, quiet=quiet)
        self.settings = IndexSettings.from_user_settings(self.user_settings)
        self.store = ChunkStore(self.data_dir / storage["database_file"], quiet=quiet)
        self.registry = ExtractorRegistry.with_default_formats(quiet=quiet)
        self.scheduler = IndexingScheduler(
            self.store, self.settings, self.registry,
            config=self.config, emit=self.emit, clock=clock, quiet=quiet,
        )

        ollama = self.config["ollama"]
        self.client = OllamaClient(
            base_url=ollama["base_url"],
            timeout=ollama["timeout"],
            connect_timeout=ollama["connect_timeout"],
            default_model=ollama["default_model"],
            emit=self.emit,
            session=session,
            quiet=quiet,
        )
        retrieval = self.config["retrieval"]
        self.top_k = int(retrieval["top_k"])
        self.chat_proxy = ChatProxy(
            self.store, self.settings, self.client, emit=self.emit,
            top_k=self.top_k, preview_chars=int(retrieval["preview_chars"]), quiet=quiet,
        )

    def load(self) -> int:
        """Load the persisted index once at start-up."""
        count = self.store.load()
        self.settings.last_indexed = self.store.latest_indexed()
        return count

    def update_settings(self, changes: Dict[str, Any], schedule: bool = True) -> Dict[str, Any]:
        """Merge and persist settings.json, then let the scheduler react."""
        merged = {**self.user_settings, **changes}
        save_settings(self.settings_path, merged)
        self.user_settings = merged
        self.scheduler.apply_settings(
            directories=merged.get("ragDirectories") or [],
            sensitivity=merged.get("ragSensitivity"),
            enabled=merged.get("ragEnabled"),
            schedule=schedule,
        )
        return merged

    def search(self, query: str, sensitivity: Optional[int] = None) -> List[ScoredChunk]:
        threshold = self.settings.sensitivity if sensitivity is None else sensitivity
        return search(query, self.store.snapshot(), threshold, self.top_k)

    def read_source(self, source: str) -> Dict[str, Any]:
        """Open a cited source: its text plus where it lives on disk.

        ``source`` is the relative path stored with each chunk and is resolved
        through the configured directories in order. Text files are returned
        as they are on disk, other formats through their extractor.
        """
        if os.path.isabs(source) or ".." in Path(source).parts:
            raise ValueError(f"Source must be relative to a configured directory: {source}")
        path = self.scheduler.resolve_source(source)
        if path is None or not path.is_file():
            raise ValueError(f"File not found in any configured directory: {source}")

        last_modified, size = file_fingerprint(path)
        extractor = self.registry.extractor_for(path)
        if extractor is not None and extractor.binary:
            content = self.registry.extract(path)
        else:
            content = read_text_file(path)
        return {
            "content": content,
            "filePath": str(path),
            "fileName": path.name,
            "size": size,
            "lastModified": last_modified,
        }

    def chat(self, request: Dict[str, Any], rag_enabled: Optional[bool] = None) -> Dict[str, Any]:
        return self.chat_proxy.chat(request, rag_enabled)

    def chat_options(self) -> Dict[str, Any]:
        """Sampling options for /api/chat derived from the saved settings."""
        settings = self.user_settings
        return {
            "temperature": settings.get("temperature"),
            "num_ctx": settings.get("contextLength"),
            "top_p": settings.get("topP"),
            "top_k": settings.get("topK"),
            "repeat_penalty": settings.get("repeatPenalty"),
        }

    def close(self) -> None:
        self.scheduler.stop()
        self.client.close()


# Command line interface

def parse_args(argv: Optional[List[str]] = None) -> Any:
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description=f"Icarus RAG v{__version__} - local document retrieval for Ollama chat",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  Indexing:
    %(prog)s index --dir ~/Documents/notes      # Add a folder and index it
    %(prog)s reindex                            # Clear and rebuild everything
    %(prog)s status                             # Index statistics
    %(prog)s watch                              # Background re-indexing until Ctrl+C

  Retrieval and chat:
    %(prog)s search "blue green deployment"     # Matching passages with scores
    %(prog)s search "rollout" --sensitivity 20  # Looser matching
    %(prog)s read team/handbook.txt             # Full text of a cited source
    %(prog)s chat "How do we deploy?" --think   # Streamed answer with document context
    %(prog)s chat "Summarise my notes" --rag    # Force document context for one chat

  Models:
    %(prog)s models                             # Installed models
    %(prog)s pull qwen3:4b                      # Install a model
    %(prog)s show qwen3:4b                      # Capabilities and context length
        """,
    )

    parser.add_argument(
        "command",
        choices=[
            "index",
            "reindex",
            "search",
            "read",
            "status",
            "clear",
            "chat",
            "models",
            "pull",
            "show",
            "watch",
        ],
        help="Command to execute",
    )
    parser.add_argument("query", nargs="*", help="Query, chat message or model name")

    parser.add_argument(
        "--data-dir", help=f"Directory holding {DATABASE_FILENAME} and {SETTINGS_FILENAME} (default: {DEFAULT_DATA_DIR})"
    )
    parser.add_argument("--config", help=f"Path to config file (default: {CONFIG_FILENAME})")
    parser.add_argument(
        "--dir", action="append", default=[], help="Add a directory to index (repeatable)"
    )
    parser.add_argument(
        "--sensitivity", type=int, help="Minimum relevance percentile 0-100 (default: from settings)"
    )
    parser.add_argument("--model", help="Model for chat (default: selected model in settings)")
    rag_group = parser.add_mutually_exclusive_group()
    rag_group.add_argument(
        "--rag", dest="rag", action="store_true", help="Chat with document context even if ragEnabled is off"
    )
    rag_group.add_argument("--no-rag", dest="rag", action="store_false", help="Chat without document context")
    parser.set_defaults(rag=None)
    parser.add_argument("--think", action="store_true", help="Ask thinking models to show their reasoning")
    parser.add_argument("--json", action="store_true", help="Output results as JSON")
    parser.add_argument("--quiet", "-q", action="store_true", help="Minimal output")
    parser.add_argument("--version", action="version", version=f"icarus-rag {__version__}")

    return parser.parse_args(argv)


class CliEvents:
    """Event sink that renders engine events on the terminal."""

    def __init__(self, quiet: bool = False) -> None:
        self.quiet = quiet
        self.sources: List[Dict[str, Any]] = []
        self._thinking = False

    def __call__(self, event: str, payload: Dict[str, Any]) -> None:
        if event == "chat-stream":
            message = payload.get("message") or {}
            if message.get("thinking") and not self.quiet:
                self._thinking = True
                sys.stdout.write(message["thinking"])
            if message.get("content"):
                if self._thinking:
                    sys.stdout.write("\n\n")
                    self._thinking = False
                sys.stdout.write(message["content"])
            sys.stdout.flush()
        elif event == "sources-found":
            self.sources = list(payload.get("sources") or [])
        elif event == "pull-progress" and not self.quiet:
            status = payload.get("status") or payload.get("message") or ""
            if payload.get("total") and payload.get("completed") is not None:
                status += f" {payload['completed'] * 100 // payload['total']}%"
            print(f"  {status}")
        elif event == "indexing-status" and not self.quiet and not payload.get("isIndexing"):
            print(payload.get("message", ""))


class Command:
    """Base command interface."""

    def execute(self, args: Any, rag: IcarusRAG, events: CliEvents) -> None:
        """Execute the command."""
        raise NotImplementedError


class IndexCommand(Command):
    """Add directories from --dir and run an incremental pass."""

    def execute(self, args: Any, rag: IcarusRAG, events: CliEvents) -> None:
        if args.dir:
            directories = list(rag.user_settings.get("ragDirectories") or [])
            directories.extend(str(Path(directory).expanduser().resolve()) for directory in args.dir)
            rag.update_settings({"ragDirectories": _dedupe_directories(directories)}, schedule=False)

        if args.command == "reindex":
            rag.scheduler.clear_index()

        report = rag.scheduler.trigger_now()
        if args.json:
            print(json.dumps(report.to_dict(), indent=2))
            return
        print(
            f"{SYMBOLS['success']} Indexed {report.document_count} chunks | "
            f"updated {report.processed} files, unchanged {report.unchanged}, "
            f"failed {report.failed}, removed {len(report.removed_files)}"
        )


class SearchCommand(Command):
    """Show the passages a chat would receive."""

    def execute(self, args: Any, rag: IcarusRAG, events: CliEvents) -> None:
        if not args.query:
            log_error("Please provide a search query", quiet=args.quiet)
            return

        query = " ".join(args.query)
        results = rag.search(query, sensitivity=args.sensitivity)

        if args.json:
            print(json.dumps(
                [
                    {
                        "file": r.chunk.file,
                        "score": r.score,
                        "matchedTerms": r.matched_terms,
                        "lastModified": r.chunk.last_modified,
                        "content": r.chunk.content,
                        "snippet": extract_snippet(r.chunk.content, query),
                    }
                    for r in results
                ],
                indent=2,
            ))
            return

        if not results:
            print("No results found.")
            return

        print(f"\n{SYMBOLS['search']} Search results for: '{query}'")
        print("=" * 50)
        for i, result in enumerate(results, 1):
            print(f"\n{i}. {result.chunk.file} (score {result.score:g}, {result.matched_terms} terms)")
            print(f"   {extract_snippet(result.chunk.content, query)}")


class ReadCommand(Command):
    """Print the full text of a cited source."""

    def execute(self, args: Any, rag: IcarusRAG, events: CliEvents) -> None:
        if not args.query:
            log_error("Please provide a source path as shown in search results", quiet=args.quiet)
            return

        document = rag.read_source(" ".join(args.query))
        if args.json:
            print(json.dumps(document, indent=2))
            return

        if not args.quiet:
            print(f"{SYMBOLS['found']} {document['filePath']} ({document['size']} bytes)")
            print("=" * 50)
        print(document["content"])


class StatusCommand(Command):
    """Show index statistics."""

    def execute(self, args: Any, rag: IcarusRAG, events: CliEvents) -> None:
        status = rag.scheduler.status()
        if args.json:
            print(json.dumps(status, indent=2))
            return

        last = status["lastIndexed"]
        print("Index Statistics:")
        print(f"  Total chunks: {status['documentCount']}")
        print(f"  Files indexed: {status['fileCount']}")
        print(f"  Index path: {rag.store.path}")
        print(f"  Last indexed: {time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(last / 1000)) if last else 'never'}")
        print(f"  Retrieval enabled: {'yes' if status['enabled'] else 'no'}")
        print(f"  Sensitivity: {status['sensitivity']}")
        print("  Directories:")
        for directory in status["directories"] or ["(none configured)"]:
            print(f"    - {directory}")


class ClearCommand(Command):
    """Remove every indexed chunk."""

    def execute(self, args: Any, rag: IcarusRAG, events: CliEvents) -> None:
        rag.scheduler.clear_index()


class ChatCommand(Command):
    """Send one message and stream the reply."""

    def execute(self, args: Any, rag: IcarusRAG, events: CliEvents) -> None:
        if not args.query:
            log_error("Please provide a chat message", quiet=args.quiet)
            return

        settings = rag.user_settings
        model = args.model or settings.get("selectedModel") or rag.client.default_model
        messages = []
        if settings.get("systemPrompt"):
            messages.append({"role": "system", "content": settings["systemPrompt"]})
        messages.append({"role": "user", "content": " ".join(args.query)})

        rag_enabled = bool(settings.get("ragEnabled")) if args.rag is None else args.rag
        if args.sensitivity is not None:
            rag.settings.update(sensitivity=args.sensitivity)

        rag.chat(
            {
                "model": model,
                "messages": messages,
                "think": args.think or bool(settings.get("showThinking")),
                "options": rag.chat_options(),
            },
            rag_enabled=rag_enabled,
        )
        print()

        if events.sources and not args.quiet:
            print(f"\n{SYMBOLS['found']} Sources:")
            for source in events.sources:
                print(f"  - {source['file']}")


class ModelsCommand(Command):
    """List installed models."""

    def execute(self, args: Any, rag: IcarusRAG, events: CliEvents) -> None:
        models = rag.client.list_models()
        if args.json:
            print(json.dumps(models, indent=2))
            return
        if not models:
            print("No models installed. Run: icarus-rag pull " + rag.client.default_model)
            return
        for model in models:
            print(model.get("name", ""))


class PullCommand(Command):
    """Install a model with progress output."""

    def execute(self, args: Any, rag: IcarusRAG, events: CliEvents) -> None:
        name = args.query[0] if args.query else rag.client.default_model
        rag.client.pull_model(name)
        print(f"{SYMBOLS['success']} Installed {name}")


class ShowCommand(Command):
    """Show model capabilities."""

    def execute(self, args: Any, rag: IcarusRAG, events: CliEvents) -> None:
        name = args.query[0] if args.query else (rag.user_settings.get("selectedModel") or rag.client.default_model)
        info = rag.client.show_model(name)
        if args.json:
            print(json.dumps(info, indent=2, default=str))
            return
        print(f"Model: {name}")
        print(f"  Thinking: {'yes' if info['supportsThinking'] else 'no'}")
        print(f"  Vision: {'yes' if info['supportsVision'] else 'no'}")
        print(f"  Context length: {info['contextLength']}")


class WatchCommand(Command):
    """Keep the index fresh until interrupted."""

    def execute(self, args: Any, rag: IcarusRAG, events: CliEvents) -> None:
        if args.dir:
            IndexCommand().execute(args, rag, events)
        rag.scheduler.start()
        print("Watching for stale index (Ctrl+C to stop)...")
        try:
            while True:
                time.sleep(1)
        except KeyboardInterrupt:
            print(f"\n{SYMBOLS['bye']} Stopping background indexing")
        finally:
            rag.scheduler.stop()


class CommandFactory:
    """Factory for creating command instances."""

    _commands = {
        "index": IndexCommand,
        "reindex": IndexCommand,
        "search": SearchCommand,
        "read": ReadCommand,
        "status": StatusCommand,
        "clear": ClearCommand,
        "chat": ChatCommand,
        "models": ModelsCommand,
        "pull": PullCommand,
        "show": ShowCommand,
        "watch": WatchCommand,
    }

    @classmethod
    def create_command(cls, command_name: str) -> Command:
        """Create a command instance."""
        command_class = cls._commands.get(command_name)
        if command_class is None:
            raise ValueError(f"Unknown command: {command_name}")
        return command_class()


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point using Command pattern."""
    args = parse_args(argv)
    events = CliEvents(quiet=args.quiet)

    try:
        command = CommandFactory.create_command(args.command)
        rag = IcarusRAG(
            data_dir=args.data_dir,
            config_path=args.config,
            emit=events,
            quiet=args.quiet,
        )
        rag.load()
        try:
            command.execute(args, rag, events)
        finally:
            rag.close()

    except (IcarusError, ValueError) as e:
        log_error(str(e), quiet=False)
        sys.exit(1)
    except Exception as e:
        log_error(f"Unexpected error executing command '{args.command}'", e, quiet=False)
        sys.exit(1)


if __name__ == "__main__":
    main()
