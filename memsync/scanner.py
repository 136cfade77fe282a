"""
Directory scanning for project indexing.

FileScanner walks a project root and returns the files worth sending to
the store. Rules, applied in order, first match wins:

1. Hidden directories (name starts with ".") are skipped with their subtree
2. Hidden files are skipped
3. Files with a denylisted extension (media, archives, binaries, office docs)
4. Files larger than the size ceiling (default 1 MiB)

A directory that cannot be listed aborts the scan; a file whose metadata
cannot be read is skipped.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator, Optional

logger = logging.getLogger(__name__)

DEFAULT_MAX_FILE_SIZE = 1024 * 1024

# Bytes inspected for the control-character ratio
BINARY_SAMPLE_SIZE = 8192
BINARY_CONTROL_RATIO = 0.10


# -----------------------------------------------------------------------------
# Extension tables (data, extend freely)
# -----------------------------------------------------------------------------

MEDIA_EXTENSIONS = frozenset({
    # images
    ".jpg", ".jpeg", ".png", ".gif", ".bmp", ".svg", ".ico", ".webp", ".tiff", ".tif",
    # audio
    ".mp3", ".wav", ".ogg", ".flac", ".aac",
    # video
    ".mp4", ".avi", ".mov", ".wmv", ".flv", ".webm", ".mkv", ".m4v", ".3gp",
    # archives
    ".zip", ".tar", ".gz", ".rar", ".7z",
    # executables and data blobs
    ".exe", ".dll", ".so", ".dylib", ".bin", ".dat", ".db", ".sqlite", ".mdb",
    # office documents
    ".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx",
})

BINARY_EXTENSIONS = frozenset({
    ".o", ".a", ".lib", ".obj", ".class", ".pyc", ".pyo", ".pyd",
})

IGNORED_EXTENSIONS = MEDIA_EXTENSIONS | BINARY_EXTENSIONS

LANGUAGE_MAP = {
    ".go": "Go",
    ".py": "Python",
    ".js": "JavaScript",
    ".ts": "TypeScript",
    ".jsx": "JavaScript (React)",
    ".tsx": "TypeScript (React)",
    ".html": "HTML",
    ".css": "CSS",
    ".scss": "SCSS",
    ".less": "LESS",
    ".json": "JSON",
    ".xml": "XML",
    ".yaml": "YAML",
    ".yml": "YAML",
    ".md": "Markdown",
    ".txt": "Text",
    ".sh": "Shell",
    ".bat": "Batch",
    ".ps1": "PowerShell",
    ".c": "C",
    ".cpp": "C++",
    ".h": "C/C++ Header",
    ".hpp": "C++ Header",
    ".cs": "C#",
    ".java": "Java",
    ".rb": "Ruby",
    ".php": "PHP",
    ".swift": "Swift",
    ".kt": "Kotlin",
    ".rs": "Rust",
    ".sql": "SQL",
    ".r": "R",
    ".dart": "Dart",
    ".lua": "Lua",
    ".scala": "Scala",
    ".pl": "Perl",
    ".groovy": "Groovy",
    ".elm": "Elm",
    ".ex": "Elixir",
    ".exs": "Elixir",
    ".erl": "Erlang",
    ".hs": "Haskell",
    ".fs": "F#",
    ".fsx": "F#",
    ".clj": "Clojure",
    ".toml": "TOML",
    ".ini": "INI",
    ".cfg": "Configuration",
    ".conf": "Configuration",
}

UNKNOWN_LANGUAGE = "unknown"


def detect_language(path: str) -> str:
    """Language name for a file's extension, or "unknown"."""
    return LANGUAGE_MAP.get(os.path.splitext(path)[1].lower(), UNKNOWN_LANGUAGE)


def is_binary(data: bytes) -> bool:
    """
    Heuristic binary check.

    Binary if any NUL byte is present, or if more than 10% of the sampled
    bytes are control characters other than tab, LF and CR.
    """
    if not data:
        return False
    if b"\x00" in data:
        return True
    sample = data[:BINARY_SAMPLE_SIZE]
    control = sum(1 for b in sample if b < 32 and b not in (9, 10, 13))
    return control / len(sample) > BINARY_CONTROL_RATIO


def relative_path(root: str, path: str) -> str:
    """Root-relative path with forward slashes."""
    return Path(os.path.relpath(path, root)).as_posix()


# -----------------------------------------------------------------------------
# Scanner
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class SkippedFile:
    path: str
    reason: str


@dataclass
class ScanResult:
    """
    Output of one scan.

    ``files`` are absolute candidate paths in walk order; ``skipped``
    holds every file seen but rejected. ``scanned`` counts both.
    """
    root: str
    files: list[str] = field(default_factory=list)
    skipped: list[SkippedFile] = field(default_factory=list)

    @property
    def scanned(self) -> int:
        return len(self.files) + len(self.skipped)

    def __iter__(self) -> Iterator[str]:
        return iter(self.files)

    def __len__(self) -> int:
        return len(self.files)


def _raise_walk_error(err: OSError) -> None:
    raise err


class FileScanner:
    """Walks a directory tree and applies the inclusion rules."""

    def __init__(
        self,
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
        ignored_extensions: Optional[Iterable[str]] = None,
    ):
        self.max_file_size = max_file_size
        extra = {_normalize_ext(e) for e in (ignored_extensions or ())}
        self.ignored_extensions = IGNORED_EXTENSIONS | frozenset(extra)

    def check(self, name: str, path: str) -> Optional[str]:
        """Rejection reason for a file, or None if it is a candidate."""
        if name.startswith("."):
            return "hidden file"
        ext = os.path.splitext(name)[1].lower()
        if ext in self.ignored_extensions:
            return f"ignored extension {ext}"
        try:
            size = os.stat(path).st_size
        except OSError as e:
            logger.debug("Cannot stat %s: %s", path, e)
            return f"unreadable metadata: {e.strerror or e}"
        if size > self.max_file_size:
            return f"too large ({size} bytes)"
        return None

    def scan(self, root: str) -> ScanResult:
        """
        Walk ``root`` and classify every file as candidate or skipped.

        Raises:
            ValueError: If root does not exist or is not a directory
            OSError: If a directory inside the tree cannot be listed
        """
        root = os.path.abspath(os.path.expanduser(root))
        if not os.path.isdir(root):
            raise ValueError(f"Not a directory: {root}")

        result = ScanResult(root=root)
        for dirpath, dirnames, filenames in os.walk(root, onerror=_raise_walk_error):
            dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
            for name in sorted(filenames):
                path = os.path.join(dirpath, name)
                reason = self.check(name, path)
                if reason is None:
                    result.files.append(path)
                else:
                    result.skipped.append(SkippedFile(relative_path(root, path), reason))
        logger.debug(
            "Scanned %s: %d candidates, %d skipped",
            root, len(result.files), len(result.skipped),
        )
        return result


def _normalize_ext(ext: str) -> str:
    ext = ext.strip().lower()
    return ext if ext.startswith(".") else f".{ext}"
