#!/usr/bin/env python3
"""
noagent

A small formatter for source trees: strips trailing whitespace from every line
and makes sure each file ends with exactly one newline.
"""

import argparse
import functools
import logging
import os
import re
import shutil
import stat
import sys
import tempfile
import time
from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Iterable, List, Optional, Set, Tuple

from tqdm import tqdm

# Define version
__version__ = "0.0.2"


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler()],
)
logger = logging.getLogger("noagent")

DEFAULT_EXTENSIONS: Tuple[str, ...] = (
    ".rs",
    ".ts",
    ".tsx",
    ".js",
    ".jsx",
    ".json",
    ".md",
    ".yml",
    ".yaml",
    ".css",
    ".scss",
    ".html",
    ".vue",
    ".py",
    ".go",
    ".java",
    ".cpp",
    ".c",
    ".h",
)

DEFAULT_IGNORE_PATTERNS: Tuple[str, ...] = (
    "node_modules",
    ".git",
    ".svn",
    ".hg",
    "dist",
    "build",
    "coverage",
    ".next",
    ".nuxt",
    "target",
    "vendor",
    "__pycache__",
    ".pytest_cache",
    ".mypy_cache",
    "venv",
    "env",
    ".env",
    ".DS_Store",
    "Thumbs.db",
)

DEFAULT_MAX_DEPTH = 50
WILDCARD = "*"
BACKUP_SUFFIX = ".noagent-bak"


class PatternKind(Enum):
    """How an ignore pattern is compared against a path segment."""

    LITERAL = "literal"
    WILDCARD = "wildcard"


@functools.lru_cache(maxsize=None)
def _compile_wildcard(text: str) -> "re.Pattern[str]":
    return re.compile(".*".join(re.escape(part) for part in text.split(WILDCARD)))


@dataclass(frozen=True)
class IgnorePattern:
    """
    A single ignore rule, tested against individual path segments.

    Literal patterns match a segment equal to, or starting with, the pattern
    text. Wildcard patterns match when the pattern occurs anywhere in the
    segment, with each ``*`` standing for any run of characters (including
    none) and every other character taken literally.
    """

    text: str
    kind: PatternKind

    @classmethod
    def parse(cls, text: str) -> "IgnorePattern":
        if not text:
            raise ValueError("Ignore pattern must not be empty")
        kind = PatternKind.WILDCARD if WILDCARD in text else PatternKind.LITERAL
        return cls(text, kind)

    def matches(self, segment: str) -> bool:
        if self.kind is PatternKind.WILDCARD:
            return _compile_wildcard(self.text).search(segment) is not None
        return segment.startswith(self.text)


@dataclass(frozen=True)
class TraversalConfig:
    root_path: str
    extensions: FrozenSet[str]
    ignore_patterns: Tuple[IgnorePattern, ...]
    max_depth: int = DEFAULT_MAX_DEPTH


@dataclass(frozen=True)
class FileOutcome:
    """Result of normalizing one file."""

    processed: bool = False
    changed: bool = False
    written: bool = False
    error: Optional[str] = None


@dataclass
class RunStats:
    found: int = 0
    processed: int = 0
    changed: int = 0
    written: int = 0
    errors: int = 0

    def record(self, outcome: FileOutcome) -> None:
        if outcome.processed:
            self.processed += 1
        if outcome.changed:
            self.changed += 1
        if outcome.written:
            self.written += 1
        if outcome.error is not None:
            self.errors += 1


def _display_path(path: str, root_dir: Optional[str]) -> str:
    if not root_dir:
        return path
    return os.path.relpath(path, root_dir)


def should_ignore(
    path: str, root_dir: str, ignore_patterns: Iterable[IgnorePattern]
) -> bool:
    """Check every segment of *path* (relative to *root_dir*) against the patterns."""
    segments: List[str] = os.path.relpath(path, root_dir).split(os.sep)
    return any(
        pattern.matches(segment)
        for pattern in ignore_patterns
        for segment in segments
    )


def _walk_branch(  # pylint: disable=too-many-branches
    directory: str,
    root_dir: str,
    config: TraversalConfig,
    visited: Set[str],
    depth: int,
) -> List[str]:
    files: List[str] = []

    if depth > config.max_depth:
        logger.debug(
            "Skipping %s: max depth exceeded", _display_path(directory, root_dir)
        )
        return files

    real_path: str = os.path.realpath(directory)
    if real_path in visited:
        logger.debug(
            "Skipping %s: already visited (symlink loop prevention)",
            _display_path(directory, root_dir),
        )
        return files
    visited.add(real_path)

    try:
        with os.scandir(directory) as it:
            entries = sorted(it, key=lambda entry: entry.name)
    except OSError as e:
        logger.warning("Error reading directory %s: %s", directory, str(e))
        return files

    for entry in entries:
        if should_ignore(entry.path, root_dir, config.ignore_patterns):
            logger.debug("Ignoring: %s", _display_path(entry.path, root_dir))
            continue

        try:
            if entry.is_symlink():
                # Resolve the link once
                try:
                    target_mode: int = os.stat(entry.path).st_mode
                except OSError:
                    logger.debug(
                        "Skipping broken symlink: %s",
                        _display_path(entry.path, root_dir),
                    )
                    continue
                if stat.S_ISDIR(target_mode):
                    files.extend(
                        _walk_branch(entry.path, root_dir, config, visited, depth + 1)
                    )
                elif stat.S_ISREG(target_mode):
                    files.append(entry.path)
            elif entry.is_dir(follow_symlinks=False):
                files.extend(
                    _walk_branch(entry.path, root_dir, config, visited, depth + 1)
                )
            elif entry.is_file(follow_symlinks=False):
                files.append(entry.path)
        except OSError as e:
            logger.debug(
                "Error accessing %s: %s", _display_path(entry.path, root_dir), str(e)
            )

    return files


def walk(root_path: str, config: TraversalConfig) -> List[str]:
    """
    Collect every regular file reachable from root_path.

    Symlinked directories are followed, but each real directory is entered at
    most once per call. Branches that are ignored, too deep, unreadable or
    broken contribute nothing instead of failing the walk.
    """
    if not os.path.isdir(root_path):
        raise NotADirectoryError(f"Not a directory: {root_path}")

    root_dir: str = os.path.abspath(root_path)
    visited: Set[str] = set()
    return _walk_branch(root_dir, root_dir, config, visited, 0)


def filter_by_extension(paths: Iterable[str], extensions: Iterable[str]) -> List[str]:
    """Keep paths whose final extension is one of *extensions* (case-sensitive)."""
    wanted: FrozenSet[str] = frozenset(extensions)
    return [path for path in paths if os.path.splitext(path)[1] in wanted]


def format_content(content: str) -> str:
    """
    Strip trailing spaces and tabs from each line and end with a single newline.

    Only "\\n" separates lines, so carriage returns in CRLF files are kept
    as-is. Applying this twice gives the same result as applying it once.
    """
    lines: List[str] = [line.rstrip(" \t") for line in content.split("\n")]
    return "\n".join(lines).rstrip("\n") + "\n"


def read_text(file_path: str) -> Tuple[str, str]:
    """Read a file without newline translation, returning (content, encoding)."""
    try:
        with open(file_path, "r", newline="", encoding="utf-8") as f:
            return f.read(), "utf-8"
    except UnicodeDecodeError:
        # latin-1 maps every byte, so the file round-trips unchanged
        logger.warning(
            "UTF-8 decoding failed for %s, falling back to latin-1", file_path
        )
        with open(file_path, "r", newline="", encoding="latin-1") as f:
            return f.read(), "latin-1"


def _remove_backup(backup_path: str) -> None:
    try:
        os.remove(backup_path)
    except OSError as e:
        logger.warning("Could not remove backup %s: %s", backup_path, str(e))


def write_with_backup(file_path: str, content: str, encoding: str) -> None:
    """
    Overwrite file_path in place, keeping a backup until the write succeeds.

    The original is restored from the backup if writing fails, and the write
    error is re-raised. A backup that cannot be removed afterwards is only
    logged, since the file itself has already been written.
    """
    backup_path: str = ""
    has_backup: bool = False
    try:
        # A fresh name per write, so an existing file is never overwritten
        fd, backup_path = tempfile.mkstemp(
            prefix=os.path.basename(file_path) + ".",
            suffix=BACKUP_SUFFIX,
            dir=os.path.dirname(file_path) or None,
        )
        os.close(fd)
        shutil.copy2(file_path, backup_path)
        has_backup = True
    except OSError as e:
        logger.warning("Could not create backup of %s: %s", file_path, str(e))
        if backup_path:
            _remove_backup(backup_path)

    try:
        with open(file_path, "w", newline="", encoding=encoding) as f:
            f.write(content)
    except OSError:
        if has_backup:
            try:
                shutil.copy2(backup_path, file_path)
                logger.info(
                    "Restored original file from backup after write error: %s",
                    file_path,
                )
            except OSError as restore_err:
                logger.error(
                    "Failed to restore %s from backup %s: %s",
                    file_path,
                    backup_path,
                    str(restore_err),
                )
            else:
                _remove_backup(backup_path)
        raise

    if has_backup:
        _remove_backup(backup_path)


def normalize_file(
    file_path: str, preview_only: bool = False, root_dir: Optional[str] = None
) -> FileOutcome:
    """Normalize one file, writing it back only when the content changed."""
    display: str = _display_path(file_path, root_dir)

    try:
        content, encoding = read_text(file_path)
    except OSError as e:
        logger.error("Error reading %s: %s", display, str(e))
        return FileOutcome(error=str(e))

    formatted: str = format_content(content)
    if formatted == content:
        logger.debug("No changes: %s", display)
        return FileOutcome(processed=True)

    if preview_only:
        logger.info("Would format: %s", display)
        return FileOutcome(processed=True, changed=True)

    try:
        write_with_backup(file_path, formatted, encoding)
    except OSError as e:
        logger.error("Error writing %s: %s", display, str(e))
        return FileOutcome(error=str(e))

    logger.debug("Formatted: %s", display)
    return FileOutcome(processed=True, changed=True, written=True)


def run(config: TraversalConfig, dry_run: bool = False) -> RunStats:
    """Walk the configured root and normalize every matching file, one at a time."""
    all_files: List[str] = walk(config.root_path, config)
    target_files: List[str] = filter_by_extension(all_files, config.extensions)

    stats = RunStats(found=len(target_files))
    logger.info("Found %d files to process", len(target_files))

    with tqdm(total=len(target_files), desc="Formatting files", unit="file") as pbar:
        for file_path in target_files:
            try:
                outcome: FileOutcome = normalize_file(
                    file_path, dry_run, config.root_path
                )
            except Exception as e:  # pylint: disable=broad-exception-caught
                logger.error("Unhandled error processing %s: %s", file_path, str(e))
                outcome = FileOutcome(error=str(e))
            stats.record(outcome)
            pbar.update(1)

    return stats


def format_duration(execution_time: float) -> str:
    if execution_time < 60:
        return f"{execution_time:.2f} seconds"
    if execution_time < 3600:
        minutes = int(execution_time // 60)
        seconds = execution_time % 60
        return f"{minutes} minute{'s' if minutes != 1 else ''} {seconds:.2f} seconds"
    hours = int(execution_time // 3600)
    minutes = int((execution_time % 3600) // 60)
    seconds = execution_time % 60
    return (
        f"{hours} hour{'s' if hours != 1 else ''} "
        f"{minutes} minute{'s' if minutes != 1 else ''} "
        f"{seconds:.2f} seconds"
    )


def log_summary(stats: RunStats, dry_run: bool, execution_time: float) -> None:
    logger.info(
        "Complete! Processed %d files in %s",
        stats.processed,
        format_duration(execution_time),
    )
    logger.info("%d files needed formatting", stats.changed)
    if not dry_run:
        logger.info("%d files written", stats.written)
    if stats.errors > 0:
        logger.warning("%d errors encountered", stats.errors)


def split_list(value: str) -> List[str]:
    """Split a comma-separated option value, dropping blank items."""
    return [item.strip() for item in value.split(",") if item.strip()]


def parse_extensions(value: str) -> List[str]:
    return [ext if ext.startswith(".") else f".{ext}" for ext in split_list(value)]


def resolve_max_depth(value: Optional[str]) -> int:
    """Turn the --max-depth option into a depth, falling back to the default."""
    if value is None:
        return DEFAULT_MAX_DEPTH
    try:
        max_depth = int(value)
    except ValueError:
        logger.warning(
            "Invalid max depth '%s', using default of %d", value, DEFAULT_MAX_DEPTH
        )
        return DEFAULT_MAX_DEPTH
    if max_depth < 0:
        logger.warning(
            "Negative max depth (%d), using default of %d",
            max_depth,
            DEFAULT_MAX_DEPTH,
        )
        return DEFAULT_MAX_DEPTH
    return max_depth


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="noagent",
        description="Strip trailing whitespace and normalize final newlines "
        "in a source tree",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "examples:\n"
            "  noagent                 Format files in current directory\n"
            "  noagent src/            Format files in src directory\n"
            "  noagent --ext=.js,.ts   Only format JavaScript and TypeScript files\n"
            "  noagent --dry-run       Preview changes without applying them\n"
            "  noagent --verbose       Show detailed output\n"
            "\n"
            f"default extensions: {','.join(DEFAULT_EXTENSIONS)}\n"
            f"default ignored patterns: {', '.join(DEFAULT_IGNORE_PATTERNS)}"
        ),
    )
    parser.add_argument(
        "root_dir",
        nargs="?",
        default=None,
        help="Directory to format (default: current directory)",
    )
    parser.add_argument(
        "--ext",
        type=parse_extensions,
        default=None,
        help="Comma-separated list of file extensions to process",
    )
    parser.add_argument(
        "--ignore",
        type=split_list,
        action="append",
        default=[],
        help="Additional comma-separated patterns to ignore",
    )
    parser.add_argument(
        "--max-depth",
        default=None,
        help=f"Maximum directory depth to traverse (default: {DEFAULT_MAX_DEPTH})",
    )
    parser.add_argument(
        "-n",
        "--dry-run",
        action="store_true",
        help="Show what would be changed without making changes",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable verbose output"
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="Also append log output to this file",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"noagent v{__version__}",
        help="Show program version and exit",
    )
    return parser


def build_config(args: argparse.Namespace) -> TraversalConfig:
    root_dir: str = os.path.abspath(args.root_dir if args.root_dir else os.getcwd())
    extensions: List[str] = list(DEFAULT_EXTENSIONS)
    if args.ext:
        extensions = args.ext
    elif args.ext is not None:
        logger.warning("No usable extensions given with --ext, using the defaults")

    pattern_texts: List[str] = list(DEFAULT_IGNORE_PATTERNS)
    for extra in args.ignore:
        pattern_texts.extend(extra)

    return TraversalConfig(
        root_path=root_dir,
        extensions=frozenset(extensions),
        ignore_patterns=tuple(IgnorePattern.parse(text) for text in pattern_texts),
        max_depth=resolve_max_depth(args.max_depth),
    )


def _add_file_handler(log_file: str) -> logging.Handler:
    handler = logging.FileHandler(log_file, mode="a")
    handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )
    logger.addHandler(handler)
    return handler


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    original_level: int = logger.level
    if args.verbose:
        logger.setLevel(logging.DEBUG)

    file_handler: Optional[logging.Handler] = None
    try:
        if args.log_file:
            file_handler = _add_file_handler(args.log_file)

        config: TraversalConfig = build_config(args)
        logger.info(
            "noagent v%s - Formatting files in %s",
            __version__,
            os.path.relpath(config.root_path, os.getcwd()),
        )

        if not os.path.isdir(config.root_path):
            logger.error("Error: '%s' is not a valid directory.", config.root_path)
            return 1
        if not os.access(config.root_path, os.R_OK | os.X_OK):
            logger.error("Error: '%s' is not readable.", config.root_path)
            return 1

        if args.dry_run:
            logger.info("Dry run mode - no files will be modified")
        logger.debug("Extensions: %s", ", ".join(sorted(config.extensions)))
        logger.debug(
            "Ignoring patterns: %s",
            ", ".join(pattern.text for pattern in config.ignore_patterns),
        )
        logger.debug("Max depth: %d", config.max_depth)

        start_time: float = time.time()
        stats: RunStats = run(config, args.dry_run)
        log_summary(stats, args.dry_run, time.time() - start_time)
        return 0
    except KeyboardInterrupt:
        logger.info("Operation cancelled by user.")
        return 130
    except Exception as e:  # pylint: disable=broad-exception-caught
        logger.error("An unexpected error occurred: %s", str(e))
        if logger.isEnabledFor(logging.DEBUG):
            import traceback  # pylint: disable=import-outside-toplevel

            logger.debug("Traceback: %s", traceback.format_exc())
        return 1
    finally:
        if file_handler is not None:
            logger.removeHandler(file_handler)
            file_handler.close()
        logger.setLevel(original_level)


if __name__ == "__main__":
    sys.exit(main())
