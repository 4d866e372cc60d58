"""
File Scanner for the i18n batch pipeline

Discovers source files holding translatable string literals, decides which
ones the cache already covers, and orders them for scheduling.

Performance Optimizations:
- Async file I/O with aiofiles (non-blocking)
- Parallel reads with asyncio.gather
- Semaphore-based concurrency control (prevent fd exhaustion)
- Symlink loop detection
- Timeout for file reads (network mount safety)
- Cached token counting for pending literals
"""

import asyncio
import fnmatch
import hashlib
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator

import aiofiles
import tiktoken

from .cache_store import CacheStore
from .common_types import (
    PRIORITY_ORDER,
    CandidateFile,
    Priority,
    ScanError,
    SortKey,
)
from .config import BatchConfig
from .profiling import profile_latency
from .utils import format_duration, sha256_bytes

logger = logging.getLogger(__name__)


MAX_CONCURRENT_FILE_READS = 50
FILE_READ_TIMEOUT_SECONDS = 30
READ_ENCODINGS = ("utf-8", "latin-1", "cp1252")

# Rough translator cost used by scan reports
SECONDS_PER_STRING = 30

# Priority thresholds
HIGH_MATCH_THRESHOLD = 10
HIGH_SIZE_LIMIT_BYTES = 10_000
MEDIUM_MATCH_MIN = 5

# Batching groups for process_with_intelligent_batching callers
SMALL_FILE_MAX_STRINGS = 5
MEDIUM_FILE_MAX_STRINGS = 15

# Quoted literal spans: single, double, back-tick
LITERAL_PATTERNS = (
    re.compile(r"'(?:[^'\\\n]|\\.)*'"),
    re.compile(r'"(?:[^"\\\n]|\\.)*"'),
    re.compile(r"`(?:[^`\\]|\\.)*`", re.DOTALL),
)


# =============================================================================
# LITERAL EXTRACTION
# =============================================================================


def extract_string_literals(content: str) -> list[str]:
    """All quoted literal spans in source text, quotes included."""
    literals: list[str] = []
    for pattern in LITERAL_PATTERNS:
        literals.extend(m.group(0) for m in pattern.finditer(content))
    return literals


def find_qualifying_literals(content: str, qualifying: re.Pattern) -> list[str]:
    """
    Distinct literal bodies containing at least one qualifying character.

    Order follows first occurrence.
    """
    seen: dict[str, None] = {}
    for literal in extract_string_literals(content):
        if qualifying.search(literal):
            seen.setdefault(literal[1:-1], None)
    return list(seen)


# =============================================================================
# SOURCE READING
# =============================================================================


async def read_source_bytes(file_path: str | Path) -> bytes:
    async with aiofiles.open(file_path, mode="rb") as f:
        return await f.read()


def decode_source(raw: bytes) -> str | None:
    """Decode with fallback encodings."""
    for encoding in READ_ENCODINGS:
        try:
            return raw.decode(encoding)
        except UnicodeDecodeError:
            continue  # Expected - try next encoding
    return None


# =============================================================================
# GLOB MATCHING
# =============================================================================


def expand_braces(pattern: str) -> list[str]:
    """Expand the first {a,b} group recursively: 'x.{js,ts}' -> ['x.js', 'x.ts']."""
    match = re.search(r"\{([^{}]*)\}", pattern)
    if not match:
        return [pattern]
    head, tail = pattern[:match.start()], pattern[match.end():]
    expanded: list[str] = []
    for option in match.group(1).split(","):
        expanded.extend(expand_braces(f"{head}{option}{tail}"))
    return expanded


def glob_to_regex(pattern: str) -> re.Pattern:
    """
    Compile one brace-free glob to a regex over POSIX relative paths.

    '**/' matches zero or more directories, '*' stays within a segment.
    """
    i = 0
    out = ""
    while i < len(pattern):
        if pattern.startswith("**/", i):
            out += "(?:.*/)?"
            i += 3
        elif pattern.startswith("**", i):
            out += ".*"
            i += 2
        elif pattern[i] == "*":
            out += "[^/]*"
            i += 1
        elif pattern[i] == "?":
            out += "[^/]"
            i += 1
        else:
            out += re.escape(pattern[i])
            i += 1
    return re.compile(f"^{out}$")


def compile_patterns(patterns: list[str]) -> list[re.Pattern]:
    compiled: list[re.Pattern] = []
    for pattern in patterns:
        for expanded in expand_braces(pattern.replace("\\", "/").removeprefix("./")):
            compiled.append(glob_to_regex(expanded))
    return compiled


# =============================================================================
# PRIORITIZATION
# =============================================================================


def classify_priority(
    relative_path: str,
    match_count: int,
    size_bytes: int,
    critical_markers: tuple[str, ...],
    ui_markers: tuple[str, ...],
) -> Priority:
    """First matching rule wins."""
    if any(m in relative_path for m in critical_markers) or (
        match_count > HIGH_MATCH_THRESHOLD and size_bytes < HIGH_SIZE_LIMIT_BYTES
    ):
        return Priority.HIGH
    if any(m in relative_path for m in ui_markers) or (
        MEDIUM_MATCH_MIN <= match_count <= HIGH_MATCH_THRESHOLD
    ):
        return Priority.MEDIUM
    return Priority.LOW


def sort_candidates(candidates: list[CandidateFile], sort_key: SortKey) -> list[CandidateFile]:
    """Priority group first, then the secondary key. Stable for ties."""
    if sort_key is SortKey.SIZE:
        secondary = lambda c: c.size_bytes
    elif sort_key is SortKey.MODIFIED:
        secondary = lambda c: -c.modified_at
    else:
        secondary = lambda c: -c.match_count
    return sorted(candidates, key=lambda c: (c.priority.rank, secondary(c)))


# =============================================================================
# SCAN RESULTS AND REPORTS
# =============================================================================


@dataclass
class ScanResult:
    """Result of a scan."""
    candidates: list[CandidateFile] = field(default_factory=list)
    errors: list[ScanError] = field(default_factory=list)
    files_examined: int = 0
    skipped_files: list[str] = field(default_factory=list)

    @property
    def needing_processing(self) -> list[CandidateFile]:
        return [c for c in self.candidates if c.needs_processing]


@dataclass
class ScanReport:
    total_files: int
    files_needing_translation: int
    total_strings: int
    by_priority: dict[str, int]
    estimated_seconds: int
    estimated_time: str
    total_tokens: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_files": self.total_files,
            "files_needing_translation": self.files_needing_translation,
            "total_strings": self.total_strings,
            "by_priority": self.by_priority,
            "estimated_seconds": self.estimated_seconds,
            "estimated_time": self.estimated_time,
            "total_tokens": self.total_tokens,
        }


def generate_scan_report(candidates: list[CandidateFile]) -> ScanReport:
    """Summarize a scan. Strings and priorities count pending files only."""
    pending = [c for c in candidates if c.needs_processing]
    total_strings = sum(c.match_count for c in pending)

    by_priority = {p.value: 0 for p in PRIORITY_ORDER}
    for c in pending:
        by_priority[c.priority.value] += 1

    estimated_seconds = total_strings * SECONDS_PER_STRING
    return ScanReport(
        total_files=len(candidates),
        files_needing_translation=len(pending),
        total_strings=total_strings,
        by_priority=by_priority,
        estimated_seconds=estimated_seconds,
        estimated_time=format_duration(estimated_seconds),
        total_tokens=sum(c.token_estimate for c in pending),
    )


def group_files_for_batching(
    candidates: list[CandidateFile],
    max_concurrency: int = 3,
) -> list[list[CandidateFile]]:
    """
    Group candidates by literal count.

    Small files (<= 5) run max_concurrency at a time, medium files (6-15)
    half as many, large files alone.
    """
    small = [c for c in candidates if c.match_count <= SMALL_FILE_MAX_STRINGS]
    medium = [
        c for c in candidates
        if SMALL_FILE_MAX_STRINGS < c.match_count <= MEDIUM_FILE_MAX_STRINGS
    ]
    large = [c for c in candidates if c.match_count > MEDIUM_FILE_MAX_STRINGS]

    groups: list[list[CandidateFile]] = []
    small_size = max(1, max_concurrency)
    for i in range(0, len(small), small_size):
        groups.append(small[i:i + small_size])

    medium_size = max(1, max_concurrency // 2)
    for i in range(0, len(medium), medium_size):
        groups.append(medium[i:i + medium_size])

    groups.extend([c] for c in large)
    return groups


# =============================================================================
# SCANNER
# =============================================================================


class FileScanner:
    """
    Finds candidate files for translation.

    Features:
    - Glob patterns with {a,b} brace expansion and ** directories
    - Skips dependency, build and VCS directories
    - Counts distinct quoted literals containing qualifying characters
    - Consults the CacheStore to flag files needing processing
    - Priority classification and stable ordering
    - Optional token estimates for pending literals
    """

    def __init__(self, config: BatchConfig | None = None, cache: CacheStore | None = None):
        self.config = config or BatchConfig()
        self.cache = cache
        self.qualifying = re.compile(self.config.qualifying_pattern)
        self._encoder: tiktoken.Encoding | None = None
        self._semaphore: asyncio.Semaphore | None = None

        self._token_cache: dict[str, int] = {}
        self._token_cache_max_size = 10000
        # Set once the encoder fails; estimates are 0 from then on
        self._estimates_disabled = False

    @property
    def encoder(self) -> tiktoken.Encoding:
        """Lazy-load tiktoken encoder."""
        if self._encoder is None:
            self._encoder = tiktoken.encoding_for_model("gpt-4")
        return self._encoder

    def count_tokens(self, text: str) -> int:
        """Count tokens in text with caching."""
        if not text:
            return 0

        text_hash = hashlib.sha256(text.encode("utf-8", errors="replace")).hexdigest()[:32]
        if text_hash in self._token_cache:
            return self._token_cache[text_hash]

        token_count = len(self.encoder.encode(text))

        if len(self._token_cache) >= self._token_cache_max_size:
            # Remove oldest 20% of entries
            keys_to_remove = list(self._token_cache.keys())[:self._token_cache_max_size // 5]
            for key in keys_to_remove:
                del self._token_cache[key]

        self._token_cache[text_hash] = token_count
        return token_count

    def estimate_tokens(self, literals: list[str]) -> int:
        """
        Token estimate for a file's literals, or 0 if tiktoken is unavailable.

        Loading an encoding may need network access; the first failure is
        logged and disables estimates for the rest of this scanner's life.
        """
        if self._estimates_disabled:
            return 0
        try:
            return sum(self.count_tokens(text) for text in literals)
        except Exception as e:
            self._estimates_disabled = True
            logger.warning(f"[SCAN] Token estimates disabled, tiktoken failed: {e}")
            return 0

    def should_skip_directory(self, dir_name: str) -> bool:
        for pattern in self.config.skipped_directories:
            if fnmatch.fnmatch(dir_name, pattern):
                return True
        return False

    # -------------------------------------------------------------------------
    # Discovery
    # -------------------------------------------------------------------------

    def discover(self, root: Path, patterns: list[str]) -> list[Path]:
        """
        Files under root whose relative path matches any pattern.

        A file matched by several patterns is returned once.
        """
        compiled = compile_patterns(patterns)
        seen: set[str] = set()
        matched: list[Path] = []

        for file_path in self._walk_directory_sync(root, set()):
            relative = file_path.relative_to(root).as_posix()
            if not any(regex.match(relative) for regex in compiled):
                continue
            key = str(file_path.resolve())
            if key in seen:
                continue
            seen.add(key)
            matched.append(file_path)

        return matched

    def _walk_directory_sync(self, directory: Path, visited: set[str]) -> Iterator[Path]:
        """Walk directory tree with symlink loop detection. Sorted for stable discovery order."""
        try:
            resolved = str(directory.resolve())
            if resolved in visited:
                return  # Symlink loop
            visited.add(resolved)

            for item in sorted(directory.iterdir(), key=lambda p: p.name):
                try:
                    if item.is_dir():
                        if not self.should_skip_directory(item.name):
                            yield from self._walk_directory_sync(item, visited)
                    elif item.is_file():
                        yield item
                except OSError as e:
                    logger.debug(f"[SCAN] Skipping {item}: {e}")
        except OSError as e:
            logger.warning(f"[SCAN] Cannot list {directory}: {e}")

    # -------------------------------------------------------------------------
    # Scanning
    # -------------------------------------------------------------------------

    @profile_latency("scan")
    async def scan(
        self,
        root: str | Path | None = None,
        patterns: list[str] | None = None,
        skip_cache: bool = False,
        prioritize_by: SortKey | str | None = None,
    ) -> ScanResult:
        """
        Scan a source tree for candidate files.

        Args:
            root: Directory to scan (default: config.src_dir)
            patterns: Glob patterns relative to root (default: config.file_patterns)
            skip_cache: Mark every candidate as needing processing
            prioritize_by: Secondary sort key inside a priority group

        Returns:
            ScanResult with ordered candidates and per-file errors
        """
        root_path = Path(root if root is not None else self.config.src_dir)
        patterns = patterns or self.config.file_patterns
        sort_key = SortKey(prioritize_by) if prioritize_by else self.config.sort_key

        result = ScanResult()
        if not root_path.is_dir():
            result.errors.append(ScanError(str(root_path), "source directory not found"))
            logger.warning(f"[SCAN] Source directory not found: {root_path}")
            return result

        self._semaphore = asyncio.Semaphore(MAX_CONCURRENT_FILE_READS)
        files = self.discover(root_path, patterns)
        result.files_examined = len(files)
        logger.info(f"[SCAN] Found {len(files)} files matching {patterns} under {root_path}")

        outcomes = await asyncio.gather(
            *(self._scan_file(f, root_path, skip_cache) for f in files),
            return_exceptions=True,
        )

        candidates: list[CandidateFile] = []
        for file_path, outcome in zip(files, outcomes):
            if isinstance(outcome, ScanError):
                logger.warning(f"[SCAN] Failed to scan {outcome.path}: {outcome.message}")
                result.errors.append(outcome)
            elif isinstance(outcome, BaseException):
                logger.warning(f"[SCAN] Failed to scan {file_path}: {outcome}")
                result.errors.append(ScanError(str(file_path), str(outcome)))
            elif isinstance(outcome, str):
                result.skipped_files.append(outcome)
            elif outcome is not None:
                candidates.append(outcome)

        result.candidates = sort_candidates(candidates, sort_key)
        logger.info(
            f"[SCAN] {len(result.candidates)} candidates, "
            f"{len(result.needing_processing)} need processing, {len(result.errors)} errors"
        )
        return result

    def scan_sync(self, *args, **kwargs) -> ScanResult:
        """Blocking wrapper around scan()."""
        return asyncio.run(self.scan(*args, **kwargs))

    async def _scan_file(
        self,
        file_path: Path,
        root: Path,
        skip_cache: bool,
    ) -> CandidateFile | str | None:
        """
        Analyze one file.

        Returns a CandidateFile, None when it holds no qualifying literal, or
        a skip reason string. Raises ScanError when it cannot be read.
        """
        async with self._semaphore:
            try:
                stat = file_path.stat()
            except OSError as e:
                raise ScanError(str(file_path), str(e)) from e

            if stat.st_size > self.config.max_file_size_bytes:
                return f"{file_path} (too large: {stat.st_size:,} bytes)"

            try:
                raw = await asyncio.wait_for(
                    read_source_bytes(file_path), timeout=FILE_READ_TIMEOUT_SECONDS
                )
            except asyncio.TimeoutError as e:
                raise ScanError(str(file_path), "read timeout") from e
            except OSError as e:
                raise ScanError(str(file_path), str(e)) from e

        content = decode_source(raw)
        if content is None:
            raise ScanError(str(file_path), "undecodable content")

        literals = find_qualifying_literals(content, self.qualifying)
        if not literals:
            return None

        relative = file_path.relative_to(root).as_posix()
        content_hash = sha256_bytes(raw)

        if skip_cache or self.cache is None:
            needs_processing = True
        else:
            needs_processing = self.cache.needs_translation(str(file_path), content_hash)

        token_estimate = 0
        if self.config.estimate_tokens and needs_processing:
            token_estimate = self.estimate_tokens(literals)

        return CandidateFile(
            path=str(file_path),
            content_hash=content_hash,
            size_bytes=len(raw),
            match_count=len(literals),
            priority=classify_priority(
                relative,
                len(literals),
                len(raw),
                self.config.critical_path_markers,
                self.config.ui_path_markers,
            ),
            needs_processing=needs_processing,
            modified_at=stat.st_mtime,
            relative_path=relative,
            token_estimate=token_estimate,
        )

    # -------------------------------------------------------------------------
    # Quick scan
    # -------------------------------------------------------------------------

    async def quick_scan(
        self,
        root: str | Path | None = None,
        patterns: list[str] | None = None,
    ) -> list[str]:
        """Paths whose content contains any qualifying character. No literal analysis, no cache lookup."""
        root_path = Path(root if root is not None else self.config.src_dir)
        if not root_path.is_dir():
            return []

        hits: list[str] = []
        for file_path in self.discover(root_path, patterns or self.config.file_patterns):
            try:
                raw = await read_source_bytes(file_path)
            except OSError as e:
                logger.warning(f"[SCAN] Failed to scan {file_path}: {e}")
                continue
            content = decode_source(raw)
            if content is not None and self.qualifying.search(content):
                hits.append(str(file_path))
        return hits
