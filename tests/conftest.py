"""
Pytest configuration and fixtures for i18n-batch tests.
"""

import asyncio
import re
import tempfile
from pathlib import Path
from typing import Callable, Generator

import pytest

from i18n_batch.cache_store import CacheStore
from i18n_batch.common_types import CandidateFile, Priority, TranslatedString, TranslationOutcome
from i18n_batch.config import DEFAULT_QUALIFYING_PATTERN, BatchConfig
from i18n_batch.file_scanner import find_qualifying_literals
from i18n_batch.utils import hash_file

QUALIFYING = re.compile(DEFAULT_QUALIFYING_PATTERN)


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTranslator:
    """
    Async translator double.

    Records calls, tracks peak concurrency, and returns one TranslatedString
    per qualifying literal in the file.
    """

    def __init__(self, delay: float = 0.0, fail_paths: set[str] | None = None,
                 hang_paths: set[str] | None = None, error: Exception | None = None):
        self.delay = delay
        self.fail_paths = fail_paths or set()
        self.hang_paths = hang_paths or set()
        self.error = error
        self.calls: list[str] = []
        self.active = 0
        self.peak = 0

    async def __call__(self, file_path: str, file_content: str) -> TranslationOutcome:
        self.calls.append(file_path)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if file_path in self.hang_paths:
                await asyncio.sleep(3600)
            if self.delay:
                await asyncio.sleep(self.delay)
            if file_path in self.fail_paths:
                raise self.error or RuntimeError(f"boom: {file_path}")
            literals = find_qualifying_literals(file_content, QUALIFYING)
            return TranslationOutcome(
                strings=[
                    TranslatedString(text, f"key.{i}", f"translated {i}")
                    for i, text in enumerate(literals)
                ],
            )
        finally:
            self.active -= 1


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache_dir(temp_dir: Path) -> Path:
    return temp_dir / "cache"


@pytest.fixture
def src_dir(temp_dir: Path) -> Path:
    path = temp_dir / "src"
    path.mkdir()
    return path


@pytest.fixture
def cache_store(cache_dir: Path) -> CacheStore:
    """CacheStore without git lookups."""
    return CacheStore(cache_dir, track_revisions=False)


@pytest.fixture
def batch_config(cache_dir: Path, src_dir: Path) -> BatchConfig:
    """Test configuration: no token estimates, no git, short timeouts."""
    return BatchConfig(
        cache_dir=str(cache_dir),
        src_dir=str(src_dir),
        file_patterns=["**/*.{js,ts,jsx,tsx}"],
        max_concurrency=2,
        task_timeout_seconds=5,
        isolation_mode="in_process",
        max_workers=2,
        track_revisions=False,
        estimate_tokens=False,
        prioritize_by="count",
        progress_interval_seconds=10,
    )


@pytest.fixture
def write_source(src_dir: Path) -> Callable[..., Path]:
    """Factory writing a source file under src_dir."""

    def _write(relative: str, content: str) -> Path:
        path = src_dir / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return path

    return _write


@pytest.fixture
def make_candidate(write_source) -> Callable[..., CandidateFile]:
    """Factory writing a source file and returning a matching CandidateFile."""

    def _make(relative: str, priority: Priority = Priority.LOW, literals: list[str] | None = None) -> CandidateFile:
        literals = literals if literals is not None else [f"你好 {relative}"]
        body = "\n".join(f"const s{i} = '{text}';" for i, text in enumerate(literals))
        path = write_source(relative, body + "\n")
        return CandidateFile(
            path=str(path),
            content_hash=hash_file(path),
            size_bytes=path.stat().st_size,
            match_count=len(literals),
            priority=priority,
            needs_processing=True,
            relative_path=relative,
        )

    return _make


@pytest.fixture
def translator() -> FakeTranslator:
    return FakeTranslator()


@pytest.fixture
def sample_tree(write_source) -> dict[str, Path]:
    """A small source tree with files of every priority."""
    files = {}

    # HIGH by path marker
    files["error"] = write_source(
        "utils/errorMessages.ts",
        "export const E1 = '发生错误';\nexport const E2 = \"网络异常\";\n",
    )

    # MEDIUM by path marker
    files["component"] = write_source(
        "components/Button.tsx",
        "export const Button = () => <button title={'点击这里'}>{`提交`}</button>;\n",
    )

    # MEDIUM by count (5 distinct literals)
    files["page"] = write_source(
        "pages/settings.js",
        "\n".join(f"const s{i} = '设置项{i}';" for i in range(5)) + "\n",
    )

    # LOW: one literal, duplicated
    files["low"] = write_source(
        "pages/about.jsx",
        "const a = '关于我们';\nconst b = '关于我们';\n",
    )

    # No qualifying literal
    files["plain"] = write_source("pages/plain.ts", "const greeting = 'hello';\n")

    # Not matched by the patterns
    files["readme"] = write_source("README.md", "中文说明\n")

    # Skipped directory
    files["vendored"] = write_source("node_modules/lib/index.js", "const x = '依赖';\n")

    return files


@pytest.fixture
def make_translator() -> Callable[..., FakeTranslator]:
    """Factory for translators with delays, failures or hangs."""
    return FakeTranslator
