"""
Unit tests for FileScanner.

Tests cover:
- Literal extraction and qualifying-literal counting
- Glob matching with braces and **
- Priority classification and ordering
- Cache-aware needs_processing
- Per-file error isolation
- Scan reports, quick scans and batching groups
"""

import re
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from i18n_batch import file_scanner
from i18n_batch.cache_store import CacheStore
from i18n_batch.common_types import CandidateFile, Priority, SortKey
from i18n_batch.config import DEFAULT_QUALIFYING_PATTERN, BatchConfig
from i18n_batch.file_scanner import (
    FileScanner,
    classify_priority,
    compile_patterns,
    expand_braces,
    extract_string_literals,
    find_qualifying_literals,
    generate_scan_report,
    group_files_for_batching,
    sort_candidates,
)

CJK = re.compile(DEFAULT_QUALIFYING_PATTERN)
CRITICAL = ("error", "Error", "core", "hook")
UI = ("component", "Component", "form", "Form", "modal", "Modal")


def _candidate(name: str, priority: Priority = Priority.LOW, count: int = 1,
               size: int = 100, modified: float = 0.0, pending: bool = True) -> CandidateFile:
    return CandidateFile(
        path=name,
        content_hash="h",
        size_bytes=size,
        match_count=count,
        priority=priority,
        needs_processing=pending,
        modified_at=modified,
    )


class TestLiteralExtraction:
    """Tests for literal spans and qualifying counts."""

    def test_all_quote_styles(self):
        content = "a('单引号'); b(\"双引号\"); c(`模板\n字符串`);"

        literals = extract_string_literals(content)

        assert "'单引号'" in literals
        assert '"双引号"' in literals
        assert "`模板\n字符串`" in literals

    def test_escaped_quotes_stay_inside(self):
        literals = extract_string_literals(r"x = 'it\'s 中文';")

        assert literals == [r"'it\'s 中文'"]

    def test_distinct_qualifying_literals(self):
        content = "const a = '你好';\nconst b = '你好';\nconst c = 'hello';\nconst d = \"世界\";\n"

        assert find_qualifying_literals(content, CJK) == ["你好", "世界"]

    def test_no_qualifying_literals(self):
        assert find_qualifying_literals("const a = 'hello'; // 注释", CJK) == []


class TestGlobMatching:
    """Tests for brace expansion and glob compilation."""

    def test_expand_braces(self):
        assert expand_braces("**/*.{js,ts}") == ["**/*.js", "**/*.ts"]
        assert expand_braces("{a,b}/{c,d}.ts") == ["a/c.ts", "a/d.ts", "b/c.ts", "b/d.ts"]
        assert expand_braces("plain.ts") == ["plain.ts"]

    def test_double_star_matches_root_and_nested(self):
        regexes = compile_patterns(["**/*.ts"])

        assert any(r.match("a.ts") for r in regexes)
        assert any(r.match("x/y/a.ts") for r in regexes)
        assert not any(r.match("x/y/a.tsx") for r in regexes)

    def test_single_star_stays_in_segment(self):
        regexes = compile_patterns(["src/*.ts"])

        assert any(r.match("src/a.ts") for r in regexes)
        assert not any(r.match("src/x/a.ts") for r in regexes)


class TestPriority:
    """Tests for classify_priority and sort_candidates."""

    @pytest.mark.parametrize("path,count,size,expected", [
        ("src/hooks/useAuth.ts", 1, 100, Priority.HIGH),
        ("src/core/api.ts", 1, 100, Priority.HIGH),
        ("src/pages/list.ts", 11, 9_999, Priority.HIGH),
        ("src/pages/list.ts", 11, 10_000, Priority.LOW),
        ("src/components/Nav.tsx", 1, 100, Priority.MEDIUM),
        ("src/pages/LoginForm.tsx", 1, 100, Priority.MEDIUM),
        ("src/pages/list.ts", 5, 100, Priority.MEDIUM),
        ("src/pages/list.ts", 10, 50_000, Priority.MEDIUM),
        ("src/pages/list.ts", 4, 100, Priority.LOW),
    ])
    def test_classify(self, path, count, size, expected):
        assert classify_priority(path, count, size, CRITICAL, UI) == expected

    def test_sort_by_count_groups_first(self):
        items = [
            _candidate("low", Priority.LOW, count=50),
            _candidate("med-few", Priority.MEDIUM, count=2),
            _candidate("high", Priority.HIGH, count=1),
            _candidate("med-many", Priority.MEDIUM, count=9),
        ]

        ordered = [c.path for c in sort_candidates(items, SortKey.COUNT)]

        assert ordered == ["high", "med-many", "med-few", "low"]

    def test_sort_by_size_and_modified(self):
        items = [
            _candidate("big-old", size=900, modified=1.0),
            _candidate("small-new", size=100, modified=9.0),
            _candidate("mid-mid", size=500, modified=5.0),
        ]

        assert [c.path for c in sort_candidates(items, SortKey.SIZE)] == ["small-new", "mid-mid", "big-old"]
        assert [c.path for c in sort_candidates(items, SortKey.MODIFIED)] == ["small-new", "mid-mid", "big-old"]

    def test_sort_is_stable_for_ties(self):
        items = [_candidate(f"f{i}", count=3) for i in range(5)]

        assert [c.path for c in sort_candidates(items, SortKey.COUNT)] == [f"f{i}" for i in range(5)]


class TestFileScannerScan:
    """Tests for FileScanner.scan()."""

    @pytest.mark.asyncio
    async def test_scan_sample_tree(self, batch_config: BatchConfig, cache_store: CacheStore, sample_tree):
        scanner = FileScanner(batch_config, cache_store)

        result = await scanner.scan()

        by_name = {Path(c.path).name: c for c in result.candidates}
        assert set(by_name) == {"errorMessages.ts", "Button.tsx", "settings.js", "about.jsx"}
        assert by_name["errorMessages.ts"].priority == Priority.HIGH
        assert by_name["Button.tsx"].priority == Priority.MEDIUM
        assert by_name["settings.js"].priority == Priority.MEDIUM
        assert by_name["about.jsx"].priority == Priority.LOW
        assert by_name["Button.tsx"].match_count == 2
        assert by_name["about.jsx"].match_count == 1
        assert all(c.needs_processing for c in result.candidates)
        assert result.errors == []

    @pytest.mark.asyncio
    async def test_scan_order(self, batch_config: BatchConfig, cache_store: CacheStore, sample_tree):
        result = await FileScanner(batch_config, cache_store).scan()

        names = [Path(c.path).name for c in result.candidates]
        assert names == ["errorMessages.ts", "settings.js", "Button.tsx", "about.jsx"]

    @pytest.mark.asyncio
    async def test_cached_file_not_pending(self, batch_config: BatchConfig, cache_store: CacheStore, sample_tree):
        cache_store.save(str(sample_tree["error"]))
        scanner = FileScanner(batch_config, cache_store)

        result = await scanner.scan()
        forced = await scanner.scan(skip_cache=True)

        pending = {Path(c.path).name for c in result.needing_processing}
        assert "errorMessages.ts" not in pending
        assert len(pending) == 3
        assert all(c.needs_processing for c in forced.candidates)

    @pytest.mark.asyncio
    async def test_overlapping_patterns_yield_one_candidate(
        self, batch_config: BatchConfig, cache_store: CacheStore, sample_tree
    ):
        scanner = FileScanner(batch_config, cache_store)

        result = await scanner.scan(patterns=["**/*.ts", "utils/*.ts", "utils/errorMessages.ts"])

        paths = [c.path for c in result.candidates]
        assert paths.count(str(sample_tree["error"])) == 1

    @pytest.mark.asyncio
    async def test_unreadable_file_is_isolated(
        self, batch_config: BatchConfig, cache_store: CacheStore, sample_tree
    ):
        original = file_scanner.read_source_bytes

        async def flaky(path):
            if str(path).endswith("about.jsx"):
                raise PermissionError("denied")
            return await original(path)

        with patch("i18n_batch.file_scanner.read_source_bytes", new=flaky):
            result = await FileScanner(batch_config, cache_store).scan()

        assert len(result.candidates) == 3
        assert len(result.errors) == 1
        assert result.errors[0].path.endswith("about.jsx")

    @pytest.mark.asyncio
    async def test_missing_root(self, batch_config: BatchConfig, temp_dir: Path):
        result = await FileScanner(batch_config).scan(temp_dir / "nope")

        assert result.candidates == []
        assert len(result.errors) == 1

    @pytest.mark.asyncio
    async def test_prioritize_by_size(self, batch_config: BatchConfig, write_source):
        write_source("a.ts", "const a = '一'; // " + "x" * 500 + "\n")
        write_source("b.ts", "const b = '二';\n")

        result = await FileScanner(batch_config).scan(prioritize_by="size")

        assert [Path(c.path).name for c in result.candidates] == ["b.ts", "a.ts"]

    @pytest.mark.asyncio
    async def test_token_estimates(self, batch_config: BatchConfig, sample_tree):
        batch_config.estimate_tokens = True
        encoder = MagicMock()
        encoder.encode.return_value = [1, 2, 3]

        with patch("tiktoken.encoding_for_model", return_value=encoder):
            result = await FileScanner(batch_config).scan()

        by_name = {Path(c.path).name: c for c in result.candidates}
        assert by_name["settings.js"].token_estimate == 15
        assert by_name["about.jsx"].token_estimate == 3

    @pytest.mark.asyncio
    async def test_token_estimate_failure_keeps_files(self, batch_config: BatchConfig, sample_tree):
        """An encoder that cannot load costs the estimate, never the file."""
        batch_config.estimate_tokens = True

        with patch("tiktoken.encoding_for_model", side_effect=OSError("offline")) as loader:
            result = await FileScanner(batch_config).scan()

        assert result.errors == []
        assert len(result.candidates) == 4
        assert all(c.token_estimate == 0 for c in result.candidates)
        assert loader.call_count == 1

    @pytest.mark.asyncio
    async def test_quick_scan(self, batch_config: BatchConfig, sample_tree):
        hits = await FileScanner(batch_config).quick_scan()

        assert {Path(h).name for h in hits} == {"errorMessages.ts", "Button.tsx", "settings.js", "about.jsx"}


class TestReports:
    """Tests for scan reports and batching groups."""

    def test_generate_scan_report(self):
        candidates = [
            _candidate("a", Priority.HIGH, count=3),
            _candidate("b", Priority.MEDIUM, count=2),
            _candidate("c", Priority.LOW, count=7, pending=False),
        ]

        report = generate_scan_report(candidates)

        assert report.total_files == 3
        assert report.files_needing_translation == 2
        assert report.total_strings == 5
        assert report.by_priority == {"high": 1, "medium": 1, "low": 0}
        assert report.estimated_seconds == 150
        assert report.estimated_time == "2m 30s"

    def test_group_files_for_batching(self):
        candidates = (
            [_candidate(f"s{i}", count=2) for i in range(4)]
            + [_candidate(f"m{i}", count=10) for i in range(3)]
            + [_candidate(f"l{i}", count=20) for i in range(2)]
        )

        groups = group_files_for_batching(candidates, max_concurrency=3)

        assert [[c.path for c in g] for g in groups] == [
            ["s0", "s1", "s2"], ["s3"],
            ["m0"], ["m1"], ["m2"],
            ["l0"], ["l1"],
        ]
