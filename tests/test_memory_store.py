"""Tests for the tiered markdown memory store."""

import os
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime

import pytest

from nekobot.errors import InvalidPatternError, InvalidTargetError, MemoryNotFoundError
from nekobot.memory.store import CORE_FILE, MemoryStore


# ---------------------------------------------------------------------------
# Targets
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "target, file_id",
    [
        ("core", "MEMORY.md"),
        ("MEMORY.md", "MEMORY.md"),
        ("today", "2026-03-14.md"),
        ("", "2026-03-14.md"),
        ("yesterday", "2026-03-13.md"),
        ("2025-12-31", "2025-12-31.md"),
        ("2025-12-31.md", "2025-12-31.md"),
        ("recall/notes", "recall/notes.md"),
    ],
)
def test_resolve_targets(memory: MemoryStore, target: str, file_id: str) -> None:
    resolved_id, path = memory.resolve(target)
    assert resolved_id == file_id
    assert path == (memory.memory_dir / file_id).resolve()


@pytest.mark.parametrize(
    "target",
    ["../secrets", "/etc/passwd", "recall/../../x", "recall/.hidden", "2026-13-45", "notes.txt"],
)
def test_resolve_rejects_unknown_or_escaping_targets(memory: MemoryStore, target: str) -> None:
    with pytest.raises(InvalidTargetError):
        memory.resolve(target)


def test_rejected_write_touches_nothing(memory: MemoryStore, workspace) -> None:
    with pytest.raises(InvalidTargetError):
        memory.write("../escape", "x")
    assert not (workspace / "escape.md").exists()
    assert not (workspace / "escape").exists()


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


def test_append_to_daily_log_adds_header_once(memory: MemoryStore) -> None:
    memory.write("today", "- first")
    memory.write("today", "- second")
    text = memory.read("today")
    assert text == "# 2026-03-14\n\n- first\n- second\n"


def test_overwrite_replaces_content(memory: MemoryStore) -> None:
    memory.write("core", "old facts")
    result = memory.write("core", "new facts", mode="overwrite")
    assert memory.read("core") == "new facts"
    assert result.file_id == CORE_FILE
    assert result.chars == len("new facts")


def test_core_over_cap_is_kept_in_full_and_flagged(memory: MemoryStore) -> None:
    big = "x" * 250
    result = memory.write("core", big, mode="overwrite")
    assert result.compaction_needed is True
    assert memory.read("core") == big


def test_compaction_flag_only_for_core(memory: MemoryStore) -> None:
    result = memory.write("today", "y" * 500)
    assert result.compaction_needed is False


def test_unknown_write_mode(memory: MemoryStore) -> None:
    with pytest.raises(ValueError):
        memory.write("core", "x", mode="prepend")


def test_recall_entry_format(memory: MemoryStore) -> None:
    memory.append_recall("telegram:42", "What's up?", "All good.", when=datetime(2026, 3, 14, 8, 5, 9))
    text = memory.read("recall/2026-03-14-telegram_42")
    assert text.startswith("# Recall: 2026-03-14-telegram_42\n\n")
    assert "### 08:05:09\n**User:** What's up?\n**Assistant:** All good.\n" in text


def test_recall_truncates_long_replies(memory: MemoryStore) -> None:
    memory.append_recall("cli:default", "hi", "z" * 2000)
    text = memory.read("recall/2026-03-14-cli_default")
    assistant_line = next(line for line in text.splitlines() if line.startswith("**Assistant:**"))
    assert len(assistant_line) < 520
    assert assistant_line.endswith("...")


# ---------------------------------------------------------------------------
# Replace
# ---------------------------------------------------------------------------


def test_replace_all_occurrences_case_sensitive(memory: MemoryStore) -> None:
    memory.write("core", "cat Cat cat\n", mode="overwrite")
    result = memory.replace("core", "cat", "dog")
    assert result.count == 2
    assert memory.read("core") == "dog Cat dog\n"


def test_replace_with_empty_deletes(memory: MemoryStore) -> None:
    memory.write("core", "- likes tea\n- stale fact\n", mode="overwrite")
    memory.replace("core", "- stale fact\n", "")
    assert memory.read("core") == "- likes tea\n"
    assert memory.search("stale fact", max_results=50) == []


def test_replace_literal_by_default(memory: MemoryStore) -> None:
    memory.write("core", "price: $5 (approx.)\n", mode="overwrite")
    memory.replace("core", "$5 (approx.)", "$6")
    assert memory.read("core") == "price: $6\n"


def test_replace_regex_inserts_replacement_verbatim(memory: MemoryStore) -> None:
    memory.write("core", "v1.2 and v3.4\n", mode="overwrite")
    result = memory.replace("core", r"v(\d)\.(\d)", r"\2", regex=True)
    assert result.count == 2
    assert memory.read("core") == "\\2 and \\2\n"


def test_replace_zero_matches_is_not_found_and_file_unchanged(memory: MemoryStore) -> None:
    memory.write("core", "nothing here\n", mode="overwrite")
    before = memory.core_file.stat().st_mtime_ns
    with pytest.raises(MemoryNotFoundError):
        memory.replace("core", "absent", "x")
    assert memory.read("core") == "nothing here\n"
    assert memory.core_file.stat().st_mtime_ns == before


def test_replace_missing_file(memory: MemoryStore) -> None:
    with pytest.raises(MemoryNotFoundError):
        memory.replace("2020-01-01", "a", "b")


def test_replace_bad_regex(memory: MemoryStore) -> None:
    memory.write("core", "x\n", mode="overwrite")
    with pytest.raises(InvalidPatternError):
        memory.replace("core", "(unclosed", "", regex=True)


def test_replace_empty_find(memory: MemoryStore) -> None:
    with pytest.raises(InvalidPatternError):
        memory.replace("core", "", "x")


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------


def _touch(path, ts: float) -> None:
    os.utime(path, (ts, ts))


def test_search_spans_all_tiers_newest_first(memory: MemoryStore) -> None:
    memory.write("core", "user likes tea\n", mode="overwrite")
    memory.write("2026-01-02", "tea at noon")
    memory.write("recall/2026-03-01-cli_default", "**User:** more TEA please")

    now = time.time()
    _touch(memory.memory_dir / "2026-01-02.md", now - 300)
    _touch(memory.core_file, now - 200)
    _touch(memory.recall_dir / "2026-03-01-cli_default.md", now - 100)

    hits = memory.search("tea")
    assert [h.file_id for h in hits] == [
        "recall/2026-03-01-cli_default.md",
        "MEMORY.md",
        "2026-01-02.md",
    ]
    assert str(hits[1]) == "MEMORY.md:1: user likes tea"


def test_search_case_sensitivity_and_regex(memory: MemoryStore) -> None:
    memory.write("core", "Alpha\nalpha\nbeta42\n", mode="overwrite")
    assert len(memory.search("alpha")) == 2
    assert len(memory.search("alpha", case_insensitive=False)) == 1
    hits = memory.search(r"beta\d+", regex=True)
    assert [(h.line_no, h.text) for h in hits] == [(3, "beta42")]


def test_search_respects_max_results(memory: MemoryStore) -> None:
    memory.write("core", "\n".join(f"line {i}" for i in range(50)), mode="overwrite")
    assert len(memory.search("line", max_results=5)) == 5
    assert len(memory.search("line")) == 20


def test_search_invalid_regex(memory: MemoryStore) -> None:
    with pytest.raises(InvalidPatternError):
        memory.search("[", regex=True)


def test_file_tree_lists_char_counts(memory: MemoryStore) -> None:
    memory.write("core", "12345", mode="overwrite")
    tree = memory.file_tree()
    assert "- MEMORY.md (5 chars)" in tree


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------


def test_context_order_core_yesterday_today(memory: MemoryStore) -> None:
    memory.write("core", "CORE", mode="overwrite")
    memory.write("today", "TODAY")
    memory.write("yesterday", "YESTERDAY")
    memory.write("2026-03-01", "OLD")

    ctx = memory.load_context()
    text = ctx.text
    assert text.index("CORE") < text.index("YESTERDAY") < text.index("TODAY")
    assert "OLD" not in text
    assert ctx.included == ["MEMORY.md", "2026-03-13.md", "2026-03-14.md"]
    assert ctx.warning is None


def test_context_skips_missing_logs(memory: MemoryStore) -> None:
    ctx = memory.load_context(today=date(2030, 1, 1))
    assert ctx.included == ["MEMORY.md"]
    assert "(empty)" in ctx.text


def test_context_warns_when_core_over_cap(memory: MemoryStore) -> None:
    memory.write("core", "f" * 300, mode="overwrite")
    ctx = memory.load_context()
    assert ctx.compaction_needed
    assert ctx.text.startswith("⚠ MEMORY.md is 300/200 chars.")
    assert "f" * 300 in ctx.text


def test_init_does_not_clobber_existing_core(workspace) -> None:
    (workspace / "memory" / "MEMORY.md").write_text("keep me")
    MemoryStore(workspace).init()
    assert (workspace / "memory" / "MEMORY.md").read_text() == "keep me"


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


def test_concurrent_appends_keep_every_line(memory: MemoryStore) -> None:
    writers, per_writer = 8, 25

    def append(writer: int) -> None:
        for i in range(per_writer):
            memory.write("core", f"- core fact {writer}-{i}")
            memory.write("today", f"- log entry {writer}-{i}")

    with ThreadPoolExecutor(max_workers=writers) as pool:
        list(pool.map(append, range(writers)))

    expected = {f"{w}-{i}" for w in range(writers) for i in range(per_writer)}

    core_lines = memory.read("core").splitlines()
    assert len(core_lines) == len(expected)
    assert {line.removeprefix("- core fact ") for line in core_lines} == expected

    daily = memory.read("today")
    assert daily.startswith("# 2026-03-14\n\n")
    entries = [line for line in daily.splitlines() if line.startswith("- log entry ")]
    assert len(entries) == len(expected)
    assert {line.removeprefix("- log entry ") for line in entries} == expected
    assert not list(memory.memory_dir.glob(".*.md.*"))  # no temp files left behind
