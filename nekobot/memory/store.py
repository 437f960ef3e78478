"""Tiered markdown memory: core memory, daily logs and recall archive.

Layout under ``<workspace>/memory``::

    MEMORY.md              core memory, always injected, soft-capped
    YYYY-MM-DD.md          daily logs, today's and yesterday's injected
    recall/<name>.md       conversation archive, search only

All mutation goes through :class:`MemoryStore`. Each file is guarded by its
own flock (sidecar under ``memory/.locks``) and rewritten via
write-to-temp-then-rename, so concurrent writers never interleave.
"""

import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Callable, Literal

from loguru import logger

from nekobot.errors import InvalidPatternError, InvalidTargetError, MemoryNotFoundError
from nekobot.utils.helpers import atomic_write_text, ensure_dir, file_lock, truncate_string

CORE_FILE = "MEMORY.md"
RECALL_DIR = "recall"
DEFAULT_CORE_CAP = 2000

WriteMode = Literal["append", "overwrite"]

_DATE_RE = re.compile(r"^(\d{4}-\d{2}-\d{2})(?:\.md)?$")
_RECALL_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_CORE_ALIASES = {"core", "memory", "memory.md"}
_TODAY_ALIASES = {"", "today", "daily"}


@dataclass
class WriteResult:
    """Outcome of a write; ``compaction_needed`` is only ever set for core memory."""
    file_id: str
    chars: int
    compaction_needed: bool = False


@dataclass
class ReplaceResult:
    file_id: str
    count: int
    chars: int
    compaction_needed: bool = False


@dataclass
class SearchHit:
    """One matching line."""
    file_id: str
    line_no: int
    text: str

    def __str__(self) -> str:
        return f"{self.file_id}:{self.line_no}: {self.text}"


@dataclass
class MemoryFile:
    file_id: str
    chars: int
    modified: datetime


@dataclass
class MemoryContext:
    """Snapshot injected into the system prompt once per invocation."""
    text: str
    core_chars: int
    core_cap: int
    compaction_needed: bool
    included: list[str] = field(default_factory=list)

    @property
    def warning(self) -> str | None:
        if not self.compaction_needed:
            return None
        return (
            f"⚠ {CORE_FILE} is {self.core_chars}/{self.core_cap} chars. "
            "Compact it with memory_replace (empty replacement deletes) "
            "before adding more."
        )


class MemoryStore:
    """
    Reads, writes and searches the markdown memory files.

    Targets accepted by :meth:`write` and :meth:`replace`:

    - ``core`` / ``MEMORY.md`` for core memory
    - ``today`` / ``daily`` for today's log, ``yesterday`` for the previous day
    - ``YYYY-MM-DD`` (optionally with ``.md``) for a specific daily log
    - ``recall/<name>`` for a recall entry

    Anything else, including path traversal, raises ``InvalidTargetError``.
    """

    def __init__(
        self,
        workspace: Path,
        core_cap_chars: int = DEFAULT_CORE_CAP,
        clock: Callable[[], datetime] | None = None,
    ):
        self.workspace = workspace
        self.memory_dir = ensure_dir(workspace / "memory")
        self.recall_dir = ensure_dir(self.memory_dir / RECALL_DIR)
        self._locks_dir = ensure_dir(self.memory_dir / ".locks")
        self.core_cap = core_cap_chars
        self._clock = clock or datetime.now

    @property
    def core_file(self) -> Path:
        return self.memory_dir / CORE_FILE

    def init(self) -> None:
        """Create an empty core memory file if there is none yet."""
        with self._lock(CORE_FILE):
            if not self.core_file.exists():
                atomic_write_text(self.core_file, "")
                logger.info(f"Memory: created empty {self.core_file}")

    # -- Targets --

    def today(self) -> date:
        return self._clock().date()

    def resolve(self, target: str) -> tuple[str, Path]:
        """Map a target name to ``(file_id, absolute path)``."""
        raw = (target or "").strip()
        key = raw.lower()

        if key in _CORE_ALIASES:
            return self._checked(CORE_FILE)
        if key in _TODAY_ALIASES:
            return self._checked(f"{self.today().isoformat()}.md")
        if key == "yesterday":
            return self._checked(f"{(self.today() - timedelta(days=1)).isoformat()}.md")

        m = _DATE_RE.match(raw)
        if m:
            try:
                date.fromisoformat(m.group(1))
            except ValueError:
                raise InvalidTargetError(f"Not a valid date: {raw}") from None
            return self._checked(f"{m.group(1)}.md")

        if raw.startswith(f"{RECALL_DIR}/"):
            name = raw[len(RECALL_DIR) + 1:]
            if name.endswith(".md"):
                name = name[:-3]
            if not _RECALL_NAME_RE.match(name) or ".." in name:
                raise InvalidTargetError(f"Invalid recall entry name: {name!r}")
            return self._checked(f"{RECALL_DIR}/{name}.md")

        raise InvalidTargetError(
            f"Unknown memory target {raw!r}. Use 'core', 'today', "
            "'YYYY-MM-DD' or 'recall/<name>'."
        )

    def _checked(self, file_id: str) -> tuple[str, Path]:
        path = (self.memory_dir / file_id).resolve()
        try:
            path.relative_to(self.memory_dir.resolve())
        except ValueError:
            logger.warning(f"Memory: path escape blocked for {file_id!r}")
            raise InvalidTargetError(f"Target escapes the memory directory: {file_id}") from None
        return file_id, path

    def _lock(self, file_id: str):
        return file_lock(self._locks_dir / (file_id.replace("/", "__") + ".lock"))

    # -- Mutation --

    def write(self, target: str, content: str, mode: WriteMode = "append") -> WriteResult:
        """
        Append to or overwrite a memory file.

        Core memory is never truncated: if the result is over the cap the
        write still lands in full and ``compaction_needed`` is set.
        """
        if mode not in ("append", "overwrite"):
            raise ValueError(f"Unknown write mode: {mode}")

        file_id, path = self.resolve(target)
        with self._lock(file_id):
            existing = path.read_text(encoding="utf-8") if path.exists() else None

            if mode == "overwrite":
                new_text = content
            else:
                base = existing if existing is not None else self._header(file_id)
                if base and not base.endswith("\n"):
                    base += "\n"
                new_text = base + content
                if not new_text.endswith("\n"):
                    new_text += "\n"

            atomic_write_text(path, new_text)

        result = WriteResult(file_id=file_id, chars=len(new_text))
        if file_id == CORE_FILE:
            result.compaction_needed = len(new_text) > self.core_cap
            if result.compaction_needed:
                logger.warning(
                    f"Memory: {CORE_FILE} is {len(new_text)}/{self.core_cap} chars, compaction needed"
                )
        logger.debug(f"Memory: {mode} {file_id} ({len(content)} chars)")
        return result

    def replace(
        self,
        target: str,
        find: str,
        replacement: str = "",
        regex: bool = False,
    ) -> ReplaceResult:
        """
        Replace every match of ``find`` in one memory file.

        Matching is case-sensitive. ``find`` is literal unless ``regex`` is
        true. The replacement is inserted verbatim (no group expansion); an
        empty replacement deletes the matched span.
        """
        if not find:
            raise InvalidPatternError("Search text must not be empty")
        pattern = _compile(find, regex=regex, case_insensitive=False)

        file_id, path = self.resolve(target)
        with self._lock(file_id):
            if not path.exists():
                raise MemoryNotFoundError(f"{file_id} does not exist")
            text = path.read_text(encoding="utf-8")
            new_text, count = pattern.subn(lambda _m: replacement, text)
            if count == 0:
                raise MemoryNotFoundError(f"No match for {find!r} in {file_id}")
            atomic_write_text(path, new_text)

        logger.debug(f"Memory: replaced {count} match(es) in {file_id}")
        return ReplaceResult(
            file_id=file_id,
            count=count,
            chars=len(new_text),
            compaction_needed=file_id == CORE_FILE and len(new_text) > self.core_cap,
        )

    def append_recall(
        self,
        session_key: str,
        user_text: str,
        assistant_text: str,
        when: datetime | None = None,
    ) -> WriteResult:
        """Archive one interactive exchange under ``recall/<date>-<session>.md``."""
        when = when or self._clock()
        name = f"{when.date().isoformat()}-{_slug(session_key)}"
        entry = (
            f"### {when.strftime('%H:%M:%S')}\n"
            f"**User:** {user_text.strip()}\n"
            f"**Assistant:** {truncate_string(assistant_text.strip(), 500)}\n"
        )
        return self.write(f"{RECALL_DIR}/{name}", entry, mode="append")

    # -- Reading --

    def read(self, target: str) -> str:
        _, path = self.resolve(target)
        return path.read_text(encoding="utf-8") if path.exists() else ""

    def list_files(self) -> list[MemoryFile]:
        """All memory files, newest first (ties by identifier)."""
        files = []
        for path in self._iter_paths():
            st = path.stat()
            files.append((
                -st.st_mtime_ns,
                MemoryFile(
                    file_id=path.relative_to(self.memory_dir).as_posix(),
                    chars=len(path.read_text(encoding="utf-8")),
                    modified=datetime.fromtimestamp(st.st_mtime),
                ),
            ))
        files.sort(key=lambda item: (item[0], item[1].file_id))
        return [f for _, f in files]

    def search(
        self,
        query: str,
        regex: bool = False,
        case_insensitive: bool = True,
        max_results: int | None = 20,
    ) -> list[SearchHit]:
        """
        Line-oriented search across core memory, every daily log and every
        recall entry. Results are ordered by file recency (newest first),
        then line order.
        """
        if not query:
            raise InvalidPatternError("Query must not be empty")
        pattern = _compile(query, regex=regex, case_insensitive=case_insensitive)

        hits: list[SearchHit] = []
        for mf in self.list_files():
            path = self.memory_dir / mf.file_id
            try:
                lines = path.read_text(encoding="utf-8").splitlines()
            except FileNotFoundError:
                continue
            for line_no, line in enumerate(lines, start=1):
                if pattern.search(line):
                    hits.append(SearchHit(mf.file_id, line_no, line))
                    if max_results is not None and len(hits) >= max_results:
                        return hits
        return hits

    def file_tree(self) -> str:
        files = self.list_files()
        if not files:
            return "(no memory files)"
        return "\n".join(f"- {f.file_id} ({f.chars} chars)" for f in files)

    def load_context(self, today: date | None = None) -> MemoryContext:
        """
        Build the memory block for the system prompt.

        Order: core memory, then yesterday's log, then today's log. Only the
        two dates are considered, regardless of which files were touched last.
        """
        today = today or self.today()
        yesterday = today - timedelta(days=1)

        core = self.core_file.read_text(encoding="utf-8") if self.core_file.exists() else ""
        sections = [f"## Core Memory ({CORE_FILE})\n\n{core.strip() or '(empty)'}"]
        included = [CORE_FILE]

        for day, label in ((yesterday, "yesterday"), (today, "today")):
            file_id = f"{day.isoformat()}.md"
            path = self.memory_dir / file_id
            if not path.exists():
                continue
            body = path.read_text(encoding="utf-8").strip()
            if body:
                sections.append(f"## Daily Log {day.isoformat()} ({label})\n\n{body}")
                included.append(file_id)

        ctx = MemoryContext(
            text="\n\n".join(sections),
            core_chars=len(core),
            core_cap=self.core_cap,
            compaction_needed=len(core) > self.core_cap,
            included=included,
        )
        if ctx.warning:
            ctx.text = f"{ctx.warning}\n\n{ctx.text}"
        return ctx

    # -- Internals --

    def _iter_paths(self) -> list[Path]:
        paths = [p for p in self.memory_dir.glob("*.md") if p.is_file()]
        paths.extend(p for p in self.recall_dir.glob("*.md") if p.is_file())
        return paths

    @staticmethod
    def _header(file_id: str) -> str:
        m = _DATE_RE.match(file_id)
        if m:
            return f"# {m.group(1)}\n\n"
        if file_id.startswith(f"{RECALL_DIR}/"):
            return f"# Recall: {file_id[len(RECALL_DIR) + 1:-3]}\n\n"
        return ""


def _compile(query: str, regex: bool, case_insensitive: bool) -> re.Pattern[str]:
    flags = re.IGNORECASE if case_insensitive else 0
    try:
        return re.compile(query if regex else re.escape(query), flags)
    except re.error as e:
        raise InvalidPatternError(f"Invalid regex {query!r}: {e}") from e


def _slug(key: str) -> str:
    slug = re.sub(r"[^A-Za-z0-9._-]+", "_", key).strip("._-")
    return slug or "session"
