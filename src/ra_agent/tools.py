# tools.py
# Tool implementations and their argument schemas.
# The dispatcher imports these through the registry and never calls them
# directly. Every handler returns JSON text or raises ToolFailure.

import fnmatch
import json
import os
import re
import signal
import subprocess
from html.parser import HTMLParser
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

DEFAULT_READ_LIMIT = 200
DEFAULT_LIST_LIMIT = 200
DEFAULT_GREP_LIMIT = 100
DEFAULT_WEB_LINES = 200
DEFAULT_SEARCH_RESULTS = 5
MAX_SEARCH_RESULTS = 10
DEFAULT_FIND_RESULTS = 10
WEB_TIMEOUT_SEC = 20.0
TRUNCATION_MARKER = "\n...[truncated]..."


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ToolFailure(Exception):
    """Raised by a tool when it ran but could not produce a successful result."""

    def __init__(self, kind: str, message: str, payload: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.payload = payload or {}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class ToolContext(BaseModel):
    """Read-only state shared by every tool invocation in a run."""

    model_config = ConfigDict(frozen=True)

    cwd: Path
    max_output_chars: int


def truncate(value: str, limit: int) -> tuple[str, bool]:
    """Cut `value` to `limit` characters, appending an explicit marker when cut."""
    if len(value) <= limit:
        return value, False
    return value[:limit] + TRUNCATION_MARKER, True


def resolve_path(cwd: Path, path: str | Path) -> Path:
    path = Path(path).expanduser()
    return path if path.is_absolute() else cwd / path


def _paginate(total: int, offset: int, limit: int, noun: str) -> tuple[int, int]:
    if total and offset > total:
        raise ToolFailure("invalid_argument", f"offset ({offset}) is beyond total {noun} ({total})")
    return offset, min(offset + limit - 1, total)


def _kill_process_group(proc: subprocess.Popen) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        proc.kill()


# ---------------------------------------------------------------------------
# Argument schemas
# ---------------------------------------------------------------------------


class ToolArgs(BaseModel):
    """
    Base for tool arguments. Explicit nulls fall back to field defaults and
    unknown keys are rejected, matching additionalProperties: false.
    """

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {key: value for key, value in data.items() if value is not None}
        return data


class ShellCommandArgs(ToolArgs):
    command: str = Field(..., description="The shell command to execute.")
    workdir: str | None = Field(default=None, description="Working directory for the command.")
    timeout_ms: int | None = Field(default=None, ge=1, description="Timeout in milliseconds.")
    max_output_chars: int | None = Field(
        default=None, ge=1, description="Maximum output characters to return per stream."
    )


class ReadFileArgs(ToolArgs):
    file_path: str = Field(..., description="Path to the file to read.")
    offset: int = Field(default=1, ge=1, description="1-indexed start line (>= 1).")
    limit: int = Field(
        default=DEFAULT_READ_LIMIT, ge=1, description="Maximum number of lines to return (>= 1)."
    )


class ListDirArgs(ToolArgs):
    dir_path: str = Field(..., description="Path to the directory to list.")
    offset: int = Field(default=1, ge=1, description="1-indexed start entry (>= 1).")
    limit: int = Field(
        default=DEFAULT_LIST_LIMIT, ge=1, description="Maximum number of entries to return (>= 1)."
    )
    depth: int = Field(default=1, ge=1, description="Maximum directory depth to traverse (>= 1).")


class GrepFilesArgs(ToolArgs):
    pattern: str = Field(
        ..., description="Python regex to search for (escape metacharacters for literal matches)."
    )
    path: str | None = Field(default=None, description="Root path to search.")
    include: str | None = Field(
        default=None, description="Glob filter for files, matched against the path relative to root."
    )
    limit: int = Field(
        default=DEFAULT_GREP_LIMIT, ge=1, description="Maximum number of matches to return (>= 1)."
    )


class ApplyPatchArgs(ToolArgs):
    patch: str = Field(..., description="Unified diff to apply.")


class SubmitArgs(ToolArgs):
    answer: str = Field(..., description="Final answer.")


class WebSearchArgs(ToolArgs):
    query: str = Field(..., description="Search query.")
    max_results: int = Field(
        default=DEFAULT_SEARCH_RESULTS, ge=1, description="Maximum number of results (>= 1)."
    )


class WebOpenArgs(ToolArgs):
    url: str = Field(..., description="URL to fetch.")
    offset: int = Field(default=1, ge=1, description="1-indexed start line (>= 1).")
    limit: int = Field(
        default=DEFAULT_WEB_LINES, ge=1, description="Maximum number of lines to return (>= 1)."
    )


class WebFindArgs(ToolArgs):
    url: str = Field(..., description="URL to fetch.")
    pattern: str = Field(..., description="Python regex matched case-insensitively per line.")
    max_results: int = Field(
        default=DEFAULT_FIND_RESULTS, ge=1, description="Maximum number of matching ranges (>= 1)."
    )
    context_lines: int = Field(
        default=2, ge=0, description="Lines of context around each match (>= 0)."
    )


# ---------------------------------------------------------------------------
# Workspace tools
# ---------------------------------------------------------------------------


def _tool_shell_command(args: ShellCommandArgs, ctx: ToolContext) -> str:
    workdir = resolve_path(ctx.cwd, args.workdir) if args.workdir else ctx.cwd
    if not workdir.is_dir():
        raise ToolFailure("not_found", f"workdir does not exist: {workdir}")

    try:
        proc = subprocess.Popen(
            ["bash", "-lc", args.command],
            cwd=workdir,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=True,
        )
    except ValueError as exc:
        # e.g. an embedded NUL byte in the command
        raise ToolFailure("invalid_argument", f"cannot run command: {exc}") from exc

    timeout = args.timeout_ms / 1000 if args.timeout_ms else None
    timed_out = False
    try:
        out, err = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        # The whole group goes, so no grandchild outlives the step.
        timed_out = True
        _kill_process_group(proc)
        out, err = proc.communicate()

    limit = args.max_output_chars or ctx.max_output_chars
    stdout, stdout_truncated = truncate(out.decode("utf-8", errors="replace"), limit)
    stderr, stderr_truncated = truncate(err.decode("utf-8", errors="replace"), limit)
    payload = {
        "exit_code": proc.returncode,
        "stdout": stdout,
        "stderr": stderr,
        "timed_out": timed_out,
        "truncated": stdout_truncated or stderr_truncated,
    }
    if timed_out:
        raise ToolFailure("timeout", f"command timed out after {args.timeout_ms} ms", payload)
    if proc.returncode != 0:
        raise ToolFailure("nonzero_exit", f"command exited with status {proc.returncode}", payload)
    return json.dumps(payload)


def _tool_read_file(args: ReadFileArgs, ctx: ToolContext) -> str:
    path = resolve_path(ctx.cwd, args.file_path)
    if not path.is_file():
        raise ToolFailure("not_found", f"no such file: {path}")

    lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
    start, end = _paginate(len(lines), args.offset, min(args.limit, DEFAULT_READ_LIMIT), "lines")
    numbered = [f"{number}: {lines[number - 1]}" for number in range(start, end + 1)]
    return json.dumps(
        {
            "file_path": str(path),
            "total_lines": len(lines),
            "start_line": start if lines else 0,
            "end_line": end,
            "lines": numbered,
        }
    )


def _walk_entries(root: Path, depth: int) -> list[dict[str, str]]:
    entries = []
    for dirpath, dirnames, filenames in os.walk(root):
        level = len(Path(dirpath).relative_to(root).parts)
        for name in dirnames:
            entries.append({"path": str(Path(dirpath) / name), "type": "dir"})
        for name in filenames:
            entries.append({"path": str(Path(dirpath) / name), "type": "file"})
        if level + 1 >= depth:
            dirnames.clear()
    return sorted(entries, key=lambda entry: entry["path"])


def _tool_list_dir(args: ListDirArgs, ctx: ToolContext) -> str:
    root = resolve_path(ctx.cwd, args.dir_path)
    if not root.is_dir():
        raise ToolFailure("not_found", f"no such directory: {root}")

    entries = _walk_entries(root, args.depth)
    total = len(entries)
    start, end = _paginate(total, args.offset, min(args.limit, DEFAULT_LIST_LIMIT), "entries")
    return json.dumps(
        {
            "dir_path": str(root),
            "total_entries": total,
            "start_index": start if total else 0,
            "end_index": end,
            "entries": entries[start - 1 : end],
        }
    )


def _include_matches(include: str, relative: Path) -> bool:
    return fnmatch.fnmatch(relative.as_posix(), include) or fnmatch.fnmatch(relative.name, include)


def _tool_grep_files(args: GrepFilesArgs, ctx: ToolContext) -> str:
    try:
        pattern = re.compile(args.pattern)
    except re.error as exc:
        raise ToolFailure(
            "invalid_argument",
            f"invalid regex pattern: {args.pattern}: {exc} "
            '(tip: escape metacharacters for literal matches, e.g. "main\\(" to match "main(")',
        ) from exc

    root = resolve_path(ctx.cwd, args.path) if args.path else ctx.cwd
    if not root.exists():
        raise ToolFailure("not_found", f"no such path: {root}")
    limit = min(args.limit, DEFAULT_GREP_LIMIT)
    files = [root] if root.is_file() else sorted(p for p in root.rglob("*") if p.is_file())

    matches: list[dict[str, Any]] = []
    truncated = False
    for file in files:
        relative = Path(file.name) if file == root else file.relative_to(root)
        if args.include and not _include_matches(args.include, relative):
            continue
        try:
            content = file.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            continue
        for number, line in enumerate(content.splitlines(), start=1):
            if pattern.search(line):
                matches.append({"path": str(file), "line": number, "text": line})
                if len(matches) >= limit:
                    truncated = True
                    break
        if truncated:
            break

    return json.dumps(
        {"pattern": args.pattern, "root": str(root), "matches": matches, "truncated": truncated}
    )


def detect_patch_strip_level(patch: str) -> int:
    """git-style diffs carry a/ and b/ prefixes and need -p1; plain diffs need -p0."""
    for line in patch.splitlines():
        if line.startswith("diff --git a/"):
            return 1
        if line.startswith(("--- a/", "+++ a/", "--- b/", "+++ b/")):
            return 1
    return 0


def _strip_patch_prefix(path: str) -> str:
    path = path.strip().split("\t")[0]
    if path == "/dev/null":
        return ""
    for prefix in ("a/", "b/"):
        if path.startswith(prefix):
            return path[len(prefix) :]
    return path


def parse_patch_changes(patch: str) -> list[dict[str, str]]:
    """List the files a unified diff touches, with add / update / delete kinds."""
    changes: list[dict[str, str]] = []
    seen: set[str] = set()
    old_path: str | None = None
    for line in patch.splitlines():
        if line.startswith("--- "):
            old_path = line[4:].strip()
            continue
        if line.startswith("+++ ") and old_path is not None:
            new_path = line[4:].strip()
            if old_path.split("\t")[0] == "/dev/null":
                kind, raw = "add", new_path
            elif new_path.split("\t")[0] == "/dev/null":
                kind, raw = "delete", old_path
            else:
                kind, raw = "update", new_path
            old_path = None
            path = _strip_patch_prefix(raw)
            if path and path not in seen:
                seen.add(path)
                changes.append({"path": path, "kind": kind})
    return changes


def _tool_apply_patch(args: ApplyPatchArgs, ctx: ToolContext) -> str:
    strip_level = detect_patch_strip_level(args.patch)
    result = subprocess.run(
        ["patch", f"-p{strip_level}"],
        input=args.patch,
        cwd=ctx.cwd,
        capture_output=True,
        text=True,
    )
    stdout, stdout_truncated = truncate(result.stdout, ctx.max_output_chars)
    stderr, stderr_truncated = truncate(result.stderr, ctx.max_output_chars)
    payload = {
        "strip_level": strip_level,
        "exit_code": result.returncode,
        "stdout": stdout,
        "stderr": stderr,
        "truncated": stdout_truncated or stderr_truncated,
    }
    if result.returncode != 0:
        raise ToolFailure("nonzero_exit", f"patch exited with status {result.returncode}", payload)
    return json.dumps(payload)


# ---------------------------------------------------------------------------
# Web tools
# ---------------------------------------------------------------------------


class _TextExtractor(HTMLParser):
    """Collects visible text from an HTML document, one block per line."""

    SKIP = {"script", "style", "noscript", "template", "svg", "head"}
    BLOCKS = {"p", "div", "br", "li", "tr", "h1", "h2", "h3", "h4", "h5", "h6", "pre", "section", "article"}

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self._parts: list[str] = []
        self._skip_depth = 0

    def handle_starttag(self, tag, attrs):
        if tag in self.SKIP:
            self._skip_depth += 1
        elif tag in self.BLOCKS:
            self._parts.append("\n")

    def handle_endtag(self, tag):
        if tag in self.SKIP and self._skip_depth:
            self._skip_depth -= 1
        elif tag in self.BLOCKS:
            self._parts.append("\n")

    def handle_data(self, data):
        if not self._skip_depth:
            self._parts.append(data)

    def lines(self) -> list[str]:
        text = "".join(self._parts)
        return [" ".join(line.split()) for line in text.splitlines() if line.strip()]


def _fetch_lines(url: str) -> list[str]:
    import httpx

    try:
        response = httpx.get(url, follow_redirects=True, timeout=WEB_TIMEOUT_SEC)
        response.raise_for_status()
    except httpx.InvalidURL as exc:
        raise ToolFailure("invalid_argument", f"invalid url: {url}: {exc}") from exc
    except httpx.HTTPStatusError as exc:
        raise ToolFailure(
            "network_error", f"GET {url} returned HTTP {exc.response.status_code}"
        ) from exc
    except httpx.HTTPError as exc:
        raise ToolFailure("network_error", f"GET {url} failed: {exc}") from exc

    if "html" in response.headers.get("content-type", ""):
        extractor = _TextExtractor()
        extractor.feed(response.text)
        return extractor.lines()
    return response.text.splitlines()


def _tool_web_search(args: WebSearchArgs, ctx: ToolContext) -> str:
    from ddgs import DDGS

    query = args.query.strip()
    if not query:
        raise ToolFailure("invalid_argument", "no query provided")
    try:
        # Coerce the generator to a list to ensure actual execution
        results = list(DDGS().text(query, max_results=min(args.max_results, MAX_SEARCH_RESULTS)))
    except Exception as exc:
        raise ToolFailure("network_error", f"search failed: {exc}") from exc

    return json.dumps(
        {
            "query": query,
            "results": [
                {"title": r.get("title", ""), "url": r.get("href", ""), "snippet": r.get("body", "")}
                for r in results
            ],
        }
    )


def _tool_web_open(args: WebOpenArgs, ctx: ToolContext) -> str:
    lines = _fetch_lines(args.url)
    start, end = _paginate(len(lines), args.offset, min(args.limit, DEFAULT_WEB_LINES), "lines")
    return json.dumps(
        {
            "url": args.url,
            "total_lines": len(lines),
            "start_line": start if lines else 0,
            "end_line": end,
            "lines": [f"{number}: {lines[number - 1]}" for number in range(start, end + 1)],
        }
    )


def _tool_web_find(args: WebFindArgs, ctx: ToolContext) -> str:
    try:
        pattern = re.compile(args.pattern, re.IGNORECASE)
    except re.error as exc:
        raise ToolFailure("invalid_argument", f"invalid regex pattern: {args.pattern}: {exc}") from exc

    lines = _fetch_lines(args.url)
    ranges = []
    for index, line in enumerate(lines):
        if not pattern.search(line):
            continue
        start = max(0, index - args.context_lines)
        end = min(len(lines), index + args.context_lines + 1)
        ranges.append(
            {
                "match_line": index + 1,
                "start_line": start + 1,
                "end_line": end,
                "lines": [f"{n + 1}: {lines[n]}" for n in range(start, end)],
            }
        )
        if len(ranges) >= args.max_results:
            break

    return json.dumps({"url": args.url, "pattern": args.pattern, "total_lines": len(lines), "matches": ranges})
