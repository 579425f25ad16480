# prompt.py
# System prompt assembly and task loading.
# The loop treats the assembled prompt as an opaque string.

from pathlib import Path

from ra_agent.models import RunConfig

AGENTS_FILENAME = "AGENTS.md"

BASE_PROMPT = """\
You are a CLI agent. Use tools to inspect and modify the workspace to complete the task.
Rules:
- Use at most one tool call per step.
- Prefer tools over guessing. Tool outputs are authoritative.\
"""

TOOL_USAGE_NOTES = """\
Tool usage notes:
- Pagination is 1-indexed: read_file.offset and list_dir.offset start at 1 (not 0). limit/depth must be >= 1.
- grep_files.pattern is a Python regex. Escape metacharacters if you want a literal match (e.g. use "main\\(" to search for "main(").
- If you need to edit files, prefer apply_patch.
"""

WORKSPACE_TOOL_LINES = [
    "shell_command(command, workdir?, timeout_ms?, max_output_chars?)",
    "read_file(file_path, offset?, limit?)",
    "list_dir(dir_path, offset?, limit?, depth?)",
    "grep_files(pattern, path?, include?, limit?)",
    "apply_patch(patch)",
]

WEB_TOOL_LINES = [
    "web_search(query, max_results?)",
    "web_open(url, offset?, limit?)",
    "web_find(url, pattern, max_results?, context_lines?)",
]


def load_agents_instructions(cwd: Path) -> str | None:
    """Concatenate every AGENTS.md from cwd up to the filesystem root, nearest first."""
    notes = []
    for directory in (cwd, *cwd.parents):
        candidate = directory / AGENTS_FILENAME
        if candidate.is_file():
            notes.append(candidate.read_text(encoding="utf-8"))
    return "\n\n".join(notes) if notes else None


def build_system_prompt(config: RunConfig) -> tuple[str, str | None]:
    """Return (system prompt, AGENTS.md text folded into it, if any)."""
    parts = [BASE_PROMPT]
    if config.submit_enabled:
        parts.append("\n- If you are done, call submit with a concise final answer.")
    else:
        parts.append("\n- If you are done, respond with a concise final answer.")

    max_steps = config.max_steps if config.max_steps is not None else "unset"
    time_limit = int(config.time_limit_sec) if config.time_limit_sec is not None else "unset"
    parts.append(
        "\nEnvironment:"
        f"\n- cwd: {config.cwd}"
        f"\n- max_steps: {max_steps}"
        f"\n- time_limit_sec: {time_limit}"
        "\n- network_access: enabled"
        "\n- sandbox: none"
    )

    tool_lines = list(WORKSPACE_TOOL_LINES)
    if config.web_enabled:
        tool_lines.extend(WEB_TOOL_LINES)
    if config.submit_enabled:
        tool_lines.append("submit(answer)")
    parts.append("\n\nTools:\n" + "".join(f"- {line}\n" for line in tool_lines))
    parts.append("\n" + TOOL_USAGE_NOTES)

    agents_text = load_agents_instructions(config.cwd)
    if agents_text:
        parts.append("\n\n" + agents_text)
    return "".join(parts), agents_text


def load_task(prompt: str | None = None, prompt_file: Path | None = None) -> str:
    if prompt_file is not None:
        return prompt_file.read_text(encoding="utf-8")
    if prompt is not None:
        return prompt
    raise ValueError("prompt or prompt_file is required")
