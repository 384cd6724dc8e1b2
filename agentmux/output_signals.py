"""Pane-output heuristics: prompt detection, latest-line extraction, summaries.

Everything here is pure text processing over captured pane content, so it can
be applied to a fresh capture, a post-send delta or a replayed transcript.
"""

import re

# Explicit confirmation prompts and permission gates.
EXPLICIT_INPUT_MARKERS = (
    "(y/n)",
    "[y/n]",
    "(yes/no)",
    "[yes/no]",
    "press enter",
    "press return",
    "press any key",
    "do you want",
    "would you like",
    "should i ",
    "which option",
    "select an option",
    "choose an option",
    "awaiting your input",
    "waiting for your input",
    "needs your approval",
    "requires approval",
    "permission required",
    "bypass permissions on",
)

# Fallback for direct assistant questions (line must end in "?").
QUESTION_MARKERS = (
    "do you",
    "would you",
    "should i",
    "can i",
    "could you",
    "which",
    "what",
    "where",
    "when",
    "how",
    "choose",
    "select",
    "proceed",
    "continue",
)

PERMISSION_MODE_HINT = "Assistant is waiting for local permission-mode selection."

# TUI chrome: box drawing, prompt glyphs, banners, tips.
CHROME_PREFIXES = (
    "╭", "╰", "│", "─", "└ ", "⎿ ",
    "↳ Interacted with ",
    "› ", "❯",
    "? for shortcuts",
    "✶ ", "✻ ",
    "▟", "▐", "▝", "▘",
    "Tip:",
    "• Ran ",
    "model:", "directory:", "cwd:", "workspace:",
)
CHROME_EXACT = ("✻", "|")
CHROME_SUBSTRINGS = ("Claude Code v", "· Claude Max", "chatgpt.com/codex")

PROMPT_PREFIXES = ("› ", "❯ ")
LIST_ITEM_PREFIXES = ("• ", "- ", "* ", "1.", "2.", "3.", "```")

_bullet_re = re.compile(r"^[•*-] ")


def _normalize_status_line(line: str) -> str:
    return _bullet_re.sub("", line.strip(), count=1).strip()


def looks_like_explicit_prompt(line: str) -> bool:
    """True if the line contains an explicit confirmation or approval marker."""
    lower = line.strip().lower()
    if not lower:
        return False
    return any(marker in lower for marker in EXPLICIT_INPUT_MARKERS)


def looks_like_question(line: str) -> bool:
    """True if the line is a question addressed to the user."""
    lower = line.strip().lower()
    if not lower.endswith("?"):
        return False
    return any(marker in lower for marker in QUESTION_MARKERS)


def looks_like_needs_input(line: str) -> bool:
    return looks_like_explicit_prompt(line) or looks_like_question(line)


def is_progress_noise(line: str) -> bool:
    """Spinner and "esc to interrupt" status lines emitted while an agent works."""
    normalized = _normalize_status_line(line)
    lower = normalized.lower()
    if not lower:
        return False
    if normalized.startswith("Thinking "):
        return True
    if "esc to interrupt" in lower:
        return not looks_like_needs_input(normalized)
    return False


def is_chrome_line(line: str) -> bool:
    """True for TUI decoration that never carries agent output."""
    if is_progress_noise(line):
        return True
    if line in CHROME_EXACT:
        return True
    if line.startswith(CHROME_PREFIXES):
        return True
    return any(marker in line for marker in CHROME_SUBSTRINGS)


def normalize_hint(line: str) -> str:
    hint = line.strip()
    if "bypass permissions on" in hint.lower():
        return PERMISSION_MODE_HINT
    return hint


def _content_lines_bottom_up(content: str):
    for raw in reversed(content.split("\n")):
        line = raw.strip()
        if line and not is_chrome_line(line):
            yield line


def detect_needs_input_prompt(content: str) -> tuple[bool, str]:
    """
    Detect an explicit prompt (approval gate, y/n, "press enter").

    Only explicit markers count, so a match is safe to act on immediately
    (for example ending a wait early).

    Returns:
        (needs_input, hint) where hint is the matched line, normalized
    """
    for line in _content_lines_bottom_up(content):
        if looks_like_explicit_prompt(line):
            return True, normalize_hint(line)
    return False, ""


def detect_needs_input(content: str) -> tuple[bool, str]:
    """
    Detect whether the agent is waiting on the user.

    Explicit prompts win; otherwise the lowest question-shaped line counts.
    """
    needs_input, hint = detect_needs_input_prompt(content)
    if needs_input:
        return needs_input, hint
    for line in _content_lines_bottom_up(content):
        if looks_like_question(line):
            return True, normalize_hint(line)
    return False, ""


def latest_line(content: str) -> str:
    """Last non-chrome, non-empty line; falls back to the last non-empty line."""
    for line in _content_lines_bottom_up(content):
        return line
    for raw in reversed(content.split("\n")):
        if raw.strip():
            return raw.strip()
    return ""


def summarize(status: str, latest: str, needs_input: bool, hint: str) -> str:
    """One-line human summary for a capture or wait outcome."""
    if needs_input:
        if hint.strip():
            return f"Needs input: {hint.strip()}"
        return "Needs input"
    if latest.strip():
        return latest.strip()
    return {
        "timed_out": "Timed out waiting for agent response.",
        "session_exited": "Agent session exited while waiting.",
        "idle": "Agent step completed.",
        "needs_input": "Needs input",
    }.get(status, "")


def _is_prompt_continuation(raw: str, line: str) -> bool:
    # Wrapped text typed into the prompt box is indented under the glyph
    if raw[:1] not in (" ", "\t"):
        return False
    if looks_like_needs_input(line):
        return False
    return not line.startswith(LIST_ITEM_PREFIXES)


def compact_output(content: str) -> str:
    """Strip TUI chrome and blank lines, leaving notification-sized output."""
    out = []
    dropping_prompt = False
    for raw in content.split("\n"):
        line = raw.strip()
        if not line:
            continue
        if dropping_prompt:
            if _is_prompt_continuation(raw, line):
                continue
            dropping_prompt = False
        if is_chrome_line(line):
            if line.startswith(PROMPT_PREFIXES):
                dropping_prompt = True
            continue
        out.append(line)
    return "\n".join(out).strip()
