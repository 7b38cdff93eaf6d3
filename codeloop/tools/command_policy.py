"""Static security checks for shell commands."""

import hashlib
import re
import shlex
from dataclasses import dataclass
from pathlib import PurePosixPath

_ASSIGNMENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=.*$")
_SHELL_SEPARATOR_TOKENS = {";", "&&", "||", "|", "&"}
_SHELL_WRAPPER_TOKENS = {"sudo", "command", "builtin", "nohup", "time", "env", "exec"}
_WHITESPACE_RE = re.compile(r"\s+")

# Ordered; the first match blocks.
_BLOCKED_PATTERNS: list[tuple[str, re.Pattern[str], str]] = [
    ("filesystem-destruction", re.compile(r"\brm\s+(-[rf]+\s+)?[/~]", re.I), "rm on an absolute or home path"),
    ("filesystem-destruction", re.compile(r"\brm\s+-rf?\s+\.\s*$", re.I), "recursive delete of the working directory"),
    ("filesystem-destruction", re.compile(r"\brm\s+-rf?\s+\*\s*$", re.I), "recursive delete of everything"),
    ("filesystem-destruction", re.compile(r"\bmkfs\b", re.I), "filesystem format"),
    ("filesystem-destruction", re.compile(r"\bdd\s+.*of=/dev", re.I), "raw write to a device"),
    ("filesystem-destruction", re.compile(r"\bchmod\s+(-R\s+)?777\s+/", re.I), "chmod 777 on root"),
    ("filesystem-destruction", re.compile(r"\bchown\s+(-R\s+)?.*\s+/", re.I), "chown on root"),
    ("filesystem-destruction", re.compile(r"\bsudo\s+(rm|chmod|chown)\b", re.I), "privileged file removal or permission change"),
    ("filesystem-destruction", re.compile(r"\bgit\s+reset\s+--hard\s+HEAD~?\d*\s*$", re.I), "hard reset without an explicit commit"),
    ("filesystem-destruction", re.compile(r"\bgit\s+clean\s+-fd?x", re.I), "forced git clean"),
    ("fork-bomb", re.compile(r":?\(\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;?\s*:"), "fork bomb"),
    ("protected-branch-push", re.compile(r"\bgit\s+push\s+.*--force\s+(origin\s+)?(main|master)\b", re.I), "force push to a protected branch"),
    ("protected-branch-push", re.compile(r"\bgit\s+push\s+-f\s+(origin\s+)?(main|master)\b", re.I), "force push to a protected branch"),
    ("remote-code-execution", re.compile(r"\b(curl|wget)\s+.*\|\s*(ba|z)?sh\b", re.I), "piping a download into a shell"),
    ("system-write", re.compile(r">\s*/(etc|usr|var|bin|sbin)/", re.I), "writing into a system directory"),
    ("system-write", re.compile(r"\bgit\s+config\s+--global\b", re.I), "modifying global git config"),
    ("credential-exfiltration", re.compile(r"\bcat\s+.*\.(env|pem|key|crt|p12|pfx)\b", re.I), "reading key or secret files"),
    ("credential-exfiltration", re.compile(r"\bcat\s+.*/\.(ssh|aws)/", re.I), "reading ssh or cloud credentials"),
    ("credential-exfiltration", re.compile(r"\bcat\s+.*credentials", re.I), "reading a credentials file"),
    ("interactive", re.compile(r"\bgit\s+(rebase|add|reset)\s+-i\b", re.I), "interactive git command"),
]

INTERACTIVE_COMMANDS = frozenset({"vi", "vim", "nvim", "nano", "emacs", "less", "more", "top", "htop"})

_WARN_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"\bgit\s+push\s+(--force|-f)\b", re.I), "Force push detected - use with caution"),
    (re.compile(r"\bgit\s+reset\s+--hard\b", re.I), "Hard reset detected - this will lose uncommitted changes"),
    (re.compile(r"\brm\s+-rf?\b", re.I), "Recursive delete detected - verify the path"),
    (re.compile(r"\bnpm\s+publish\b", re.I), "Publishing to npm registry"),
    (re.compile(r"\bdocker\s+system\s+prune\b", re.I), "Docker prune will remove unused data"),
]


@dataclass
class CommandCheck:
    """Outcome of the static command check."""

    blocked: bool = False
    reason: str | None = None
    warning: str | None = None
    category: str | None = None


def _tokenize_shell_command(command: str) -> list[str]:
    """Tokenize shell command while preserving control operators."""
    lexer = shlex.shlex(command, posix=True, punctuation_chars=";&|")
    lexer.whitespace_split = True
    lexer.commenters = ""
    return list(lexer)


def _split_shell_segments(command: str) -> list[list[str]]:
    """Split shell command into tokenized segments separated by control operators."""
    segments: list[list[str]] = []
    current: list[str] = []
    for token in _tokenize_shell_command(command):
        if token in _SHELL_SEPARATOR_TOKENS:
            if current:
                segments.append(current)
                current = []
            continue
        current.append(token)
    if current:
        segments.append(current)
    return segments


def _extract_segment_base_command(tokens: list[str]) -> str:
    for token in tokens:
        token = str(token).strip()
        if not token or token in _SHELL_WRAPPER_TOKENS:
            continue
        if _ASSIGNMENT_RE.match(token) and "/" not in token:
            continue
        return token
    return ""


def extract_shell_base_commands(command: str) -> list[str]:
    """Extract the executable of each shell segment (``a && b | c`` -> a, b, c)."""
    cleaned = str(command or "").strip()
    if not cleaned:
        return []
    try:
        segments = _split_shell_segments(cleaned)
    except ValueError:
        return []
    return [base for segment in segments if (base := _extract_segment_base_command(segment))]


def normalize_command(command: str) -> str:
    """Collapse runs of whitespace."""
    return _WHITESPACE_RE.sub(" ", str(command or "")).strip()


def command_key(command: str, workdir: str) -> str:
    """Approval key for a command in a working directory."""
    payload = f"{workdir}::{normalize_command(command)}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:24]


def prefix_matches(command: str, prefix: str) -> bool:
    """Case-insensitive exact or ``prefix + whitespace`` match."""
    cmd = normalize_command(command).lower()
    p = normalize_command(prefix).lower()
    if not p:
        return False
    return cmd == p or cmd.startswith(p + " ")


def _is_recursive_rm_flag(token: str) -> bool:
    if token == "--recursive":
        return True
    return token.startswith("-") and not token.startswith("--") and any(c in "rR" for c in token[1:])


def _is_protected_rm_target(token: str) -> bool:
    return token.startswith(("/", "~")) or token in {"*", "/*"}


def _find_recursive_root_delete(command: str) -> bool:
    """True when an ``rm`` segment combines a recursive flag with an absolute or home operand."""
    try:
        segments = _split_shell_segments(command)
    except ValueError:
        return False
    for segment in segments:
        base = _extract_segment_base_command(segment)
        if PurePosixPath(base).name != "rm":
            continue
        args = segment[segment.index(base) + 1 :]
        flags = [a for a in args if a.startswith("-") and a != "-"]
        operands = [a for a in args if not (a.startswith("-") and a != "-")]
        if any(_is_recursive_rm_flag(f) for f in flags) and any(_is_protected_rm_target(o) for o in operands):
            return True
    return False


def check_command(command: str) -> CommandCheck:
    """Run the denylist, then the warn-list, against ``command``."""
    normalized = normalize_command(command)

    for category, pattern, description in _BLOCKED_PATTERNS:
        if pattern.search(normalized):
            return CommandCheck(
                blocked=True,
                reason=f"Blocked ({category}): {description}",
                category=category,
            )

    if _find_recursive_root_delete(normalized):
        return CommandCheck(
            blocked=True,
            reason="Blocked (filesystem-destruction): recursive delete of an absolute or home path",
            category="filesystem-destruction",
        )

    for base in extract_shell_base_commands(normalized):
        if PurePosixPath(base).name.lower() in INTERACTIVE_COMMANDS:
            return CommandCheck(
                blocked=True,
                reason=f"Blocked (interactive): '{base}' needs a terminal and would hang",
                category="interactive",
            )

    for pattern, message in _WARN_PATTERNS:
        if pattern.search(normalized):
            return CommandCheck(warning=message)

    return CommandCheck()
