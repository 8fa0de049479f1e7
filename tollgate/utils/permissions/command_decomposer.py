"""Split shell command strings into the simple commands they would run.

The decomposer is intentionally not a shell interpreter: it performs no
expansion and never executes anything. It only needs to answer "which
programs would this string start", so that every one of them can be checked
against the permission rules.

Splitting happens on unquoted ``&&``, ``||``, ``;``, ``|``, ``|&``, ``&`` and
newlines. A leading ``( ... )`` subshell is unwrapped and flattened into the
same list. Leading ``NAME=value`` assignments and redirection clauses are
removed from each simple command, and unquoted whitespace runs collapse to a
single space, which gives the canonical text that rules are matched against.
"""

from __future__ import annotations

import re
import shlex
from dataclasses import dataclass
from typing import Iterator, List, Optional, Sequence, Tuple

from tollgate.utils.log import get_logger

logger = get_logger()

_MAX_NESTING = 8
_QUOTES = ("'", '"', "`")
_ASSIGNMENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*\+?=")
# Order matters: longer operators first. `<(` and `>(` are process substitution, not redirection.
_REDIRECT_RE = re.compile(r"\d*(?:&>>|&>|>>|>&|>\||<<<|<<-|<<|<>|<&|>(?!\()|<(?!\())")
_HEREDOC_HEADER_RE = re.compile(r"<<(-?)[ \t]*")
_WORD_BREAKS = frozenset(";&|<>()")


def unquote_word(word: str) -> str:
    """Strip shell quoting from a single raw word; unbalanced quotes are kept literally."""
    lexer = shlex.shlex(word, posix=True)
    lexer.whitespace_split = True
    lexer.commenters = ""
    try:
        return "".join(lexer)
    except ValueError:
        return word


@dataclass(frozen=True)
class SimpleCommand:
    """One program invocation extracted from a shell command string."""

    words: Tuple[str, ...]
    has_substitution: bool = False
    malformed: bool = False
    nested: Tuple["SimpleCommand", ...] = ()

    @property
    def text(self) -> str:
        """Canonical rendering used for rule matching."""
        return " ".join(self.words)

    @property
    def argv(self) -> Tuple[str, ...]:
        return tuple(unquote_word(word) for word in self.words)

    @property
    def executable(self) -> str:
        argv = self.argv
        return argv[0] if argv else ""

    @property
    def args(self) -> Tuple[str, ...]:
        return self.argv[1:]

    @property
    def needs_review(self) -> bool:
        """True when the command can never be approved without a human."""
        return self.has_substitution or self.malformed

    def iter_all(self) -> Iterator["SimpleCommand"]:
        """Yield this command and every command found inside its substitutions."""
        yield self
        for inner in self.nested:
            yield from inner.iter_all()

    def __str__(self) -> str:
        return self.text


@dataclass
class _Fragment:
    text: str
    heredoc: str = ""
    malformed: bool = False


@dataclass(frozen=True)
class _Token:
    raw: str
    start: int
    operator: bool = False


def _find_closing(text: str, start: int) -> Optional[int]:
    """Return the index of the parenthesis closing ``text[start]``, if any."""
    depth = 0
    quote: Optional[str] = None
    i = start
    n = len(text)
    while i < n:
        ch = text[i]
        if quote is not None:
            if ch == "\\" and quote != "'":
                i += 2
                continue
            if ch == quote:
                quote = None
        elif ch in _QUOTES:
            quote = ch
        elif ch == "\\":
            i += 1
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth == 0:
                return i
        i += 1
    return None


def _skip_group(text: str, start: int) -> int:
    close = _find_closing(text, start)
    return len(text) if close is None else close + 1


def _separator_at(command: str, i: int) -> Optional[str]:
    two = command[i : i + 2]
    if two in ("&&", "||", "|&"):
        return two
    ch = command[i]
    previous = command[i - 1] if i > 0 else ""
    if ch in (";", "\n"):
        return ch
    if ch == "|":
        # `>|` forces an overwrite; it is a redirection, not a pipe.
        return None if previous == ">" else "|"
    if ch == "&":
        # `2>&1`, `<&3` and `&>file` use `&` as part of a redirection.
        if previous in (">", "<") or command.startswith(">", i + 1):
            return None
        return "&"
    return None


def _read_heredoc_header(
    command: str, i: int, buf: List[str], pending: List[Tuple[str, bool, bool]]
) -> int:
    match = _HEREDOC_HEADER_RE.match(command, i)
    if match is None:
        buf.append(command[i])
        return i + 1
    end = match.end()
    quote: Optional[str] = None
    n = len(command)
    while end < n:
        ch = command[end]
        if quote is not None:
            if ch == quote:
                quote = None
        elif ch in ("'", '"'):
            quote = ch
        elif ch.isspace() or ch in _WORD_BREAKS:
            break
        end += 1
    raw_delimiter = command[match.end() : end]
    buf.append(command[i:end])
    delimiter = unquote_word(raw_delimiter)
    if delimiter:
        expands = not any(ch in raw_delimiter for ch in ("'", '"', "\\"))
        pending.append((delimiter, match.group(1) == "-", expands))
    return end


def _consume_heredoc_bodies(
    command: str, pos: int, pending: Sequence[Tuple[str, bool, bool]], parts: List[str]
) -> int:
    n = len(command)
    for delimiter, strip_tabs, expands in pending:
        body: List[str] = []
        while pos < n:
            end = command.find("\n", pos)
            line = command[pos:] if end == -1 else command[pos:end]
            pos = n if end == -1 else end + 1
            if (line.lstrip("\t") if strip_tabs else line) == delimiter:
                break
            body.append(line)
        if expands:
            parts.append("\n".join(body))
    return pos


def _split_fragments(command: str) -> List[_Fragment]:
    fragments: List[_Fragment] = []
    buf: List[str] = []
    heredoc_parts: List[str] = []
    pending: List[Tuple[str, bool, bool]] = []
    quote: Optional[str] = None
    depth = 0
    i = 0
    n = len(command)

    def flush(malformed: bool = False) -> None:
        fragments.append(_Fragment("".join(buf), "\n".join(heredoc_parts), malformed))
        buf.clear()
        heredoc_parts.clear()

    while i < n:
        ch = command[i]
        if quote is not None:
            if ch == "\\" and quote != "'" and i + 1 < n:
                buf.append(command[i : i + 2])
                i += 2
                continue
            buf.append(ch)
            if ch == quote:
                quote = None
            i += 1
            continue
        if ch == "\\":
            if command.startswith("\n", i + 1):
                # Line continuation.
                buf.append(" ")
            else:
                buf.append(command[i : i + 2])
            i += 2
            continue
        if ch in _QUOTES:
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")" and depth:
            depth -= 1
        elif depth == 0:
            if command.startswith("<<", i) and not command.startswith("<<<", i):
                i = _read_heredoc_header(command, i, buf, pending)
                continue
            separator = _separator_at(command, i)
            if separator:
                i += len(separator)
                if separator == "\n" and pending:
                    i = _consume_heredoc_bodies(command, i, pending, heredoc_parts)
                    pending.clear()
                flush()
                continue
        buf.append(ch)
        i += 1

    malformed = quote is not None or depth > 0
    if malformed:
        logger.debug(
            "[decomposer] Unbalanced quoting or grouping; keeping remainder as one command",
            extra={"command": command},
        )
    flush(malformed)
    return fragments


def _scan_word(text: str, i: int) -> int:
    n = len(text)
    quote: Optional[str] = None
    while i < n:
        ch = text[i]
        if quote is not None:
            if ch == "\\" and quote == '"':
                i += 2
                continue
            if ch == quote:
                quote = None
            i += 1
            continue
        if ch in _QUOTES:
            quote = ch
        elif ch == "\\":
            i += 1
        elif ch in ("$", "<", ">") and text.startswith("(", i + 1):
            i = _skip_group(text, i + 1)
            continue
        elif ch.isspace() or ch in ("<", ">"):
            break
        elif ch == "&" and text.startswith(">", i + 1):
            break
        i += 1
    return min(i, n)


def _scan_tokens(text: str) -> List[_Token]:
    tokens: List[_Token] = []
    i = 0
    n = len(text)
    while i < n:
        if text[i].isspace():
            i += 1
            continue
        match = _REDIRECT_RE.match(text, i)
        if match:
            tokens.append(_Token(match.group(0), i, operator=True))
            i = match.end()
            continue
        start = i
        i = max(_scan_word(text, i), start + 1)
        tokens.append(_Token(text[start:i], start))
    return tokens


def _command_tokens(
    tokens: Sequence[_Token],
    *,
    drop_assignments: bool = True,
    drop_redirections: bool = True,
) -> List[_Token]:
    kept: List[_Token] = []
    leading = True
    in_redirection = False
    for token in tokens:
        if in_redirection:
            in_redirection = False
            if drop_redirections:
                continue
        elif token.operator:
            in_redirection = True
            if drop_redirections:
                continue
        elif leading and _ASSIGNMENT_RE.match(token.raw):
            if drop_assignments:
                continue
        else:
            leading = False
        kept.append(token)
    return kept


def _find_substitutions(text: str, *, quotes: bool = True) -> List[str]:
    """Return the bodies of command and process substitutions in ``text``."""
    bodies: List[str] = []
    in_double = False
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if ch == "\\":
            i += 2
            continue
        if quotes and ch == "'" and not in_double:
            end = text.find("'", i + 1)
            if end == -1:
                break
            i = end + 1
            continue
        if quotes and ch == '"':
            in_double = not in_double
        elif ch == "`":
            end = text.find("`", i + 1)
            bodies.append(text[i + 1 : n if end == -1 else end])
            i = n if end == -1 else end + 1
            continue
        elif text.startswith("(", i + 1) and (ch == "$" or (ch in ("<", ">") and not in_double)):
            close = _find_closing(text, i + 1)
            bodies.append(text[i + 2 : n if close is None else close])
            i = n if close is None else close + 1
            continue
        i += 1
    return bodies


def _expand_fragment(fragment: _Fragment, depth: int) -> List[SimpleCommand]:
    text = fragment.text
    tokens = _scan_tokens(text)
    kept = _command_tokens(tokens)

    if kept and kept[0].raw.startswith("(") and depth < _MAX_NESTING:
        start = kept[0].start
        close = _find_closing(text, start)
        if close is not None:
            commands = _decompose(text[start + 1 : close], depth + 1)
            # Anything after the group is normally just redirections.
            tail = _Fragment(text[close + 1 :], fragment.heredoc, fragment.malformed)
            commands.extend(_expand_fragment(tail, depth))
            return commands

    bodies = _find_substitutions(text)
    if fragment.heredoc:
        bodies.extend(_find_substitutions(fragment.heredoc, quotes=False))

    words = tuple(token.raw for token in kept)
    if not words:
        if not bodies:
            return []
        # e.g. `FOO=$(curl ...)` runs a command even though no program is named.
        words = (" ".join(text.split()),)

    nested: Tuple[SimpleCommand, ...] = ()
    if depth < _MAX_NESTING:
        nested = tuple(cmd for body in bodies for cmd in _decompose(body, depth + 1))
    return [
        SimpleCommand(
            words=words,
            has_substitution=bool(bodies),
            malformed=fragment.malformed,
            nested=nested,
        )
    ]


def _decompose(command: str, depth: int) -> List[SimpleCommand]:
    if depth > _MAX_NESTING:
        stripped = " ".join(command.split())
        return [SimpleCommand(words=(stripped,), malformed=True)] if stripped else []
    commands: List[SimpleCommand] = []
    for fragment in _split_fragments(command):
        commands.extend(_expand_fragment(fragment, depth))
    return commands


def decompose(command: str) -> List[SimpleCommand]:
    """Return the simple commands in ``command``, in source order."""
    if not command or not command.strip():
        return []
    return _decompose(command, 0)


def split_command(command: str) -> List[str]:
    """Split on unquoted control operators without any further cleanup."""
    return [
        fragment.text.strip()
        for fragment in _split_fragments(command or "")
        if fragment.text.strip()
    ]


def strip_env_vars(command: str) -> str:
    """Remove leading ``NAME=value`` assignments from a single simple command."""
    tokens = _command_tokens(_scan_tokens(command), drop_redirections=False)
    return " ".join(token.raw for token in tokens)


def strip_redirections(command: str) -> str:
    """Remove redirection clauses and collapse unquoted whitespace."""
    tokens = _command_tokens(_scan_tokens(command), drop_assignments=False)
    return " ".join(token.raw for token in tokens)


def iter_commands(commands: Sequence[SimpleCommand]) -> Iterator[SimpleCommand]:
    """Flatten commands together with those nested inside their substitutions."""
    for command in commands:
        yield from command.iter_all()


__all__ = [
    "SimpleCommand",
    "decompose",
    "iter_commands",
    "split_command",
    "strip_env_vars",
    "strip_redirections",
]
