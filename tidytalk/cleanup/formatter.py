"""
Rule-based transcript formatting.

Turns raw speech-to-text output into readable prose with a fixed sequence of
deterministic passes:

A. spoken commands ("new line", "comma", "next point", ...) to symbols
B. sentence casing
C. length-based sentence breaks for long unpunctuated runs
D. paragraph breaks before discourse markers ("Okay", "So", ...)
E. whitespace and punctuation cleanup

Every pass is a pure ``str -> str`` function. Words are never rewritten,
only punctuation, whitespace and the case of sentence-initial letters.
"""

from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Iterable, List, Optional, Sequence, Tuple
import logging
import re

from ..config import DEFAULT_DISCOURSE_MARKERS, FormattingOptions

logger = logging.getLogger(__name__)

BULLET = "•"
SENTENCE_TERMINATORS = ".?!"
DEFAULT_MAX_SENTENCE_CHARS = 140


@lru_cache(maxsize=256)
def _phrase_regex(phrase: str) -> "re.Pattern[str]":
    """Compile a whole-word, case-insensitive matcher for a spoken phrase.

    Words inside the phrase may be separated by spaces or tabs but not by
    newlines, so text that already went through the formatter is not
    matched again.
    """
    words = phrase.split()
    if not words:
        raise ValueError("Command phrase cannot be empty")
    body = r"[ \t]+".join(re.escape(word) for word in words)
    return re.compile(rf"\b{body}\b", re.IGNORECASE)


@dataclass(frozen=True)
class CommandRule:
    """A spoken phrase and the literal text that replaces it."""
    pattern: str
    replacement: str

    @property
    def regex(self) -> "re.Pattern[str]":
        return _phrase_regex(self.pattern)

    def apply(self, text: str) -> str:
        replacement = self.replacement
        return self.regex.sub(lambda _match: replacement, text)


# Longer phrases come first so that e.g. "next bullet" is consumed before
# the bare "bullet" rule can split it.
DEFAULT_COMMAND_RULES: Tuple[CommandRule, ...] = (
    CommandRule("new paragraph", "\n\n"),
    CommandRule("new line", "\n"),
    CommandRule("next line", "\n"),
    CommandRule("newline", "\n"),
    CommandRule("next point", f"\n{BULLET}"),
    CommandRule("next bullet", f"\n{BULLET}"),
    CommandRule("bullet", BULLET),
    CommandRule("point one", "\n1."),
    CommandRule("point 1", "\n1."),
    CommandRule("point two", "\n2."),
    CommandRule("point 2", "\n2."),
    CommandRule("point three", "\n3."),
    CommandRule("point 3", "\n3."),
    CommandRule("question mark", "?"),
    CommandRule("exclamation mark", "!"),
    CommandRule("exclamation point", "!"),
    CommandRule("full stop", "."),
    CommandRule("comma", ","),
    CommandRule("period", "."),
)


def build_command_rules(pairs: Iterable[Sequence[str]]) -> Tuple[CommandRule, ...]:
    """Build an ordered rule table from ``(phrase, replacement)`` pairs."""
    rules = []
    for pair in pairs:
        phrase, replacement = pair
        rules.append(CommandRule(str(phrase), str(replacement)))
    return tuple(rules)


# A. Spoken commands

def apply_spoken_commands(
    text: str,
    rules: Sequence[CommandRule] = DEFAULT_COMMAND_RULES
) -> str:
    """Replace spoken command phrases, one rule at a time, in table order."""
    if not text:
        return ""
    for rule in rules:
        text = rule.apply(text)
    return text


# B. Sentence casing

# Start of text, a terminator, or a newline; then optional whitespace (and an
# optional bullet after a line break); then the letter to capitalize.
_SENTENCE_START = re.compile(
    rf"(^|[{re.escape(SENTENCE_TERMINATORS)}]|\n)(\s*(?:{BULLET}[ \t]*)?)([^\W\d_])"
)


def _upper_letter(letter: str) -> str:
    upper = letter.upper()
    # Some letters ("ß") expand when upper-cased; leave those alone
    return upper if len(upper) == 1 else letter


def apply_sentence_casing(text: str) -> str:
    """Capitalize the first letter of the text and of every sentence/line."""
    if not text:
        return ""
    return _SENTENCE_START.sub(
        lambda m: m.group(1) + m.group(2) + _upper_letter(m.group(3)),
        text
    )


# C. Length-based sentence breaks

def apply_length_breaks(text: str, max_chars: int = DEFAULT_MAX_SENTENCE_CHARS) -> str:
    """Insert a period at a space whenever a sentence runs past ``max_chars``.

    The counter resets at every terminator or newline and skips the
    whitespace that follows. When a run overflows,
    the latest space in it becomes ". " and the next character is
    capitalized. A comma, semicolon or colon right before that space is
    replaced by the period. A run with no space at all is left alone and
    the counter restarts, so the scan always moves forward.
    """
    if not text:
        return ""
    if max_chars <= 0:
        raise ValueError(f"max_chars must be positive, got {max_chars}")

    count = 0
    last_space = -1
    i = 0
    while i < len(text):
        char = text[i]

        if char in SENTENCE_TERMINATORS or char == "\n":
            count = 0
            last_space = -1
            i += 1
            continue

        # Whitespace that opens a sentence is not part of it
        if count == 0 and char in " \t":
            i += 1
            continue

        count += 1
        if char == " ":
            last_space = i

        if count > max_chars:
            if last_space < 0:
                count = 0
                i += 1
                continue

            head = text[:last_space]
            if head[-1:] in (",", ";", ":"):
                head = head[:-1]
            tail = text[last_space + 1:]
            if tail:
                tail = _upper_letter(tail[0]) + tail[1:]
            text = f"{head}. {tail}"

            # Resume on the character after the inserted ". "
            i = len(head) + 2
            count = 0
            last_space = -1
            continue

        i += 1

    return text


# D. Paragraph heuristics

@lru_cache(maxsize=32)
def _marker_regex(markers: Tuple[str, ...]) -> Optional["re.Pattern[str]"]:
    # Longest marker first so "moving on" wins over any shorter overlap
    ordered = sorted({m.strip() for m in markers if m.strip()}, key=len, reverse=True)
    if not ordered:
        return None
    alternatives = "|".join(
        r"[ \t]+".join(re.escape(word) for word in marker.split())
        for marker in ordered
    )
    return re.compile(
        rf"([{re.escape(SENTENCE_TERMINATORS)}])[ \t]+({alternatives})(?![-\w])",
        re.IGNORECASE
    )


def _closes_list_number(text: str, end: int) -> bool:
    """True if ``text[end]`` is the period of a line-initial "1." marker."""
    if text[end] != ".":
        return False
    line_start = text.rfind("\n", 0, end) + 1
    return text[line_start:end].strip().isdigit()


def _normalize_marker(marker: str) -> str:
    marker = " ".join(marker.split()).lower()
    return marker[:1].upper() + marker[1:]


def apply_paragraph_breaks(
    text: str,
    markers: Sequence[str] = DEFAULT_DISCOURSE_MARKERS
) -> str:
    """Start a new paragraph when a sentence opens with a discourse marker.

    Only markers that follow a terminator and whitespace on the same line
    are touched; markers at the start of the text or of a line already
    begin a block. The period of a numbered list item is not a sentence end.
    """
    if not text:
        return ""
    regex = _marker_regex(tuple(markers))
    if regex is None:
        return text

    def _break(match: "re.Match[str]") -> str:
        if _closes_list_number(text, match.start(1)):
            return match.group(0)
        return f"{match.group(1)}\n\n{_normalize_marker(match.group(2))}"

    return regex.sub(_break, text)


# E. Cleanup

_HORIZONTAL_RUN = re.compile(r"[^\S\n]{2,}")
_EXCESS_NEWLINES = re.compile(r"\n{3,}")
_SPACE_BEFORE_PUNCT = re.compile(r"[^\S\n]+([,;:.?!])")
# A period gets a space only after a word of two or more characters, so
# "e.g.so" and "U.S.A" stay intact
_MISSING_SPACE_AFTER_PUNCT = re.compile(r"([,;:?!]|(?<=[^\W_]{2})\.)([^\W\d_])")


def apply_cleanup(text: str) -> str:
    """Normalize whitespace, drop empty bullets and fix punctuation spacing."""
    if not text:
        return ""

    text = _HORIZONTAL_RUN.sub(" ", text)

    lines = [line.strip() for line in text.split("\n")]
    lines = [line for line in lines if line != BULLET]
    text = "\n".join(lines)

    text = _EXCESS_NEWLINES.sub("\n\n", text)
    text = text.strip()

    text = _SPACE_BEFORE_PUNCT.sub(r"\1", text)
    text = _MISSING_SPACE_AFTER_PUNCT.sub(r"\1 \2", text)

    return text


class RuleFormatter:
    """
    Deterministic formatter for raw transcripts.

    Holds only its options and compiled rule table, so one instance can be
    shared freely.

    Example:
        >>> RuleFormatter().format("hello comma world period how are you question mark")
        'Hello, world. How are you?'
    """

    def __init__(self, options: Optional[FormattingOptions] = None):
        self.options = options or FormattingOptions()
        if self.options.command_rules is not None:
            self.rules = build_command_rules(self.options.command_rules)
        else:
            self.rules = DEFAULT_COMMAND_RULES

    def format(self, raw_text: Any) -> str:
        """Format raw transcript text. Non-string or blank input gives ''."""
        if not isinstance(raw_text, str) or not raw_text.strip():
            return ""

        opts = self.options
        text = raw_text

        if opts.spoken_commands:
            text = apply_spoken_commands(text, self.rules)
        if opts.sentence_casing:
            text = apply_sentence_casing(text)
        if opts.cleanup:
            # C and D must measure the spacing the final cleanup produces,
            # otherwise a second run finds longer sentences
            text = apply_cleanup(text)
        if opts.length_breaks:
            text = apply_length_breaks(text, opts.max_sentence_chars)
        if opts.paragraph_breaks:
            text = apply_paragraph_breaks(text, opts.discourse_markers)
        if opts.cleanup:
            text = apply_cleanup(text)

        return text

    def passes(self) -> List[str]:
        """Names of the enabled passes, in the order they run."""
        opts = self.options
        enabled = [
            ("spoken_commands", opts.spoken_commands),
            ("sentence_casing", opts.sentence_casing),
            ("length_breaks", opts.length_breaks),
            ("paragraph_breaks", opts.paragraph_breaks),
            ("cleanup", opts.cleanup),
        ]
        return [name for name, on in enabled if on]


def format_text(raw_text: Any, options: Optional[FormattingOptions] = None) -> str:
    """Format text with a one-off RuleFormatter."""
    return RuleFormatter(options).format(raw_text)
