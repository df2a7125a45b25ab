"""Heuristic JavaScript/Python classifier for source snippets.

This is a weighted pattern score, not a parser: each rule adds its weight once
if its pattern matches anywhere in the comment-stripped code, and the language
with the strictly higher total wins.
"""

import re
from enum import Enum

from yepcode_run.api import ClassificationError, ConfigurationError


class Language(Enum):
    JAVASCRIPT = "javascript"
    PYTHON = "python"
    UNKNOWN = "unknown"


JAVASCRIPT_RULES: list[tuple[re.Pattern[str], int]] = [
    (re.compile(r"undefined"), 2),
    (re.compile(r"console\.log( )*\("), 2),
    (re.compile(r"(var|const|let)( )+\w+( )*=?"), 2),
    # Object or array literal assigned to a key
    (re.compile(r"(('|\").+('|\")( )*|\w+):( )*[{\[]"), 2),
    (re.compile(r"==="), 1),
    (re.compile(r"!=="), 1),
    (re.compile(r"function\*?(( )+[$\w]+( )*\(.*\)|( )*\(.*\))"), 1),
    (re.compile(r"null"), 1),
    # Arrow function
    (re.compile(r"\(.*\)( )*=>( )*.+"), 1),
    (re.compile(r"(else )?if( )+\(.+\)"), 1),
    (re.compile(r"async( )+function"), 2),
    (re.compile(r"module\.exports( )*="), 2),
]

PYTHON_RULES: list[tuple[re.Pattern[str], int]] = [
    (re.compile(r"def( )+\w+\(.*\)( )*:"), 2),
    (re.compile(r"from [\w.]+ import (\w+|\*)"), 2),
    (re.compile(r"class( )*\w+(\(( )*\w+( )*\))?( )*:"), 2),
    (re.compile(r"if( )+(.+)( )*:"), 2),
    (re.compile(r"elif( )+(.+)( )*:"), 2),
    (re.compile(r"else:"), 2),
    (re.compile(r"for (\w+|\(?\w+,( )*\w+\)?) in (.+):"), 2),
    # Bare assignment without a trailing semicolon
    (re.compile(r"\w+( )*=( )*\w+(?!;)(\n|$)"), 1),
    (re.compile(r"import ([\[^.]\w\])+"), 1),
    (re.compile(r"print((( )*\(.+\))|( )+.+)"), 1),
]

_BLOCK_OR_LINE_COMMENT = re.compile(r"/\*[\s\S]*?\*/|//.*")
_HASH_COMMENT = re.compile(r"#.*")


def _score(code: str, rules: list[tuple[re.Pattern[str], int]]) -> int:
    return sum(points for pattern, points in rules if pattern.search(code))


def detect_language(code: str) -> Language:
    """
    Guess whether `code` is JavaScript or Python.

    Returns:
        `Language.JAVASCRIPT` or `Language.PYTHON` for the higher score,
        `Language.UNKNOWN` on a tie or when nothing but comments is left
    """
    clean_code = _HASH_COMMENT.sub("", _BLOCK_OR_LINE_COMMENT.sub("", code)).strip()
    if not clean_code:
        return Language.UNKNOWN

    js_score = _score(clean_code, JAVASCRIPT_RULES)
    py_score = _score(clean_code, PYTHON_RULES)

    if js_score > py_score:
        return Language.JAVASCRIPT
    if py_score > js_score:
        return Language.PYTHON
    return Language.UNKNOWN


def resolve_language(language: str | Language | None, code: str) -> Language:
    """
    Turn an explicit language option into a `Language`, or detect it from `code`.

    Raises:
        ConfigurationError: If an explicit language isn't javascript or python
        ClassificationError: If no language was given and detection fails
    """
    if language is None:
        detected = detect_language(code)
        if detected is Language.UNKNOWN:
            raise ClassificationError(
                "We can't guess the language. Please specify it using the `language` option."
            )
        return detected

    if isinstance(language, Language):
        resolved = language
    else:
        try:
            resolved = Language(language.strip().lower())
        except (ValueError, AttributeError) as e:
            raise ConfigurationError(f"Unsupported language: {language!r}") from e

    if resolved is Language.UNKNOWN:
        raise ConfigurationError(f"Unsupported language: {language!r}")
    return resolved
