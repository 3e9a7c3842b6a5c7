"""
Format constraints applied during decoding.

JsonGrammar keeps the output a valid prefix of some JSON value. The
recognizer is a character-level pushdown automaton so each candidate
token can be checked by cloning the current state and feeding only
that token's text.
"""

from typing import Mapping, Optional

# Recognizer modes
VALUE = "value"              # expecting any value
ARRAY_FIRST = "array_first"  # after '[' - value or ']'
OBJECT_FIRST = "object_first"  # after '{' - key or '}'
OBJECT_KEY = "object_key"    # after ',' in an object - key
OBJECT_COLON = "object_colon"
AFTER_VALUE = "after_value"  # inside a container, after a member
STRING = "string"
NUMBER = "number"
LITERAL = "literal"
END = "end"                  # top-level value finished

OBJECT = "{"
ARRAY = "["

WHITESPACE = " \t\n\r"
DIGITS = "0123456789"
HEX_DIGITS = "0123456789abcdefABCDEF"
SIMPLE_ESCAPES = '"\\/bfnrt'

NUMBER_FINAL = {"zero", "int", "frac", "exp_digits"}

_NUMBER_TRANSITIONS: dict[str, list[tuple[str, str]]] = {
    "minus": [("0", "zero"), ("123456789", "int")],
    "zero": [(".", "dot"), ("eE", "exp")],
    "int": [(DIGITS, "int"), (".", "dot"), ("eE", "exp")],
    "dot": [(DIGITS, "frac")],
    "frac": [(DIGITS, "frac"), ("eE", "exp")],
    "exp": [("+-", "exp_sign"), (DIGITS, "exp_digits")],
    "exp_sign": [(DIGITS, "exp_digits")],
    "exp_digits": [(DIGITS, "exp_digits")],
}

_LITERALS = {"t": "rue", "f": "alse", "n": "ull"}


class JsonRecognizer:
    """Incremental JSON prefix recognizer."""

    __slots__ = ("stack", "mode", "sub", "remaining", "is_key")

    def __init__(self):
        self.stack: list[str] = []
        self.mode = VALUE
        self.sub: Optional[object] = None
        self.remaining = ""
        self.is_key = False

    def copy(self) -> "JsonRecognizer":
        clone = JsonRecognizer.__new__(JsonRecognizer)
        clone.stack = list(self.stack)
        clone.mode = self.mode
        clone.sub = self.sub
        clone.remaining = self.remaining
        clone.is_key = self.is_key
        return clone

    @property
    def complete(self) -> bool:
        """True when the text so far is a complete JSON value."""
        if self.mode == END:
            return True
        return self.mode == NUMBER and not self.stack and self.sub in NUMBER_FINAL

    @property
    def finished(self) -> bool:
        """True when nothing but whitespace may follow."""
        return self.mode == END

    def feed(self, text: str) -> bool:
        """Advance over text. Returns False (state undefined) on the first invalid char."""
        for ch in text:
            if not self._step(ch):
                return False
        return True

    # ── internals ───────────────────────────────────────────────────

    def _close_value(self) -> None:
        self.mode = AFTER_VALUE if self.stack else END
        self.sub = None

    def _start_value(self, ch: str) -> bool:
        if ch == "{":
            self.stack.append(OBJECT)
            self.mode = OBJECT_FIRST
        elif ch == "[":
            self.stack.append(ARRAY)
            self.mode = ARRAY_FIRST
        elif ch == '"':
            self.mode = STRING
            self.is_key = False
            self.sub = None
        elif ch == "-":
            self.mode, self.sub = NUMBER, "minus"
        elif ch == "0":
            self.mode, self.sub = NUMBER, "zero"
        elif ch in DIGITS:
            self.mode, self.sub = NUMBER, "int"
        elif ch in _LITERALS:
            self.mode = LITERAL
            self.remaining = _LITERALS[ch]
        else:
            return False
        return True

    def _step_string(self, ch: str) -> bool:
        if self.sub is None:
            if ch == '"':
                if self.is_key:
                    self.mode = OBJECT_COLON
                    self.is_key = False
                else:
                    self._close_value()
            elif ch == "\\":
                self.sub = "escape"
            elif ord(ch) < 0x20:
                return False
            return True
        if self.sub == "escape":
            if ch in SIMPLE_ESCAPES:
                self.sub = None
            elif ch == "u":
                self.sub = 4
            else:
                return False
            return True
        # \uXXXX - self.sub counts the hex digits still expected
        if ch not in HEX_DIGITS:
            return False
        self.sub -= 1
        if self.sub == 0:
            self.sub = None
        return True

    def _step_number(self, ch: str) -> bool:
        for chars, target in _NUMBER_TRANSITIONS[self.sub]:
            if ch in chars:
                self.sub = target
                return True
        if self.sub not in NUMBER_FINAL:
            return False
        self._close_value()
        return self._step(ch)

    def _step(self, ch: str) -> bool:
        mode = self.mode
        if mode == STRING:
            return self._step_string(ch)
        if mode == NUMBER:
            return self._step_number(ch)
        if mode == LITERAL:
            if not self.remaining or ch != self.remaining[0]:
                return False
            self.remaining = self.remaining[1:]
            if not self.remaining:
                self._close_value()
            return True

        if ch in WHITESPACE:
            return True

        if mode == VALUE:
            return self._start_value(ch)
        if mode == ARRAY_FIRST:
            if ch == "]":
                self.stack.pop()
                self._close_value()
                return True
            return self._start_value(ch)
        if mode in (OBJECT_FIRST, OBJECT_KEY):
            if ch == '"':
                self.mode = STRING
                self.is_key = True
                self.sub = None
                return True
            if ch == "}" and mode == OBJECT_FIRST:
                self.stack.pop()
                self._close_value()
                return True
            return False
        if mode == OBJECT_COLON:
            if ch == ":":
                self.mode = VALUE
                return True
            return False
        if mode == AFTER_VALUE:
            top = self.stack[-1]
            if ch == ",":
                self.mode = VALUE if top == ARRAY else OBJECT_KEY
                return True
            if (ch == "]" and top == ARRAY) or (ch == "}" and top == OBJECT):
                self.stack.pop()
                self._close_value()
                return True
            return False
        # END accepts whitespace only
        return False


class JsonGrammar:
    """Constrains decoding to a single well-formed JSON value."""

    name = "json"

    def start(self) -> JsonRecognizer:
        return JsonRecognizer()

    def is_valid_prefix(self, text: str) -> bool:
        return self.start().feed(text)

    def is_complete(self, text: str) -> bool:
        state = self.start()
        return state.feed(text) and state.complete

    def allowed(
        self,
        state: JsonRecognizer,
        candidates: Mapping[int, str],
        eos_token_id: Optional[int] = None,
    ) -> set[int]:
        """
        Filter candidate tokens down to those that keep the output constrainable.

        Args:
            state: Recognizer positioned after the output so far
            candidates: {token_id: token_text}
            eos_token_id: End-of-generation token; allowed only on a complete value

        Returns:
            Set of admissible token ids
        """
        admissible = set()
        for token, text in candidates.items():
            if token == eos_token_id:
                if state.complete:
                    admissible.add(token)
                continue
            if not text or state.finished:
                continue
            if state.copy().feed(text):
                admissible.add(token)
        return admissible
