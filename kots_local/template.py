"""Template function library used to render application manifests.

Manifests may embed expressions that are evaluated before the files are
written to the base layer:
```yaml
metadata:
  name: repl{{ ToLower("My-App") }}
  annotations:
    rendered-at: '{{repl Now() }}'
```

Evaluation is deterministic except for the functions reading the clock
(`Now`, `NowFmt`) or the random source (`RandomString`, `RandomPassword`).
The clock and random source are injected into `StaticContext` so renders can
be reproduced in tests. `KubeSeal` output is never reproducible, its session
key always comes from `secrets`.

A few sprig style filters (`quote`, `squote`) are available next to the jinja
builtin filters such as `default`, `lower` and `indent`:
```yaml
data:
  password: repl{{ RandomPassword(16) | quote }}
```
"""

import base64
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
import json
import logging
import math
import random
import re
import secrets
import struct
from typing import Any
from urllib.parse import quote_plus

import jinja2
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .exceptions import TemplateException

__all__ = [
    "StaticContext",
    "Number",
    "NumberKind",
    "Unsigned",
    "gen_password",
    "render_template",
]

_LOGGER = logging.getLogger(__name__)

_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1
_UINT64_MOD = 2**64

PASSWORD_LETTERS = "0123456789abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ"
RANDOM_STRING_LETTERS = "_" + PASSWORD_LETTERS

# The "{{repl expr }}" spelling is rewritten into the "repl{{ expr }}" one.
_REPL_PREFIX = re.compile(r"\{\{repl\s")

_TRUE_STRINGS = {"1", "t", "T", "TRUE", "true", "True"}

_SIZE_UNITS = ["B", "kB", "MB", "GB", "TB", "PB", "EB", "ZB", "YB"]


class Unsigned(int):
    """An integer that takes part in arithmetic as an unsigned 64 bit value."""


class NumberKind(Enum):
    """The numeric kinds understood by the arithmetic functions."""

    INTEGER = "integer"
    UNSIGNED = "unsigned"
    FLOAT = "float"


@dataclass(frozen=True)
class Number:
    """A template value tagged with its numeric kind."""

    kind: NumberKind
    value: int | float

    @classmethod
    def of(cls, value: Any) -> "Number | None":
        """Return the tagged number for a value, or None if it is not numeric."""
        if isinstance(value, bool):
            return None
        if isinstance(value, Unsigned):
            return cls(NumberKind.UNSIGNED, int(value))
        if isinstance(value, int):
            return cls(NumberKind.INTEGER, value)
        if isinstance(value, float):
            return cls(NumberKind.FLOAT, value)
        return None

    def as_float(self) -> float:
        """Return the value as a float."""
        return float(self.value)

    def as_int(self) -> int:
        """Return the value as a wrapped 64 bit integer."""
        return _wrap_int64(int(self.value))

    def as_unsigned(self) -> int:
        """Return the value as an unsigned 64 bit integer."""
        return int(self.value) % _UINT64_MOD


def _wrap_int64(value: int) -> int:
    return (value - _INT64_MIN) % _UINT64_MOD + _INT64_MIN


def _trunc_div(a: int, b: int) -> int:
    """Integer division rounding toward zero."""
    quotient = abs(a) // abs(b)
    return quotient if (a < 0) == (b < 0) else -quotient


def _float_div(a: float, b: float) -> float:
    if b == 0:
        if a == 0 or math.isnan(a):
            return math.nan
        return math.copysign(math.inf, a) * math.copysign(1.0, b)
    return a / b


def _arithmetic(
    a: Any,
    b: Any,
    int_op: Callable[[int, int], int],
    float_op: Callable[[float, float], float],
) -> int | float:
    """Apply an operator following the promotion rules of the numeric kinds.

    A float on either side makes the result a float. Otherwise the kind of the
    left operand decides, and a non-numeric left operand yields 0.
    """
    left, right = Number.of(a), Number.of(b)
    zero = Number(NumberKind.INTEGER, 0)
    if (left and left.kind is NumberKind.FLOAT) or (
        right and right.kind is NumberKind.FLOAT
    ):
        return float_op((left or zero).as_float(), (right or zero).as_float())
    if left is None:
        return 0
    if left.kind is NumberKind.INTEGER:
        return _wrap_int64(int_op(left.as_int(), (right or zero).as_int()))
    return Unsigned(int_op(left.as_unsigned(), (right or zero).as_unsigned()) % _UINT64_MOD)


def gen_password(length: int, rng: random.Random) -> str:
    """Generate a [0-9a-zA-Z] password of the specified length."""
    return "".join(rng.choice(PASSWORD_LETTERS) for _ in range(length))


def _offset(t: datetime, utc: str | None, sep: str) -> str:
    offset = t.utcoffset()
    if offset is None or (utc is not None and not offset):
        return utc if utc is not None else f"+00{sep}00"
    minutes = int(offset.total_seconds()) // 60
    sign = "-" if minutes < 0 else "+"
    hours, minutes = divmod(abs(minutes), 60)
    return f"{sign}{hours:02d}{sep}{minutes:02d}"


def _hour12(t: datetime) -> int:
    return t.hour % 12 or 12


# Go reference time layout elements, longest first at any position.
_LAYOUT_ELEMENTS: list[tuple[str, Callable[[datetime], str]]] = [
    ("January", lambda t: t.strftime("%B")),
    ("Monday", lambda t: t.strftime("%A")),
    ("Z07:00", lambda t: _offset(t, "Z", ":")),
    ("Z0700", lambda t: _offset(t, "Z", "")),
    ("-07:00", lambda t: _offset(t, None, ":")),
    ("-0700", lambda t: _offset(t, None, "")),
    ("2006", lambda t: f"{t.year:04d}"),
    (".000000", lambda t: f".{t.microsecond:06d}"),
    (".000", lambda t: f".{t.microsecond // 1000:03d}"),
    ("Jan", lambda t: t.strftime("%b")),
    ("Mon", lambda t: t.strftime("%a")),
    ("MST", lambda t: t.tzname() or "UTC"),
    ("01", lambda t: f"{t.month:02d}"),
    ("02", lambda t: f"{t.day:02d}"),
    ("_2", lambda t: f"{t.day:2d}"),
    ("03", lambda t: f"{_hour12(t):02d}"),
    ("04", lambda t: f"{t.minute:02d}"),
    ("05", lambda t: f"{t.second:02d}"),
    ("06", lambda t: f"{t.year % 100:02d}"),
    ("15", lambda t: f"{t.hour:02d}"),
    ("PM", lambda t: "PM" if t.hour >= 12 else "AM"),
    ("pm", lambda t: "pm" if t.hour >= 12 else "am"),
    ("1", lambda t: str(t.month)),
    ("2", lambda t: str(t.day)),
    ("3", lambda t: str(_hour12(t))),
    ("4", lambda t: str(t.minute)),
    ("5", lambda t: str(t.second)),
]

RFC3339 = "2006-01-02T15:04:05Z07:00"


def format_time(t: datetime, layout: str) -> str:
    """Format a time with a Go reference time layout."""
    out: list[str] = []
    pos = 0
    while pos < len(layout):
        for element, render in _LAYOUT_ELEMENTS:
            if layout.startswith(element, pos):
                out.append(render(t))
                pos += len(element)
                break
        else:
            out.append(layout[pos])
            pos += 1
    return "".join(out)


def human_size(size: float) -> str:
    """Return a human readable size with decimal units and 4 significant digits."""
    unit = 0
    while size >= 1000.0 and unit < len(_SIZE_UNITS) - 1:
        size /= 1000.0
        unit += 1
    return f"{size:.4g}{_SIZE_UNITS[unit]}"


def quote(value: Any) -> str:
    """Return the value as a double quoted string."""
    return json.dumps(str(value), ensure_ascii=False)


def squote(value: Any) -> str:
    """Return the value wrapped in single quotes."""
    return f"'{value}'"


def _finalize(value: Any) -> Any:
    """Reject a function printed without being called, e.g. `{{repl Now }}`."""
    if callable(value) and not isinstance(value, jinja2.Undefined):
        raise TemplateException(
            "failed to render template: expression is a function that was not "
            "called, use call syntax such as Now()"
        )
    return value


class StaticContext:
    """Functions available to template expressions."""

    def __init__(
        self,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize StaticContext with an optional random source and clock."""
        self._rng = rng if rng is not None else random.SystemRandom()
        self._clock = clock if clock is not None else (lambda: datetime.now(timezone.utc))

    def func_map(self) -> dict[str, Callable[..., Any]]:
        """Return the functions keyed by the name used in templates."""
        return {
            "Now": self.now,
            "NowFmt": self.now_format,
            "ToLower": str.lower,
            "ToUpper": str.upper,
            "TrimSpace": str.strip,
            "Trim": self.trim,
            "UrlEncode": quote_plus,
            "Base64Encode": self.base64_encode,
            "Base64Decode": self.base64_decode,
            "Split": self.split,
            "RandomString": self.random_string,
            "RandomPassword": self.random_password,
            "Add": self.add,
            "Sub": self.sub,
            "Mult": self.mult,
            "Div": self.div,
            "ParseBool": self.parse_bool,
            "ParseFloat": self.parse_float,
            "ParseInt": self.parse_int,
            "ParseUint": self.parse_uint,
            "HumanSize": self.human_size,
            "KubeSeal": self.kube_seal,
        }

    def now(self) -> str:
        """Return the current time in RFC3339 format."""
        return self.now_format("")

    def now_format(self, layout: str) -> str:
        """Return the current time formatted with a Go reference layout."""
        return format_time(self._clock().astimezone(timezone.utc), layout or RFC3339)

    def trim(self, s: str, cutset: str | None = None) -> str:
        """Remove leading and trailing characters in the cutset, whitespace by default."""
        if cutset is None:
            return s.strip()
        return s.strip(cutset)

    def base64_encode(self, plain: str) -> str:
        """Encode a string as base64."""
        return base64.b64encode(plain.encode()).decode()

    def base64_decode(self, encoded: str) -> str:
        """Decode a base64 string, returning an empty string if it is invalid."""
        try:
            return base64.b64decode(encoded, validate=True).decode()
        except ValueError:
            return ""

    def split(self, s: str, sep: str) -> list[str]:
        """Split a string on a separator, into characters for an empty separator."""
        if not sep:
            return list(s)
        return s.split(sep)

    def random_string(self, length: int, charset: str | None = None) -> str:
        """Return a random string drawn from the charset."""
        letters = charset or RANDOM_STRING_LETTERS
        return "".join(self._rng.choice(letters) for _ in range(int(length)))

    def random_password(self, length: int) -> str:
        """Return a random [0-9a-zA-Z] password."""
        return gen_password(int(length), self._rng)

    def add(self, a: Any, b: Any) -> int | float:
        """Add two numbers."""
        return _arithmetic(a, b, lambda x, y: x + y, lambda x, y: x + y)

    def sub(self, a: Any, b: Any) -> int | float:
        """Subtract the second number from the first."""
        return _arithmetic(a, b, lambda x, y: x - y, lambda x, y: x - y)

    def mult(self, a: Any, b: Any) -> int | float:
        """Multiply two numbers."""
        return _arithmetic(a, b, lambda x, y: x * y, lambda x, y: x * y)

    def div(self, a: Any, b: Any) -> int | float:
        """Divide the first number by the second."""
        return _arithmetic(a, b, _trunc_div, _float_div)

    def parse_bool(self, s: str) -> bool:
        """Return true for the strings Go's strconv.ParseBool accepts as true."""
        return s in _TRUE_STRINGS

    def parse_float(self, s: str) -> float:
        """Parse a float, returning 0.0 if it is invalid."""
        try:
            return float(s)
        except ValueError:
            return 0.0

    def parse_int(self, s: str, base: int = 10) -> int:
        """Parse a 64 bit integer, returning 0 if it is invalid."""
        try:
            value = int(s, base)
        except ValueError:
            return 0
        return max(_INT64_MIN, min(_INT64_MAX, value))

    def parse_uint(self, s: str, base: int = 10) -> Unsigned:
        """Parse an unsigned 64 bit integer, returning 0 if it is invalid."""
        if s.startswith(("-", "+")):
            return Unsigned(0)
        try:
            value = int(s, base)
        except ValueError:
            return Unsigned(0)
        return Unsigned(min(value, _UINT64_MOD - 1))

    def human_size(self, size: Any) -> str:
        """Return a human readable size for a number of bytes."""
        number = Number.of(size)
        return human_size(number.as_float() if number else 0.0)

    def kube_seal(self, cert_data: str, namespace: str, name: str, value: str) -> str:
        """Encrypt a value the way the sealed-secrets kubeseal tool does.

        The result is the encrypted value for a SealedSecret resource, the
        resource itself is left to the application.
        """
        try:
            certs = x509.load_pem_x509_certificates(cert_data.encode())
        except ValueError as err:
            raise TemplateException(f"failed to parse cert: {err}") from err
        if not certs:
            raise TemplateException("unable to find cert")
        public_key = certs[0].public_key()
        if not isinstance(public_key, rsa.RSAPublicKey):
            raise TemplateException("failed to get public key")

        session_key = secrets.token_bytes(32)
        label = f"{namespace}/{name}".encode()
        rsa_ciphertext = public_key.encrypt(
            session_key,
            padding.OAEP(
                mgf=padding.MGF1(algorithm=hashes.SHA256()),
                algorithm=hashes.SHA256(),
                label=label,
            ),
        )
        zero_nonce = bytes(12)
        sealed = AESGCM(session_key).encrypt(zero_nonce, value.encode(), None)
        ciphertext = struct.pack(">H", len(rsa_ciphertext)) + rsa_ciphertext + sealed
        return base64.b64encode(ciphertext).decode()

    def environment(self) -> jinja2.Environment:
        """Return a jinja2 environment evaluating repl{{ }} expressions."""
        env = jinja2.Environment(
            variable_start_string="repl{{",
            variable_end_string="}}",
            block_start_string="repl{%",
            block_end_string="%}",
            comment_start_string="repl{#",
            comment_end_string="#}",
            keep_trailing_newline=True,
            undefined=jinja2.StrictUndefined,
            finalize=_finalize,
        )
        env.globals.update(self.func_map())
        env.filters.update({"quote": quote, "squote": squote})
        return env


def render_template(content: str, ctx: StaticContext | None = None) -> str:
    """Evaluate the template expressions in the content."""
    if ctx is None:
        ctx = StaticContext()
    source = _REPL_PREFIX.sub("repl{{ ", content)
    try:
        return ctx.environment().from_string(source).render()
    except (jinja2.TemplateError, ArithmeticError, TypeError, ValueError) as err:
        raise TemplateException(f"failed to render template: {err}") from err
