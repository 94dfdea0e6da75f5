"""Language codes used for localized files (e.g. `en_US`)."""

import re

_LOCALE_RE = re.compile(r'^[a-z]{2}_[A-Za-z]{2}$')


class InvalidLocaleError(ValueError):
    pass


class Locale:
    """
    Locale code made of a language and a territory (`ll_TT`).

    The territory is normalized uppercase but accepted lowercase.
    """

    __slots__ = ('code',)

    def __init__(self, code: str):
        if not _LOCALE_RE.match(code):
            raise InvalidLocaleError(f"invalid locale code: {code!r}")
        self.code = code[:3] + code[3:].upper()

    @classmethod
    def from_bytes(cls, raw: bytes) -> 'Locale':
        try:
            return cls(raw.decode('ascii'))
        except UnicodeDecodeError:
            raise InvalidLocaleError(f"invalid locale code: {raw!r}")

    @property
    def language(self) -> str:
        return self.code[:2]

    @property
    def territory(self) -> str:
        return self.code[3:]

    def __str__(self) -> str:
        return self.code

    def __repr__(self) -> str:
        return f"Locale({self.code!r})"

    def __eq__(self, other) -> bool:
        if isinstance(other, Locale):
            return self.code == other.code
        return NotImplemented

    def __lt__(self, other: 'Locale') -> bool:
        return self.code < other.code

    def __hash__(self) -> int:
        return hash(self.code)


def normalize_locale(code: str) -> str:
    """Return the normalized form of a locale code."""
    return Locale(code).code
