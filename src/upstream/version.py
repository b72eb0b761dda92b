from __future__ import annotations

import re
from dataclasses import dataclass, replace
from functools import total_ordering

from .errors import InvalidFormat

_VERSION_RE = re.compile(r"\d+(?:\.\d+){0,2}")
_FILENAME_VERSION_RE = re.compile(r"(\d+)\.(\d+)\.(\d+)")

# Longest first so "version-" wins over "v".
TAG_PREFIXES = ("version-", "release-", "ver-", "rel-", "v")


@total_ordering
@dataclass(frozen=True)
class Version:
    major: int = 0
    minor: int = 0
    patch: int = 0
    is_prerelease: bool = False

    @classmethod
    def parse(cls, text: str) -> "Version":
        if not isinstance(text, str) or not _VERSION_RE.fullmatch(text):
            raise InvalidFormat(f"Invalid version string: {text!r}")
        parts = [int(p) for p in text.split(".")]
        while len(parts) < 3:
            parts.append(0)
        return cls(parts[0], parts[1], parts[2])

    @classmethod
    def from_tag(cls, tag: str) -> "Version":
        raw = tag.strip()
        lowered = raw.lower()
        for prefix in TAG_PREFIXES:
            if lowered.startswith(prefix):
                raw = raw[len(prefix) :]
                break
        return cls.parse(raw)

    @classmethod
    def from_filename(cls, name: str) -> "Version":
        m = _FILENAME_VERSION_RE.search(name)
        if m is None:
            raise InvalidFormat(f"No version found in file name: {name!r}")
        return cls(int(m.group(1)), int(m.group(2)), int(m.group(3)))

    def as_prerelease(self, flag: bool = True) -> "Version":
        return replace(self, is_prerelease=flag)

    def is_newer_than(self, other: "Version") -> bool:
        return self > other

    def _key(self) -> tuple[int, int, int, int]:
        # Stable sorts above a prerelease with the same numbers.
        return (self.major, self.minor, self.patch, 0 if self.is_prerelease else 1)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self._key() < other._key()

    def __str__(self) -> str:
        base = f"{self.major}.{self.minor}.{self.patch}"
        return base + "-pre" if self.is_prerelease else base


ZERO = Version()
