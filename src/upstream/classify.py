from __future__ import annotations

import platform
from dataclasses import dataclass
from enum import Enum


class Filetype(str, Enum):
    APPIMAGE = "appimage"
    BINARY = "binary"
    COMPRESSED = "compressed"
    ARCHIVE = "archive"
    SCRIPT = "script"
    WINEXE = "winexe"
    CHECKSUM = "checksum"


class TargetOS(str, Enum):
    LINUX = "linux"
    MACOS = "macos"
    WINDOWS = "windows"
    UNKNOWN = "unknown"


class Arch(str, Enum):
    X86_64 = "x86_64"
    AARCH64 = "aarch64"
    X86 = "x86"
    ARM = "arm"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class FiletypeRule:
    filetype: Filetype
    suffixes: tuple[str, ...] = ()
    names: tuple[str, ...] = ()

    def matches(self, lowered_name: str) -> bool:
        return lowered_name in self.names or lowered_name.endswith(self.suffixes)


CHECKSUM_FILENAMES = ("checksums.txt", "sha256sums.txt", "sha256sum.txt", "sha512sums.txt")

# First match wins. Archive must come before Compressed so ".tar.gz" is not read as ".gz".
FILETYPE_RULES: tuple[FiletypeRule, ...] = (
    FiletypeRule(Filetype.APPIMAGE, suffixes=(".appimage",)),
    FiletypeRule(
        Filetype.CHECKSUM,
        suffixes=(".sha256", ".sha512", ".sha1", ".md5", ".sig", ".asc", ".minisig", ".sum"),
        names=CHECKSUM_FILENAMES,
    ),
    FiletypeRule(Filetype.WINEXE, suffixes=(".exe", ".msi")),
    FiletypeRule(
        Filetype.ARCHIVE,
        suffixes=(".tar.gz", ".tgz", ".tar.bz2", ".tbz2", ".tbz", ".tar.xz", ".txz", ".tar", ".zip", ".7z", ".rar"),
    ),
    FiletypeRule(Filetype.COMPRESSED, suffixes=(".gz", ".bz2", ".xz")),
    FiletypeRule(Filetype.SCRIPT, suffixes=(".sh", ".bash", ".zsh", ".fish", ".py", ".pl", ".rb", ".ps1")),
)

OS_MARKERS: tuple[tuple[TargetOS, tuple[str, ...]], ...] = (
    (TargetOS.WINDOWS, ("windows", "win64", "win32", "win", "msvc", ".exe", ".msi")),
    (TargetOS.MACOS, ("macos", "darwin", "osx", "mac", "apple", ".dmg", ".app")),
    (TargetOS.LINUX, ("linux", "gnu", "musl", ".appimage")),
)

ARCH_MARKERS: tuple[tuple[Arch, tuple[str, ...]], ...] = (
    (Arch.AARCH64, ("aarch64", "arm64", "armv8")),
    (Arch.ARM, ("armv7", "armv7l", "armv6", "armhf", "arm")),
    (Arch.X86_64, ("x86_64", "x86-64", "amd64", "x64", "win64")),
    (Arch.X86, ("x86", "i386", "i686", "x86_32", "x86-32", "win32", "386")),
)


def parse_filetype(name: str) -> Filetype:
    lowered = name.strip().lower()
    for rule in FILETYPE_RULES:
        if rule.matches(lowered):
            return rule.filetype
    return Filetype.BINARY


def _is_boundary(text: str, idx: int) -> bool:
    if idx < 0 or idx >= len(text):
        return True
    return not text[idx].isalnum()


def contains_marker(text: str, marker: str) -> bool:
    """
    Case-insensitive token match. A marker must be delimited by non-alphanumeric
    characters (or the ends of the string); markers starting with "." only match
    as a suffix.
    """
    lowered = text.lower()
    if marker.startswith("."):
        return lowered.endswith(marker)
    start = 0
    while True:
        idx = lowered.find(marker, start)
        if idx == -1:
            return False
        if _is_boundary(lowered, idx - 1) and _is_boundary(lowered, idx + len(marker)):
            return True
        start = idx + 1


def parse_os(name: str) -> TargetOS:
    for target, markers in OS_MARKERS:
        if any(contains_marker(name, m) for m in markers):
            return target
    return TargetOS.UNKNOWN


def parse_arch(name: str) -> Arch:
    for arch, markers in ARCH_MARKERS:
        if any(contains_marker(name, m) for m in markers):
            return arch
    return Arch.UNKNOWN


@dataclass(frozen=True)
class HostPlatform:
    os: TargetOS
    arch: Arch

    @classmethod
    def detect(cls) -> "HostPlatform":
        system = platform.system().lower()
        if system == "darwin":
            host_os = TargetOS.MACOS
        elif system == "windows":
            host_os = TargetOS.WINDOWS
        elif system == "linux":
            host_os = TargetOS.LINUX
        else:
            host_os = TargetOS.UNKNOWN
        return cls(os=host_os, arch=parse_arch(platform.machine()))

    @property
    def is_windows(self) -> bool:
        return self.os == TargetOS.WINDOWS

    @property
    def is_macos(self) -> bool:
        return self.os == TargetOS.MACOS
