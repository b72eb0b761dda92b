from __future__ import annotations

import hashlib
import re
from pathlib import Path

from .classify import CHECKSUM_FILENAMES
from .errors import ChecksumMismatch, InvalidFormat
from .models import Asset, Release

_HEX_RE = re.compile(r"[0-9a-fA-F]+")
_ALGORITHM_BY_LENGTH = {64: "sha256", 128: "sha512"}


def algorithm_for(digest: str) -> str:
    algo = _ALGORITHM_BY_LENGTH.get(len(digest))
    if algo is None or not _HEX_RE.fullmatch(digest):
        raise InvalidFormat(f"Unrecognized checksum digest: {digest!r}")
    return algo


def _is_digest(token: str) -> bool:
    return len(token) in _ALGORITHM_BY_LENGTH and bool(_HEX_RE.fullmatch(token))


def parse_checksum_file(text: str) -> dict[str, str]:
    """
    Map file name -> lowercase hex digest. Accepts the coreutils layouts
    ("<digest>  <name>", "<digest> *<name>"), "<name>: <digest>", and a file
    holding a single bare digest (keyed by "").
    """
    out: dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        parts = line.split(None, 1)
        if len(parts) == 1:
            if _is_digest(parts[0]):
                out.setdefault("", parts[0].lower())
            continue
        first, rest = parts
        if _is_digest(first):
            out[rest.strip().lstrip("*")] = first.lower()
            continue
        if ":" in line:
            name, _, digest = line.rpartition(":")
            digest = digest.strip()
            if _is_digest(digest):
                out[name.strip()] = digest.lower()
    return out


def find_checksum_asset(release: Release, asset: Asset) -> Asset | None:
    for candidate in (f"{asset.name}.sha256", f"{asset.name}.sha512", *CHECKSUM_FILENAMES):
        found = release.find_asset(candidate)
        if found is not None and found is not asset:
            return found
    return None


def expected_digest(checksum_text: str, asset_name: str) -> str | None:
    entries = parse_checksum_file(checksum_text)
    if asset_name in entries:
        return entries[asset_name]
    for name, digest in entries.items():
        if Path(name).name == asset_name:
            return digest
    return entries.get("")


def file_digest(path: Path, algorithm: str) -> str:
    h = hashlib.new(algorithm)
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def verify_checksum(path: Path, expected: str, algorithm: str | None = None) -> None:
    algo = algorithm or algorithm_for(expected)
    actual = file_digest(path, algo)
    if actual.lower() != expected.lower():
        raise ChecksumMismatch(f"{algo} mismatch for {path.name}: expected {expected.lower()}, got {actual}")
