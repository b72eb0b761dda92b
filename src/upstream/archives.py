from __future__ import annotations

import asyncio
import bz2
import gzip
import logging
import lzma
import os
import shutil
import stat
import tarfile
import zipfile
from pathlib import Path

import py7zr

from .classify import HostPlatform
from .errors import ExtractionFailed

logger = logging.getLogger(__name__)

APPIMAGE_ROOT = "squashfs-root"

_TAR_SUFFIXES = (".tar.gz", ".tgz", ".tar.bz2", ".tbz2", ".tbz", ".tar.xz", ".txz", ".tar")
_DECOMPRESSORS = {".gz": gzip.open, ".bz2": bz2.open, ".xz": lzma.open}


def _check_member(name: str, dest: Path) -> Path:
    if not name:
        raise ExtractionFailed("Archive contains an empty path entry")
    if name.startswith(("/", "\\")) or (len(name) > 1 and name[1] == ":"):
        raise ExtractionFailed(f"Archive contains an absolute path entry: {name!r}")
    base = dest.resolve()
    target = (dest / name).resolve()
    if target != base and not str(target).startswith(str(base) + os.sep):
        raise ExtractionFailed(f"Archive contains an invalid path entry: {name!r}")
    return target


def _safe_extract_zip(archive: Path, dest: Path) -> None:
    dest.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(archive, "r") as zf:
        for info in zf.infolist():
            target = _check_member(info.filename, dest)
            if info.is_dir():
                target.mkdir(parents=True, exist_ok=True)
                continue

            target.parent.mkdir(parents=True, exist_ok=True)
            with zf.open(info, "r") as src, target.open("wb") as out:
                shutil.copyfileobj(src, out)
            # Unix permission bits live in the high half of external_attr.
            mode = (info.external_attr >> 16) & 0o777
            if mode:
                target.chmod(mode)


def _safe_extract_tar(archive: Path, dest: Path) -> None:
    dest.mkdir(parents=True, exist_ok=True)
    with tarfile.open(archive, "r:*") as tf:
        for member in tf.getmembers():
            _check_member(member.name, dest)
        tf.extractall(dest, filter="data")


def _safe_extract_7z(archive: Path, dest: Path) -> None:
    dest.mkdir(parents=True, exist_ok=True)
    with py7zr.SevenZipFile(archive, mode="r") as zf:
        for name in zf.getnames():
            _check_member(name, dest)
        zf.extractall(path=dest)


def unwrap_single_dir(root: Path) -> Path:
    children = list(root.iterdir())
    if len(children) == 1 and children[0].is_dir() and children[0].suffix != ".app":
        return children[0]
    return root


def extract_archive(archive: Path, dest: Path) -> Path:
    """
    Unpack ``archive`` into ``dest`` and return the content root. A lone top-level
    directory is treated as the root.
    """
    lowered = archive.name.lower()
    try:
        if lowered.endswith(".zip"):
            _safe_extract_zip(archive, dest)
        elif lowered.endswith(_TAR_SUFFIXES):
            _safe_extract_tar(archive, dest)
        elif lowered.endswith(".7z"):
            _safe_extract_7z(archive, dest)
        else:
            raise ExtractionFailed(f"Unsupported archive format: {archive.name}")
    except (zipfile.BadZipFile, tarfile.TarError, py7zr.Bad7zFile, EOFError, lzma.LZMAError) as e:
        raise ExtractionFailed(f"Could not unpack {archive.name}: {e}") from e
    except OSError as e:
        raise ExtractionFailed(f"Could not unpack {archive.name}: {e}") from e
    return unwrap_single_dir(dest)


def decompress_file(source: Path, dest_dir: Path) -> Path:
    lowered = source.name.lower()
    for suffix, opener in _DECOMPRESSORS.items():
        if lowered.endswith(suffix):
            break
    else:
        raise ExtractionFailed(f"Unsupported compression format: {source.name}")

    dest_dir.mkdir(parents=True, exist_ok=True)
    target = dest_dir / source.name[: -len(suffix)]
    try:
        with opener(source, "rb") as src, target.open("wb") as out:
            shutil.copyfileobj(src, out)
    except (OSError, EOFError, lzma.LZMAError) as e:
        target.unlink(missing_ok=True)
        raise ExtractionFailed(f"Could not decompress {source.name}: {e}") from e
    return target


async def extract_appimage(appimage: Path, workdir: Path) -> Path:
    appimage.chmod(appimage.stat().st_mode | stat.S_IXUSR)
    try:
        proc = await asyncio.create_subprocess_exec(
            str(appimage.resolve()),
            "--appimage-extract",
            cwd=str(workdir),
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError as e:
        raise ExtractionFailed(f"Could not run {appimage.name}: {e}") from e
    code = await proc.wait()
    if code != 0:
        raise ExtractionFailed(f"{appimage.name} --appimage-extract exited with status {code}")
    root = workdir / APPIMAGE_ROOT
    if not root.is_dir():
        raise ExtractionFailed(f"{appimage.name} did not produce {APPIMAGE_ROOT}/")
    return root


def is_executable_file(path: Path, host: HostPlatform) -> bool:
    if not path.is_file():
        return False
    if host.is_windows:
        return path.suffix.lower() in (".exe", ".bat", ".cmd")
    return os.access(path, os.X_OK)


def _name_candidates(name: str, host: HostPlatform) -> tuple[str, ...]:
    return (f"{name}.exe", name) if host.is_windows else (name,)


def _find_exact(root: Path, name: str, host: HostPlatform) -> Path | None:
    wanted = _name_candidates(name, host)
    for candidate in wanted:
        for path in (root / candidate, root / "bin" / candidate):
            if path.is_file():
                return path
    for path in sorted(root.rglob("*")):
        if path.name in wanted and path.is_file():
            return path
    return None


def _find_sole_executable(root: Path, host: HostPlatform) -> Path | None:
    found = [p for p in sorted(root.iterdir()) if is_executable_file(p, host)]
    return found[0] if len(found) == 1 else None


def _find_bundle_executable(root: Path, name: str) -> Path | None:
    bundles = sorted(p for p in root.rglob("*.app") if p.is_dir())
    if not bundles:
        return None
    lowered = name.lower()
    named = [b for b in bundles if b.stem.lower() == lowered]
    if named:
        bundle = named[0]
    elif len(bundles) == 1:
        bundle = bundles[0]
    else:
        return None
    macos_dir = bundle / "Contents" / "MacOS"
    if not macos_dir.is_dir():
        return None
    entries = sorted(p for p in macos_dir.iterdir() if p.is_file())
    for entry in entries:
        if entry.name.lower() == lowered or entry.name == bundle.stem:
            return entry
    return entries[0] if len(entries) == 1 else None


def _find_prefixed(root: Path, name: str, host: HostPlatform) -> Path | None:
    lowered = name.lower()
    for path in sorted(root.rglob("*")):
        if path.name.lower().startswith(lowered) and is_executable_file(path, host):
            return path
    return None


def locate_executable(root: Path, name: str, host: HostPlatform) -> Path:
    found = _find_exact(root, name, host) or _find_sole_executable(root, host)
    if found is None and host.is_macos:
        found = _find_bundle_executable(root, name)
    if found is None:
        found = _find_prefixed(root, name, host)
    if found is None:
        raise ExtractionFailed(f"No executable for {name!r} found in {root.name}", package=name, stage="locate")
    logger.debug("executable for %s: %s", name, found)
    return found
